import json
import os

import yaml


def _looks_native(doc) -> bool:
    if not isinstance(doc, dict):
        return False
    resources = doc.get("resources")
    return isinstance(resources, dict) and all(
        isinstance(k, str) and "." in k for k in resources
    )


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'native' or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext == ".json":
        try:
            with open(filepath) as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        return "native" if _looks_native(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                docs = list(yaml.safe_load_all(fh))
        except (OSError, yaml.YAMLError):
            return "unknown"

        # First document that carries resources decides
        for doc in docs:
            if _looks_native(doc):
                return "native"

    return "unknown"
