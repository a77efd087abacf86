"""
Native YAML/JSON configuration format:

    resources:
      aws_vpc.main:
        cidr_block: 10.0.0.0/16
      aws_subnet.public_a:
        vpc_id: ${aws_vpc.main.id}
    outputs:
      vpc_id: ${aws_vpc.main.id}
"""
import json
import os
from typing import Any, List

import yaml
from rich.console import Console

from converge.detect import detect_format
from converge.models.resource import Configuration, Resource, ResourceID
from converge.parsers.expressions import parse_value

console = Console(stderr=True)


def _load_docs(filepath: str) -> List[Any]:
    with open(filepath) as fh:
        if filepath.lower().endswith(".json"):
            return [json.load(fh)]
        return list(yaml.safe_load_all(fh))


def parse_file(filepath: str) -> Configuration:
    config = Configuration()

    try:
        docs = _load_docs(filepath)
    except Exception as exc:
        console.print(f"[yellow]Warning:[/yellow] failed to parse {filepath}: {exc}")
        return config

    for doc in docs:
        if not isinstance(doc, dict):
            continue

        for key, attrs in (doc.get("resources") or {}).items():
            try:
                rid = ResourceID.parse(str(key))
            except ValueError as exc:
                console.print(f"[yellow]Warning:[/yellow] {filepath}: {exc}, skipping.")
                continue
            if attrs is None:
                attrs = {}
            if not isinstance(attrs, dict):
                console.print(
                    f"[yellow]Warning:[/yellow] {filepath}: {rid} attributes must be a mapping, skipping."
                )
                continue
            config.resources.append(Resource(
                kind=rid.kind,
                name=rid.name,
                attributes=parse_value(attrs),
                source_file=filepath,
            ))

        for name, value in (doc.get("outputs") or {}).items():
            config.outputs[str(name)] = parse_value(value)

    return config


def parse_directory(path: str) -> Configuration:
    config = Configuration()
    if os.path.isfile(path):
        if detect_format(path) == "native":
            config.extend(parse_file(path))
        return config

    for root, _, files in os.walk(path):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "native":
                config.extend(parse_file(fpath))
    return config
