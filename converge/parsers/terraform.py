import os
from typing import Any, Dict

import hcl2
from rich.console import Console

from converge.detect import detect_format
from converge.models.resource import Configuration, Resource
from converge.parsers.expressions import parse_value

console = Console(stderr=True)


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts, drop
    metadata keys and strip the quotes newer hcl2 releases keep on strings.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items() if not k.startswith("__")}
    if isinstance(val, str) and len(val) >= 2 and val[0] == val[-1] == '"':
        return val[1:-1]
    return val


def _iter_blocks(blocks: Any):
    """Yield (type, name, body) from hcl2's resource list in either shape."""
    for block in blocks or []:
        for resource_type, instances in block.items():
            if isinstance(instances, dict):
                instances = [instances]
            if not isinstance(instances, list):
                continue
            # hcl2 wraps the block in a list
            for instance_map in instances:
                if not isinstance(instance_map, dict):
                    continue
                for name, raw_props in instance_map.items():
                    yield _unwrap(resource_type), _unwrap(name), raw_props


def _props(raw_props: Any) -> Dict[str, Any]:
    props = _unwrap(raw_props) if isinstance(raw_props, dict) else {}
    if not isinstance(props, dict):
        props = {}
    return parse_value(props)


def parse_file(filepath: str) -> Configuration:
    config = Configuration()
    try:
        with open(filepath) as fh:
            data = hcl2.load(fh)
    except Exception as exc:
        console.print(f"[yellow]Warning:[/yellow] failed to parse {filepath}: {exc}")
        return config

    for resource_type, name, raw_props in _iter_blocks(data.get("resource", [])):
        config.resources.append(Resource(
            kind=resource_type,
            name=name,
            attributes=_props(raw_props),
            source_file=filepath,
        ))

    for output_block in data.get("output", []) or []:
        for name, body in output_block.items():
            body = _unwrap(body)
            if isinstance(body, dict) and "value" in body:
                config.outputs[_unwrap(name)] = parse_value(body["value"])

    return config


def parse_directory(path: str) -> Configuration:
    config = Configuration()

    if os.path.isfile(path):
        if detect_format(path) == "terraform":
            config.extend(parse_file(path))
        return config

    for root, _, files in os.walk(path):
        for fname in sorted(files):
            fpath = os.path.join(root, fname)
            if detect_format(fpath) == "terraform":
                config.extend(parse_file(fpath))

    return config
