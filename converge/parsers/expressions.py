import re
from typing import Any

from converge.models.resource import Reference, Template

# ${aws_vpc.main.id}, ${aws_eks_cluster.main.certificate_authority[0].data},
# ${aws_internet_gateway.gw}. Kinds always carry a provider prefix, which
# keeps var.*, local.* and data.* expressions out.
_REF_RE = re.compile(
    r"\$\{\s*(?P<kind>[a-z][a-z0-9]*_[a-z0-9_]+)\.(?P<name>[A-Za-z_][\w-]*)"
    r"(?P<attr>(?:\.[A-Za-z_][\w-]*|\[\d+\])*)\s*\}"
)


def _to_ref(m: "re.Match") -> Reference:
    attr = m.group("attr").lstrip(".") or None
    return Reference(m.group("kind"), m.group("name"), attr)


def parse_value(val: Any) -> Any:
    """
    Recursively turn interpolation strings into Reference / Template values.
    Everything else is returned unchanged.
    """
    if isinstance(val, str):
        matches = list(_REF_RE.finditer(val))
        if not matches:
            return val
        if len(matches) == 1 and matches[0].span() == (0, len(val)):
            return _to_ref(matches[0])
        parts = []
        pos = 0
        for m in matches:
            if m.start() > pos:
                parts.append(val[pos:m.start()])
            parts.append(_to_ref(m))
            pos = m.end()
        if pos < len(val):
            parts.append(val[pos:])
        return Template(tuple(parts))
    if isinstance(val, list):
        return [parse_value(v) for v in val]
    if isinstance(val, dict):
        return {k: parse_value(v) for k, v in val.items()}
    return val
