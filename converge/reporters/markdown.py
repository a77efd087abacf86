"""
Markdown + Mermaid plan report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from jinja2 import Environment

from converge import __version__
from converge.models.plan import Action, ApplyResult, Plan
from converge.models.resource import Resource, ResourceID

_ACTION_SYMBOL = {
    "create": "+",
    "update": "~",
    "replace": "-/+",
    "delete": "-",
}

_CATEGORY_MAP = {
    # Resource kind prefix → subgraph label
    "aws_vpc": "Networking",
    "aws_subnet": "Networking",
    "aws_internet_gateway": "Networking",
    "aws_nat_gateway": "Networking",
    "aws_eip": "Networking",
    "aws_route": "Routing",
    "aws_security_group": "Networking",
    "aws_iam": "Identity",
    "aws_eks": "Compute",
}

# Mermaid classDef per planned action
_ACTION_STYLE = {
    "create": "fill:#e8f5e9,stroke:#2e7d32",
    "update": "fill:#fffde7,stroke:#f9a825",
    "replace": "fill:#fff3e0,stroke:#ef6c00",
    "delete": "fill:#ffebee,stroke:#c62828",
}

_TEMPLATE = """\
# Reconciliation Plan

| | |
|---|---|
| **Generated** | {{ generated }} |
| **Source** | `{{ source }}` |
| **Tool** | converge v{{ version }} |

## Summary

| Action | Count |
|--------|-------|
{% for action, n in summary.items() %}| {{ action }} | {{ n }} |
{% endfor %}
{% if not plan.operations %}
No changes. Realized state matches the configuration.
{% else %}
## Changes

| Resource | Action | Changed attributes |
|----------|--------|--------------------|
{% for rid, action in plan.changes.items() %}| `{{ rid }}` | {{ symbols[action.value] }} {{ action.value }} | {{ changed.get(rid, "") }} |
{% endfor %}
## Operations

| # | Operation | Rank | Requires |
|---|-----------|------|----------|
{% for op in plan.operations %}| {{ loop.index }} | {{ op }} | {{ op.dependency_rank }} | {{ requires(op) }} |
{% endfor %}{% endif %}
{% if result %}
## Result: {{ result.status.value }}

| Operation | Status | Attempts | Error |
|-----------|--------|----------|-------|
{% for r in result.results.values() %}| {{ r.operation }} | {{ r.status.value }} | {{ r.attempts }} | {{ r.error or "" }} |
{% endfor %}{% endif %}
{% if mermaid %}
## Topology

```mermaid
{{ mermaid }}
```
{% endif %}"""


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _resource_subgraph(kind: str) -> str:
    for prefix, label in _CATEGORY_MAP.items():
        if kind.startswith(prefix):
            return label
    return "Other"


def build_mermaid(resources: List[Resource], plan: Optional[Plan] = None) -> str:
    """Topology diagram: one node per resource, edges point at dependencies."""
    groups: Dict[str, List[Resource]] = defaultdict(list)
    for r in resources:
        groups[_resource_subgraph(r.kind)].append(r)

    actions: Dict[ResourceID, Action] = plan.changes if plan else {}

    lines = ["graph LR"]
    for label in sorted(groups):
        lines.append(f"  subgraph {label}")
        for r in sorted(groups[label], key=lambda x: x.id):
            lines.append(f'    {_sanitize_node_id(r.qualified_name)}["{r.qualified_name}"]')
        lines.append("  end")

    for r in sorted(resources, key=lambda x: x.id):
        for target in sorted(r.references):
            lines.append(
                f"  {_sanitize_node_id(r.qualified_name)} --> {_sanitize_node_id(str(target))}"
            )

    used = sorted({a.value for rid, a in actions.items() if any(r.id == rid for r in resources)})
    for action in used:
        lines.append(f"  classDef {action} {_ACTION_STYLE[action]}")
    for rid, action in sorted(actions.items()):
        if any(r.id == rid for r in resources):
            lines.append(f"  class {_sanitize_node_id(str(rid))} {action.value}")

    return "\n".join(lines)


def build_report(
    plan: Plan,
    source_path: str,
    resources: Optional[List[Resource]] = None,
    result: Optional[ApplyResult] = None,
) -> str:
    changed: Dict[ResourceID, str] = {}
    for op in plan.operations:
        if op.changed:
            changed[op.resource_id] = ", ".join(f"`{c}`" for c in op.changed)

    env = Environment(autoescape=False, keep_trailing_newline=True)
    template = env.from_string(_TEMPLATE)
    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        summary=plan.summary(),
        symbols=_ACTION_SYMBOL,
        changed=changed,
        requires=lambda op: ", ".join(f"{k.value.capitalize()}({rid})" for k, rid in op.requires),
        result=result,
        mermaid=build_mermaid(resources, plan) if resources else "",
    )
