"""
Provider-capability table: per resource kind, which attributes change in
place, which reference paths accept which kinds, and which outputs the
provider computes.
"""
import os
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

import yaml

from converge.errors import ConfigurationError
from converge.models.resource import META_ATTRIBUTES, Resource

# Attributes every kind can change in place.
ALWAYS_UPDATABLE = frozenset({"tags"}) | frozenset(META_ATTRIBUTES)


@dataclass
class KindSchema:
    kind: str
    updatable: FrozenSet[str] = frozenset()
    references: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    outputs: Tuple[str, ...] = ("id",)
    id_prefix: str = ""
    computed: Dict[str, str] = field(default_factory=dict)

    def is_updatable(self, attribute: str) -> bool:
        return attribute in self.updatable or attribute in ALWAYS_UPDATABLE

    def requires_replacement(self, changed: Iterable[str]) -> bool:
        return any(not self.is_updatable(a) for a in changed)

    def allowed_kinds(self, path: str) -> Optional[Tuple[str, ...]]:
        return self.references.get(path)


class KindRegistry:
    def __init__(self, schemas: Iterable[KindSchema] = ()):
        self._schemas: Dict[str, KindSchema] = {}
        for s in schemas:
            self.register(s)

    def register(self, schema: KindSchema) -> None:
        self._schemas[schema.kind] = schema

    def get(self, kind: str) -> Optional[KindSchema]:
        return self._schemas.get(kind)

    def __getitem__(self, kind: str) -> KindSchema:
        return self._schemas[kind]

    def __contains__(self, kind: str) -> bool:
        return kind in self._schemas

    def kinds(self) -> List[str]:
        return sorted(self._schemas)

    def load_file(self, path: str) -> int:
        """Register extra kinds from a YAML file. Returns how many were added."""
        if not path or not os.path.exists(path):
            return 0
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError([f"cannot read kinds file {path}: {exc}"])

        kinds = data.get("kinds", {}) if isinstance(data, dict) else None
        if not isinstance(kinds, dict):
            raise ConfigurationError([f"{path}: top-level 'kinds' mapping expected"])

        problems = []
        for kind, entry in kinds.items():
            entry = entry or {}
            if not isinstance(entry, dict):
                problems.append(f"{path}: kind '{kind}' must be a mapping")
                continue
            refs = entry.get("references", {}) or {}
            self.register(KindSchema(
                kind=kind,
                updatable=frozenset(entry.get("updatable", []) or []),
                references={p: tuple(k) if isinstance(k, list) else (k,) for p, k in refs.items()},
                outputs=tuple(entry.get("outputs", ["id"]) or ["id"]),
                id_prefix=entry.get("id_prefix", ""),
                computed=dict(entry.get("computed", {}) or {}),
            ))
        if problems:
            raise ConfigurationError(problems)
        return len(kinds)


def validate(resources: List[Resource], registry: KindRegistry) -> Dict:
    """
    Check the desired model and return it keyed by ResourceID.

    Every duplicate, unknown kind, dangling reference and kind mismatch is
    reported together in one ConfigurationError.
    """
    problems: List[str] = []

    counts = Counter(r.id for r in resources)
    for rid, n in counts.items():
        if n > 1:
            problems.append(f"{rid} is declared {n} times")

    by_id = {r.id: r for r in resources}

    for r in resources:
        schema = registry.get(r.kind)
        if schema is None:
            problems.append(f"{r.id}: unsupported resource kind '{r.kind}'")

        for path, ref in r.reference_paths():
            where = f"{r.id}.{path}"
            target = by_id.get(ref.target)
            if target is None:
                problems.append(f"{where}: reference to undeclared resource {ref.target}")
                continue
            if ref.target == r.id:
                problems.append(f"{where}: resource references itself")
                continue
            if schema is not None:
                allowed = schema.allowed_kinds(path)
                if allowed and ref.kind not in allowed:
                    problems.append(
                        f"{where}: expected a reference to {' or '.join(allowed)}, got {ref.kind}"
                    )
                    continue
            target_schema = registry.get(ref.kind)
            if (
                ref.attribute is not None
                and target_schema is not None
                and ref.root_attribute not in target_schema.outputs
                and ref.root_attribute not in target.attributes
            ):
                problems.append(
                    f"{where}: {ref.kind} does not export attribute '{ref.attribute}'"
                )

    if problems:
        raise ConfigurationError(problems)
    return by_id
