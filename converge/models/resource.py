import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, Optional, Set, Tuple, Union

# Meta-arguments that carry references but are never sent to a provider.
META_ATTRIBUTES = ("depends_on",)


class ResourceID(NamedTuple):
    kind: str      # e.g. "aws_vpc"
    name: str      # logical name in the configuration

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, text: str) -> "ResourceID":
        kind, sep, name = text.partition(".")
        if not sep or not kind or not name:
            raise ValueError(f"invalid resource id '{text}', expected KIND.NAME")
        return cls(kind, name)


@dataclass(frozen=True)
class Reference:
    """An output attribute of another resource, e.g. the VPC's id."""
    kind: str
    name: str
    attribute: Optional[str] = None   # None for pure ordering references

    @property
    def target(self) -> ResourceID:
        return ResourceID(self.kind, self.name)

    @property
    def root_attribute(self) -> Optional[str]:
        """Top-level output name, e.g. certificate_authority in certificate_authority[0].data."""
        if self.attribute is None:
            return None
        return re.split(r"[.\[]", self.attribute, maxsplit=1)[0]

    @property
    def expression(self) -> str:
        if self.attribute is None:
            return f"${{{self.kind}.{self.name}}}"
        return f"${{{self.kind}.{self.name}.{self.attribute}}}"


@dataclass(frozen=True)
class Template:
    """A string with one or more embedded references."""
    parts: Tuple[Union[str, Reference], ...]

    @property
    def references(self) -> List[Reference]:
        return [p for p in self.parts if isinstance(p, Reference)]

    @property
    def expression(self) -> str:
        return "".join(p.expression if isinstance(p, Reference) else p for p in self.parts)


@dataclass
class Resource:
    kind: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    source_file: str = ""

    @property
    def id(self) -> ResourceID:
        return ResourceID(self.kind, self.name)

    @property
    def qualified_name(self) -> str:
        return f"{self.kind}.{self.name}"

    def reference_paths(self) -> List[Tuple[str, Reference]]:
        """Every embedded reference with the dotted attribute path it sits at."""
        return list(iter_references(self.attributes))

    @property
    def references(self) -> Set[ResourceID]:
        return {ref.target for _, ref in self.reference_paths()}

    def provider_attributes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.attributes.items() if k not in META_ATTRIBUTES}

    def serialized_config(self) -> Dict[str, Any]:
        return serialize_value(self.attributes)

    def config_hash(self) -> str:
        return hash_config(self.serialized_config())


def iter_references(value: Any, path: str = "") -> Iterator[Tuple[str, Reference]]:
    # List indices are not part of the path: "vpc_config.subnet_ids".
    if isinstance(value, Reference):
        yield path, value
    elif isinstance(value, Template):
        for ref in value.references:
            yield path, ref
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from iter_references(item, f"{path}.{key}" if path else key)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item, path)


def serialize_value(value: Any) -> Any:
    """Render a desired value as plain JSON data, references as expressions."""
    if isinstance(value, (Reference, Template)):
        return value.expression
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every reference by the value ``lookup`` returns for it."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        return "".join(
            str(lookup(p)) if isinstance(p, Reference) else p for p in value.parts
        )
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(v, lookup) for v in value]
    return value


def hash_config(config: Dict[str, Any]) -> str:
    canonical = json.dumps(config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def changed_keys(old: Dict[str, Any], new: Dict[str, Any]) -> Set[str]:
    """Top-level attribute names whose serialized value differs."""
    keys = set(old) | set(new)
    return {k for k in keys if old.get(k) != new.get(k)}


@dataclass
class Configuration:
    """A parsed desired model: resources plus named outputs."""
    resources: List[Resource] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)

    def extend(self, other: "Configuration") -> None:
        self.resources.extend(other.resources)
        self.outputs.update(other.outputs)
