from dataclasses import dataclass, field
from typing import Any, Dict, List

from converge.models.resource import ResourceID


@dataclass
class RealizedState:
    """Last-known actual state of one resource, as returned by the provider."""
    resource_id: ResourceID
    provider_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    config_hash: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[ResourceID] = field(default_factory=list)

    def output(self, attribute: str) -> Any:
        if attribute in self.attributes:
            return self.attributes[attribute]
        if attribute == "id":
            return self.provider_id
        raise KeyError(attribute)

    def to_dict(self) -> dict:
        return {
            "kind": self.resource_id.kind,
            "name": self.resource_id.name,
            "provider_id": self.provider_id,
            "attributes": self.attributes,
            "config_hash": self.config_hash,
            "config": self.config,
            "dependencies": sorted(str(d) for d in self.dependencies),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RealizedState":
        return cls(
            resource_id=ResourceID(data["kind"], data["name"]),
            provider_id=data["provider_id"],
            attributes=dict(data.get("attributes") or {}),
            config_hash=data.get("config_hash", ""),
            config=dict(data.get("config") or {}),
            dependencies=[ResourceID.parse(d) for d in data.get("dependencies") or []],
        )
