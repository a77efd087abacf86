from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from converge.models.resource import ResourceID


class Action(str, Enum):
    CREATE  = "create"
    UPDATE  = "update"
    REPLACE = "replace"
    DELETE  = "delete"


class OperationStatus(str, Enum):
    PENDING   = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED    = "failed"
    SKIPPED   = "skipped"


class ResultStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED    = "failed"
    CANCELLED = "cancelled"


OperationKey = Tuple[Action, ResourceID]


@dataclass
class Operation:
    kind: Action                 # CREATE, UPDATE or DELETE; REPLACE is split in two
    resource_id: ResourceID
    dependency_rank: int = 0
    requires: Tuple[OperationKey, ...] = ()
    replacing: bool = False
    changed: Tuple[str, ...] = ()

    @property
    def key(self) -> OperationKey:
        return (self.kind, self.resource_id)

    def __str__(self) -> str:
        return f"{self.kind.value.capitalize()}({self.resource_id})"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "resource_id": str(self.resource_id),
            "dependency_rank": self.dependency_rank,
            "requires": [f"{k.value}:{rid}" for k, rid in self.requires],
            "replacing": self.replacing,
            "changed": list(self.changed),
        }


@dataclass
class Plan:
    operations: List[Operation] = field(default_factory=list)
    changes: Dict[ResourceID, Action] = field(default_factory=dict)
    unchanged: List[ResourceID] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def summary(self) -> Dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for action in self.changes.values():
            counts[action.value] += 1
        return counts

    def get(self, kind: Action, resource_id: ResourceID) -> Optional[Operation]:
        for op in self.operations:
            if op.key == (kind, resource_id):
                return op
        return None

    def to_dict(self) -> dict:
        return {
            "summary": self.summary(),
            "changes": {str(rid): a.value for rid, a in self.changes.items()},
            "operations": [op.to_dict() for op in self.operations],
        }


@dataclass
class OperationResult:
    operation: Operation
    status: OperationStatus = OperationStatus.PENDING
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "operation": str(self.operation),
            "resource_id": str(self.operation.resource_id),
            "status": self.status.value,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class ApplyResult:
    plan: Plan
    results: Dict[OperationKey, OperationResult] = field(default_factory=dict)
    cancelled: bool = False

    def _ids(self, status: OperationStatus) -> List[ResourceID]:
        seen: List[ResourceID] = []
        for r in self.results.values():
            if r.status == status and r.operation.resource_id not in seen:
                seen.append(r.operation.resource_id)
        return seen

    @property
    def succeeded(self) -> List[ResourceID]:
        return self._ids(OperationStatus.SUCCEEDED)

    @property
    def failed(self) -> List[ResourceID]:
        return self._ids(OperationStatus.FAILED)

    @property
    def skipped(self) -> List[ResourceID]:
        return self._ids(OperationStatus.SKIPPED)

    @property
    def status(self) -> ResultStatus:
        if self.cancelled:
            return ResultStatus.CANCELLED
        if any(r.status != OperationStatus.SUCCEEDED for r in self.results.values()):
            return ResultStatus.FAILED
        return ResultStatus.SUCCEEDED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "succeeded": [str(r) for r in self.succeeded],
            "failed": [str(r) for r in self.failed],
            "skipped": [str(r) for r in self.skipped],
            "operations": [r.to_dict() for r in self.results.values()],
        }
