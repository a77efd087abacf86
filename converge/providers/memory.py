"""
Simulated AWS provider.

Keeps "cloud" objects in memory, optionally persisted to a JSON file so
separate CLI runs see the same cloud. Generates AWS-shaped ids and
computed attributes from the kind table, can simulate eventual
consistency (a freshly created id is briefly invisible to calls that
reference it) and accepts injected faults for testing failure handling.
"""
import json
import logging
import os
import re
import string
import threading
import uuid
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Tuple

from converge.errors import PermanentProviderError, ProviderError, TransientProviderError
from converge.models.schema import KindRegistry
from converge.providers.base import Provider

logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"^[a-z]+-[0-9a-f]{17}$")


class _Blank(dict):
    def __missing__(self, key):
        return ""


def _scan_strings(val: Any) -> List[str]:
    if isinstance(val, str):
        return [val]
    if isinstance(val, dict):
        return [s for v in val.values() for s in _scan_strings(v)]
    if isinstance(val, list):
        return [s for v in val for s in _scan_strings(v)]
    return []


class MemoryProvider(Provider):
    name = "memory"

    def __init__(
        self,
        registry: KindRegistry,
        path: Optional[str] = None,
        region: str = "us-east-1",
        account: str = "123456789012",
        visibility_lag: int = 0,
    ):
        self.registry = registry
        self.path = path
        self.region = region
        self.account = account
        self.visibility_lag = visibility_lag
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._lagging: Dict[str, int] = {}
        self._faults: Dict[Tuple[str, str], Deque[ProviderError]] = defaultdict(deque)
        self._lock = threading.Lock()
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as fh:
                self.objects = json.load(fh).get("objects", {})

    # ------------------------------------------------------------ test hooks
    def inject(self, kind: str, error: ProviderError, times: int = 1, operation: str = "create") -> None:
        """Make the next ``times`` calls of ``operation`` on ``kind`` raise ``error``."""
        with self._lock:
            for _ in range(times):
                self._faults[(operation, kind)].append(error)

    def calls_for(self, operation: str) -> List[str]:
        return [target for op, target in self.calls if op == operation]

    # ------------------------------------------------------------ helpers
    def _fault(self, operation: str, kind: str) -> None:
        queue = self._faults.get((operation, kind))
        if queue:
            raise queue.popleft()

    def _check_visible(self, attributes: Dict[str, Any]) -> None:
        for s in _scan_strings(attributes):
            if not _ID_RE.match(s):
                continue
            if s not in self.objects:
                raise PermanentProviderError(f"The id '{s}' does not exist", code="InvalidID.NotFound")
            remaining = self._lagging.get(s, 0)
            if remaining > 0:
                self._lagging[s] = remaining - 1
                raise TransientProviderError(
                    f"The id '{s}' does not exist (not yet visible)", code="InvalidID.NotFound"
                )

    def _computed(self, kind: str, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        schema = self.registry.get(kind)
        if schema is None:
            return {}
        suffix = provider_id.rsplit("-", 1)[-1]
        values = _Blank({k: v for k, v in attributes.items() if isinstance(v, (str, int))})
        values.update(
            id=provider_id,
            suffix=suffix,
            SUFFIX=suffix.upper(),
            region=self.region,
            account=self.account,
            octet=int(suffix[:2], 16) % 254 + 1,
        )
        formatter = string.Formatter()
        return {k: formatter.vformat(tpl, (), values) for k, tpl in schema.computed.items()}

    def _persist(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump({"objects": self.objects}, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    # ------------------------------------------------------------ API
    def create(self, kind: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        with self._lock:
            self.calls.append(("create", kind))
            self._fault("create", kind)
            schema = self.registry.get(kind)
            if schema is None:
                raise PermanentProviderError(f"unsupported resource kind '{kind}'", code="InvalidKind")
            self._check_visible(attributes)

            prefix = schema.id_prefix or kind.split("_", 1)[-1]
            provider_id = f"{prefix}-{uuid.uuid4().hex[:17]}"
            realized = dict(attributes)
            realized.update(self._computed(kind, provider_id, attributes))
            realized["id"] = provider_id

            self.objects[provider_id] = {"kind": kind, "attributes": realized}
            if self.visibility_lag:
                self._lagging[provider_id] = self.visibility_lag
            self._persist()
        logger.debug("memory: created %s %s", kind, provider_id)
        return provider_id, realized

    def update(self, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            obj = self.objects.get(provider_id)
            kind = obj["kind"] if obj else "?"
            self.calls.append(("update", provider_id))
            self._fault("update", kind)
            if obj is None:
                raise PermanentProviderError(f"'{provider_id}' does not exist", code="NotFound")
            self._check_visible(attributes)

            realized = dict(attributes)
            realized.update(self._computed(kind, provider_id, attributes))
            realized["id"] = provider_id
            obj["attributes"] = realized
            self._persist()
        logger.debug("memory: updated %s", provider_id)
        return realized

    def delete(self, provider_id: str) -> None:
        with self._lock:
            obj = self.objects.get(provider_id)
            self.calls.append(("delete", provider_id))
            self._fault("delete", obj["kind"] if obj else "?")
            self.objects.pop(provider_id, None)
            self._lagging.pop(provider_id, None)
            self._persist()
        logger.debug("memory: deleted %s", provider_id)

    def read(self, provider_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            obj = self.objects.get(provider_id)
            return dict(obj["attributes"]) if obj else None
