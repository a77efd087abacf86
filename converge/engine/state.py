"""
Durable record of realized state, with an advisory lock per state file.
"""
import json
import logging
import os
import shutil
import socket
import tempfile
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, Mapping, Optional

from converge.errors import StateCorruptionError, StateLockError
from converge.models.resource import ResourceID
from converge.models.state import RealizedState

logger = logging.getLogger(__name__)

# Bump when the on-disk layout changes; older readers refuse newer files.
STATE_VERSION = 1


class StateStore:
    def __init__(self, path: str):
        self.path = path
        self.lock_path = f"{path}.lock"
        self.backup_path = f"{path}.backup"
        self.serial = 0
        self.lineage: Optional[str] = None

    # ------------------------------------------------------------ read
    def load(self) -> Dict[ResourceID, RealizedState]:
        if not os.path.exists(self.path):
            self.serial = 0
            self.lineage = None
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise StateCorruptionError(f"cannot read state file {self.path}: {exc}")

        if not isinstance(data, dict):
            raise StateCorruptionError(f"{self.path}: expected a JSON object")

        version = data.get("version")
        if not isinstance(version, int):
            raise StateCorruptionError(f"{self.path}: missing or invalid 'version'")
        if version > STATE_VERSION:
            raise StateCorruptionError(
                f"{self.path} was written with state version {version}; "
                f"this release understands up to {STATE_VERSION}. Upgrade converge."
            )

        states: Dict[ResourceID, RealizedState] = {}
        try:
            for entry in data.get("resources", []):
                st = RealizedState.from_dict(entry)
                if st.resource_id in states:
                    raise StateCorruptionError(f"{self.path}: duplicate entry for {st.resource_id}")
                states[st.resource_id] = st
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise StateCorruptionError(f"{self.path}: malformed resource entry: {exc}")

        self.serial = int(data.get("serial", 0))
        self.lineage = data.get("lineage")
        logger.debug("Loaded %d resource(s) from %s (serial %d)", len(states), self.path, self.serial)
        return states

    # ------------------------------------------------------------ write
    def save(self, states: Mapping[ResourceID, RealizedState]) -> None:
        """
        Write atomically: temp file in the same directory, fsync, rename.
        The previous file is kept as ``<path>.backup``.
        """
        self.serial += 1
        if self.lineage is None:
            self.lineage = str(uuid.uuid4())

        doc = {
            "version": STATE_VERSION,
            "serial": self.serial,
            "lineage": self.lineage,
            "resources": [states[rid].to_dict() for rid in sorted(states)],
        }

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp = tempfile.mkstemp(prefix=".converge-state-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(doc, fh, indent=2, sort_keys=True)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            if os.path.exists(self.path):
                shutil.copy2(self.path, self.backup_path)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.debug("Saved %d resource(s) to %s (serial %d)", len(states), self.path, self.serial)

    # ------------------------------------------------------------ lock
    def lock_info(self) -> Optional[dict]:
        try:
            with open(self.lock_path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {"holder": "unknown"}

    def _try_lock(self, operation: str) -> bool:
        os.makedirs(os.path.dirname(os.path.abspath(self.lock_path)), exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        info = {
            "id": str(uuid.uuid4()),
            "operation": operation,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "created": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(info, fh)
        return True

    @contextmanager
    def lock(self, operation: str = "apply", timeout: float = 0.0,
             poll_interval: float = 0.5) -> Iterator[None]:
        """
        Hold the advisory lock for the duration of the block. Waits up to
        ``timeout`` seconds for another run to release it.
        """
        deadline = time.monotonic() + timeout
        while not self._try_lock(operation):
            if time.monotonic() >= deadline:
                holder = self.lock_info() or {}
                raise StateLockError(
                    f"state {self.path} is locked by {holder.get('operation', '?')} "
                    f"(pid {holder.get('pid', '?')} on {holder.get('host', '?')}, "
                    f"since {holder.get('created', '?')}). "
                    f"Run 'converge force-unlock' if that run is gone."
                )
            time.sleep(min(poll_interval, max(deadline - time.monotonic(), 0)))
        logger.debug("Acquired state lock %s for %s", self.lock_path, operation)
        try:
            yield
        finally:
            self.release()

    def release(self) -> None:
        try:
            os.unlink(self.lock_path)
            logger.debug("Released state lock %s", self.lock_path)
        except FileNotFoundError:
            pass

    def force_unlock(self) -> bool:
        """Remove a stale lock. Returns whether there was one."""
        if not os.path.exists(self.lock_path):
            return False
        self.release()
        return True
