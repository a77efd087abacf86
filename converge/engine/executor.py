"""
Runs a Plan against a provider with a bounded worker pool.

Each operation moves PENDING -> IN_FLIGHT -> SUCCEEDED | FAILED. It is
only claimed once every operation it requires has SUCCEEDED; when one
fails, everything that transitively requires it is SKIPPED while
independent branches keep going.
"""
import logging
import random
import re
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from converge.errors import OperationCancelled, ResolutionError, TransientProviderError
from converge.models.plan import (
    Action,
    ApplyResult,
    Operation,
    OperationKey,
    OperationResult,
    OperationStatus,
    Plan,
)
from converge.models.resource import Reference, Resource, ResourceID, resolve_value
from converge.models.state import RealizedState
from converge.providers.base import Provider

logger = logging.getLogger(__name__)

_PATH_TOKEN_RE = re.compile(r"[A-Za-z_][\w-]*|\[\d+\]")

EventCallback = Callable[[Operation, OperationStatus, Optional[str]], None]


@dataclass
class RetryPolicy:
    """Exponential backoff with full jitter for transient provider errors."""
    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 20.0

    def delay(self, attempt: int, rng: random.Random) -> float:
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return rng.uniform(0, ceiling)


def dig_attribute(state: RealizedState, attribute: str) -> Any:
    tokens = _PATH_TOKEN_RE.findall(attribute)
    value = state.output(tokens[0])
    for tok in tokens[1:]:
        if tok.startswith("["):
            value = value[int(tok[1:-1])]
        else:
            value = value[tok]
    return value


class Executor:
    def __init__(
        self,
        provider: Provider,
        desired: Mapping[ResourceID, Resource],
        states: Dict[ResourceID, RealizedState],
        parallelism: int = 10,
        retry: Optional[RetryPolicy] = None,
        cancel_event: Optional[threading.Event] = None,
        on_event: Optional[EventCallback] = None,
        rng: Optional[random.Random] = None,
    ):
        self.provider = provider
        self.desired = desired
        # Owned by this run; the caller persists it afterwards.
        self.states = states
        self.parallelism = max(1, parallelism)
        self.retry = retry or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.on_event = on_event
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    # ------------------------------------------------------------ scheduling
    def run(self, plan: Plan) -> ApplyResult:
        results: Dict[OperationKey, OperationResult] = {
            op.key: OperationResult(op) for op in plan.operations
        }
        requirers: Dict[OperationKey, Set[OperationKey]] = {k: set() for k in results}
        for op in plan.operations:
            for req in op.requires:
                requirers[req].add(op.key)

        in_flight: Dict[Future, OperationKey] = {}

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="converge") as pool:
            while True:
                if not self.cancel_event.is_set():
                    for op in plan.operations:
                        res = results[op.key]
                        if res.status != OperationStatus.PENDING:
                            continue
                        if all(results[r].status == OperationStatus.SUCCEEDED for r in op.requires):
                            self._transition(res, OperationStatus.IN_FLIGHT)
                            in_flight[pool.submit(self._execute, res)] = op.key

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    key = in_flight.pop(fut)
                    res = results[key]
                    exc = fut.exception()
                    if exc is None:
                        self._transition(res, OperationStatus.SUCCEEDED)
                    elif isinstance(exc, OperationCancelled):
                        # Requirers stay pending and are skipped as cancelled below
                        res.error = "cancelled"
                        self._transition(res, OperationStatus.SKIPPED)
                    else:
                        res.error = str(exc)
                        self._transition(res, OperationStatus.FAILED)
                        self._skip_requirers(key, requirers, results)

        cancelled = self.cancel_event.is_set()
        for res in results.values():
            if res.status == OperationStatus.PENDING:
                res.error = "cancelled" if cancelled else "not started"
                self._transition(res, OperationStatus.SKIPPED)

        return ApplyResult(plan=plan, results=results, cancelled=cancelled)

    def _skip_requirers(self, failed: OperationKey, requirers, results) -> None:
        stack = list(requirers[failed])
        while stack:
            key = stack.pop()
            res = results[key]
            if res.status != OperationStatus.PENDING:
                continue
            res.error = f"dependency {failed[0].value}:{failed[1]} did not succeed"
            self._transition(res, OperationStatus.SKIPPED)
            stack.extend(requirers[key])

    def _transition(self, res: OperationResult, status: OperationStatus) -> None:
        res.status = status
        if status == OperationStatus.FAILED:
            logger.error("%s failed after %d attempt(s): %s", res.operation, res.attempts, res.error)
        elif status == OperationStatus.SKIPPED:
            logger.warning("%s skipped: %s", res.operation, res.error)
        else:
            logger.debug("%s %s", res.operation, status.value)
        if self.on_event:
            self.on_event(res.operation, status, res.error)

    # ------------------------------------------------------------ work
    def _lookup(self, ref: Reference) -> Any:
        with self._lock:
            st = self.states.get(ref.target)
        if st is None:
            raise ResolutionError(f"{ref.expression}: {ref.target} has no realized state")
        if ref.attribute is None:
            return st.provider_id
        try:
            return dig_attribute(st, ref.attribute)
        except (KeyError, IndexError, TypeError):
            raise ResolutionError(f"{ref.expression}: attribute not found on {ref.target}") from None

    def _with_retry(self, res: OperationResult, call: Callable[[], Any]) -> Any:
        while True:
            res.attempts += 1
            try:
                return call()
            except TransientProviderError as exc:
                if res.attempts >= self.retry.max_attempts:
                    raise
                delay = self.retry.delay(res.attempts, self._rng)
                logger.warning(
                    "%s: transient error (%s), retrying in %.2fs [%d/%d]",
                    res.operation, exc, delay, res.attempts, self.retry.max_attempts,
                )
                # Waiting on the cancel event doubles as an interruptible sleep
                if self.cancel_event.wait(delay):
                    raise OperationCancelled(f"cancelled while retrying after: {exc}") from exc

    def _execute(self, res: OperationResult) -> None:
        op = res.operation
        rid = op.resource_id

        if op.kind == Action.DELETE:
            with self._lock:
                st = self.states.get(rid)
            if st is None:
                return
            self._with_retry(res, lambda: self.provider.delete(st.provider_id))
            with self._lock:
                self.states.pop(rid, None)
            logger.info("%s done (%s)", op, st.provider_id)
            return

        resource = self.desired[rid]
        attributes = resolve_value(resource.provider_attributes(), self._lookup)
        dependencies: List[ResourceID] = sorted(resource.references)

        if op.kind == Action.UPDATE:
            with self._lock:
                provider_id = self.states[rid].provider_id
            realized = self._with_retry(res, lambda: self.provider.update(provider_id, attributes))
        else:
            provider_id, realized = self._with_retry(
                res, lambda: self.provider.create(resource.kind, attributes)
            )

        with self._lock:
            self.states[rid] = RealizedState(
                resource_id=rid,
                provider_id=provider_id,
                attributes=realized,
                config_hash=resource.config_hash(),
                config=resource.serialized_config(),
                dependencies=dependencies,
            )
        logger.info("%s done (%s)", op, provider_id)
