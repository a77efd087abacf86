"""
The reconcile entry points: plan, apply, destroy.

Each one takes the state lock for its whole duration, so two runs
against the same state file never interleave.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

from converge.config import Settings
from converge.engine.executor import EventCallback, Executor, RetryPolicy, dig_attribute
from converge.engine.planner import make_destroy_plan, make_plan
from converge.engine.state import StateStore
from converge.models.plan import ApplyResult, Plan
from converge.models.resource import Configuration, Reference, ResourceID, resolve_value
from converge.models.schema import KindRegistry
from converge.models.state import RealizedState
from converge.providers.base import Provider

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[Plan], bool]


def refresh_states(provider: Provider, states: Dict[ResourceID, RealizedState]) -> List[ResourceID]:
    """
    Reconcile recorded state with what the provider reports. Resources that
    vanished are forgotten; literal attributes changed out of band are
    written into the recorded config so the planner sees the drift.
    Returns the drifted ResourceIDs.
    """
    drifted: List[ResourceID] = []
    for rid in sorted(states):
        st = states[rid]
        actual = provider.read(st.provider_id)
        if actual is None:
            logger.warning("Drift: %s (%s) no longer exists", rid, st.provider_id)
            del states[rid]
            drifted.append(rid)
            continue
        changed = [
            k for k, v in st.config.items()
            if k in actual and "${" not in str(v) and actual[k] != v
        ]
        st.attributes = actual
        if changed:
            logger.warning("Drift: %s changed outside converge: %s", rid, ", ".join(sorted(changed)))
            for k in changed:
                st.config[k] = actual[k]
            st.config_hash = ""
            drifted.append(rid)
    return drifted


class Reconciler:
    def __init__(
        self,
        store: StateStore,
        provider: Provider,
        registry: KindRegistry,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.provider = provider
        self.registry = registry
        self.settings = settings or Settings()

    def _executor(self, config, states, cancel_event, on_event) -> Executor:
        return Executor(
            self.provider,
            {r.id: r for r in config.resources},
            dict(states),
            parallelism=self.settings.parallelism,
            retry=RetryPolicy(
                max_attempts=self.settings.max_attempts,
                base_delay=self.settings.backoff_base,
                max_delay=self.settings.backoff_max,
            ),
            cancel_event=cancel_event,
            on_event=on_event,
        )

    def plan(self, config: Configuration, refresh: bool = False) -> Plan:
        """Dry run: the differ's output only, nothing is executed or saved."""
        with self.store.lock("plan", timeout=self.settings.lock_timeout):
            states = self.store.load()
            if refresh:
                refresh_states(self.provider, states)
            return make_plan(config.resources, states, self.registry)

    def apply(
        self,
        config: Configuration,
        refresh: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        on_event: Optional[EventCallback] = None,
    ) -> Optional[ApplyResult]:
        """
        Plan then execute. Returns None if ``confirm`` declined the plan.
        Whatever state was realized is saved even when execution fails.
        """
        return self._run("apply", config, refresh, confirm, cancel_event, on_event)

    def destroy(
        self,
        config: Optional[Configuration] = None,
        confirm: Optional[ConfirmCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        on_event: Optional[EventCallback] = None,
    ) -> Optional[ApplyResult]:
        return self._run("destroy", config or Configuration(), False, confirm, cancel_event, on_event)

    def _run(self, operation, config, refresh, confirm, cancel_event, on_event) -> Optional[ApplyResult]:
        with self.store.lock(operation, timeout=self.settings.lock_timeout):
            states = self.store.load()
            if refresh:
                refresh_states(self.provider, states)

            if operation == "destroy":
                plan = make_destroy_plan(states, self.registry)
            else:
                plan = make_plan(config.resources, states, self.registry)

            if plan.is_empty:
                logger.info("Nothing to %s", operation)
                if refresh:
                    self.store.save(states)
                return ApplyResult(plan=plan)
            if confirm is not None and not confirm(plan):
                return None

            executor = self._executor(config, states, cancel_event, on_event)
            try:
                result = executor.run(plan)
            finally:
                self.store.save(executor.states)
                self.provider.close()

        logger.info(
            "%s %s: %d succeeded, %d failed, %d skipped",
            operation.capitalize(), result.status.value,
            len(result.succeeded), len(result.failed), len(result.skipped),
        )
        return result

    def state(self) -> Dict[ResourceID, RealizedState]:
        return self.store.load()

    def outputs(self, config: Configuration,
                states: Optional[Mapping[ResourceID, RealizedState]] = None) -> Dict[str, Any]:
        """Resolve configuration outputs against realized state. Unresolvable ones are None."""
        if states is None:
            states = self.store.load()
        values: Dict[str, Any] = {}

        for name, expr in config.outputs.items():
            def lookup(ref: Reference) -> Any:
                st = states[ref.target]
                if ref.attribute is None:
                    return st.provider_id
                return dig_attribute(st, ref.attribute)

            try:
                values[name] = resolve_value(expr, lookup)
            except (KeyError, IndexError, TypeError):
                logger.warning("Output '%s' cannot be resolved yet", name)
                values[name] = None
        return values
