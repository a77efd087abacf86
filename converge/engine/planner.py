"""
Differ/Planner: desired model + realized state -> ordered Plan.
"""
import heapq
import logging
from typing import Dict, List, Mapping, Optional, Set, Tuple

from converge.engine.graph import DependencyGraph, build_graph
from converge.errors import ConfigurationError
from converge.models.plan import Action, Operation, OperationKey, Plan
from converge.models.resource import Resource, ResourceID, changed_keys
from converge.models.schema import KindRegistry, validate
from converge.models.state import RealizedState

logger = logging.getLogger(__name__)


def _classify(
    resource: Resource,
    state: Optional[RealizedState],
    registry: KindRegistry,
) -> Tuple[Optional[Action], Tuple[str, ...]]:
    """Action for one resource ignoring its neighbours, plus changed keys."""
    if state is None:
        return Action.CREATE, ()
    if resource.config_hash() == state.config_hash:
        return None, ()

    changed = tuple(sorted(changed_keys(state.config, resource.serialized_config())))
    schema = registry[resource.kind]
    if schema.requires_replacement(changed):
        return Action.REPLACE, changed
    return Action.UPDATE, changed


def _gets_new_id(
    target: ResourceID,
    dependent: ResourceID,
    actions: Mapping[ResourceID, Action],
    states: Mapping[ResourceID, RealizedState],
) -> bool:
    """Whether ``dependent`` still points at an old provider id of ``target``."""
    action = actions.get(target)
    if action == Action.REPLACE:
        return True
    # Recreated after it vanished outside converge
    return action == Action.CREATE and target in states[dependent].dependencies


def _propagate_replacements(
    desired: Mapping[ResourceID, Resource],
    states: Mapping[ResourceID, RealizedState],
    graph: DependencyGraph,
    actions: Dict[ResourceID, Action],
    changed: Dict[ResourceID, Tuple[str, ...]],
) -> None:
    """
    A resource that gets a new provider id must be deleted before its old
    dependents are, and they cannot be repointed before it exists again.
    Everything still using it is therefore replaced as well, ordering-only
    references included.
    """
    for rid in graph.topological_order():
        if rid not in states or actions.get(rid) in (Action.CREATE, Action.REPLACE):
            continue
        affected: Set[str] = set()
        for path, ref in desired[rid].reference_paths():
            if _gets_new_id(ref.target, rid, actions, states):
                affected.add(path)
        if not affected:
            continue
        actions[rid] = Action.REPLACE
        roots = {p.split(".", 1)[0] for p in affected}
        changed[rid] = tuple(sorted(set(changed.get(rid, ())) | roots))
        logger.debug("%s follows replaced dependency", rid)


def _order(operations: List[Operation]) -> List[Operation]:
    """
    Topological order over ``requires``. Among ready operations, deletes go
    first by descending rank, then creates and updates by ascending rank.
    """
    def priority(op: Operation):
        if op.kind == Action.DELETE:
            return (0, -op.dependency_rank, op.resource_id)
        return (1, op.dependency_rank, op.resource_id)

    by_key = {op.key: op for op in operations}
    waiting = {op.key: set(op.requires) for op in operations}
    requirers: Dict[OperationKey, List[OperationKey]] = {k: [] for k in by_key}
    for op in operations:
        for req in op.requires:
            requirers[req].append(op.key)

    ready = [(priority(op), op.key) for op in operations if not op.requires]
    heapq.heapify(ready)
    ordered: List[Operation] = []
    while ready:
        _, key = heapq.heappop(ready)
        ordered.append(by_key[key])
        for nxt in requirers[key]:
            waiting[nxt].discard(key)
            if not waiting[nxt]:
                heapq.heappush(ready, (priority(by_key[nxt]), nxt))

    if len(ordered) != len(operations):
        stuck = sorted(str(by_key[k]) for k in waiting if waiting[k])
        raise ConfigurationError([f"operations cannot be ordered: {', '.join(stuck)}"])
    return ordered


def make_plan(
    resources: List[Resource],
    states: Mapping[ResourceID, RealizedState],
    registry: KindRegistry,
) -> Plan:
    """
    Validate the desired model, diff it against realized state and return
    an ordered plan. Raises ConfigurationError before anything else if the
    model is invalid or cyclic.
    """
    desired = validate(resources, registry)
    graph = build_graph(resources)
    state_graph = DependencyGraph.from_state(states)

    actions: Dict[ResourceID, Action] = {}
    changed: Dict[ResourceID, Tuple[str, ...]] = {}
    unchanged: List[ResourceID] = []

    for rid, resource in desired.items():
        action, keys = _classify(resource, states.get(rid), registry)
        if action is not None:
            actions[rid] = action
            changed[rid] = keys

    for rid in states:
        if rid not in desired:
            actions[rid] = Action.DELETE

    _propagate_replacements(desired, states, graph, actions, changed)

    for rid in desired:
        if rid not in actions:
            unchanged.append(rid)

    create_ranks = graph.ranks()
    delete_ranks = state_graph.ranks()

    deletes: Dict[ResourceID, Operation] = {}
    applies: Dict[ResourceID, Operation] = {}

    for rid, action in actions.items():
        if action in (Action.DELETE, Action.REPLACE):
            deletes[rid] = Operation(
                kind=Action.DELETE,
                resource_id=rid,
                dependency_rank=delete_ranks.get(rid, 0),
                replacing=action == Action.REPLACE,
                changed=changed.get(rid, ()),
            )
        if action in (Action.CREATE, Action.REPLACE, Action.UPDATE):
            applies[rid] = Operation(
                kind=Action.CREATE if action != Action.UPDATE else Action.UPDATE,
                resource_id=rid,
                dependency_rank=create_ranks[rid],
                replacing=action == Action.REPLACE,
                changed=changed.get(rid, ()),
            )

    # Delete(X) waits until nothing uses X any more: dependents recorded in
    # state are either deleted themselves or updated to drop the reference.
    for rid, op in deletes.items():
        requires: List[OperationKey] = []
        for d in sorted(state_graph.dependents(rid)):
            if d in deletes:
                requires.append(deletes[d].key)
            elif d in applies:
                requires.append(applies[d].key)
        op.requires = tuple(requires)

    # Create/Update(X) waits for its own deletion when replacing, and for
    # every planned create/update of what it references.
    for rid, op in applies.items():
        requires = []
        if rid in deletes:
            requires.append(deletes[rid].key)
        for dep in sorted(graph.dependencies(rid)):
            if dep in applies:
                requires.append(applies[dep].key)
        op.requires = tuple(requires)

    ordered = _order(list(deletes.values()) + list(applies.values()))

    plan = Plan(
        operations=ordered,
        changes={rid: actions[rid] for rid in sorted(actions)},
        unchanged=sorted(unchanged),
    )
    logger.info(
        "Plan: %s",
        ", ".join(f"{n} to {a}" for a, n in plan.summary().items() if n) or "no changes",
    )
    return plan


def make_destroy_plan(
    states: Mapping[ResourceID, RealizedState],
    registry: KindRegistry,
) -> Plan:
    """Plan against an empty desired model."""
    return make_plan([], states, registry)
