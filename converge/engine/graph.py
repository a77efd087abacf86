"""
Dependency graph derived from attribute references.

An edge A -> B means A references B: B must be realized before A is
created, and A must be gone before B is destroyed.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Set

from converge.errors import ConfigurationError
from converge.models.resource import Resource, ResourceID
from converge.models.state import RealizedState

WHITE, GRAY, BLACK = 0, 1, 2


class DependencyGraph:
    def __init__(self, nodes: Iterable[ResourceID] = ()):
        self._deps: Dict[ResourceID, Set[ResourceID]] = {}
        self._rdeps: Dict[ResourceID, Set[ResourceID]] = {}
        for n in nodes:
            self.add_node(n)

    # ------------------------------------------------------------ building
    def add_node(self, node: ResourceID) -> None:
        self._deps.setdefault(node, set())
        self._rdeps.setdefault(node, set())

    def add_edge(self, source: ResourceID, target: ResourceID) -> None:
        """``source`` depends on ``target``."""
        self.add_node(source)
        self.add_node(target)
        self._deps[source].add(target)
        self._rdeps[target].add(source)

    @classmethod
    def from_resources(cls, resources: Iterable[Resource]) -> "DependencyGraph":
        graph = cls()
        resources = list(resources)
        for r in resources:
            graph.add_node(r.id)
        for r in resources:
            for target in r.references:
                graph.add_edge(r.id, target)
        return graph

    @classmethod
    def from_state(cls, states: Mapping[ResourceID, RealizedState]) -> "DependencyGraph":
        """Graph of what exists, from the dependencies recorded at apply time."""
        graph = cls(states)
        for rid, st in states.items():
            for target in st.dependencies:
                # A dependency already gone from state no longer constrains anything
                if target in states:
                    graph.add_edge(rid, target)
        return graph

    # ------------------------------------------------------------ queries
    def __contains__(self, node: ResourceID) -> bool:
        return node in self._deps

    def __len__(self) -> int:
        return len(self._deps)

    def dependencies(self, node: ResourceID) -> Set[ResourceID]:
        return set(self._deps.get(node, ()))

    def dependents(self, node: ResourceID) -> Set[ResourceID]:
        return set(self._rdeps.get(node, ()))

    def _reach(self, start: ResourceID, edges: Dict[ResourceID, Set[ResourceID]]) -> Set[ResourceID]:
        seen: Set[ResourceID] = set()
        stack = list(edges.get(start, ()))
        while stack:
            n = stack.pop()
            if n in seen:
                continue
            seen.add(n)
            stack.extend(edges.get(n, ()))
        return seen

    def ancestors(self, node: ResourceID) -> Set[ResourceID]:
        """Everything ``node`` transitively depends on."""
        return self._reach(node, self._deps)

    def descendants(self, node: ResourceID) -> Set[ResourceID]:
        """Everything that transitively depends on ``node``."""
        return self._reach(node, self._rdeps)

    def independent(self, a: ResourceID, b: ResourceID) -> bool:
        return a != b and b not in self.ancestors(a) and a not in self.ancestors(b)

    # ------------------------------------------------------------ ordering
    def find_cycle(self) -> Optional[List[ResourceID]]:
        """
        Three-color depth-first search. Returns the cycle as a path that
        starts and ends on the same node, or None.

        Iterative so that long dependency chains cannot exhaust the stack.
        """
        color = {n: WHITE for n in self._deps}
        for root in sorted(self._deps):
            if color[root] != WHITE:
                continue
            path: List[ResourceID] = [root]
            stack = [iter(sorted(self._deps[root]))]
            color[root] = GRAY
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    color[path.pop()] = BLACK
                    continue
                if color[nxt] == GRAY:
                    return path[path.index(nxt):] + [nxt]
                if color[nxt] == WHITE:
                    color[nxt] = GRAY
                    path.append(nxt)
                    stack.append(iter(sorted(self._deps[nxt])))
        return None

    def check_acyclic(self) -> None:
        cycle = self.find_cycle()
        if cycle:
            raise ConfigurationError(
                ["dependency cycle: " + " -> ".join(str(n) for n in cycle)]
            )

    def topological_order(self) -> List[ResourceID]:
        """Dependencies first. Ties are broken by ResourceID for stable output."""
        self.check_acyclic()
        ranks = self.ranks()
        return sorted(self._deps, key=lambda n: (ranks[n], n))

    def ranks(self) -> Dict[ResourceID, int]:
        """Topological depth: 0 for no dependencies, else 1 + deepest dependency."""
        self.check_acyclic()
        ranks: Dict[ResourceID, int] = {}
        for root in self._deps:
            if root in ranks:
                continue
            stack = [root]
            while stack:
                n = stack[-1]
                pending = [d for d in self._deps[n] if d not in ranks]
                if pending:
                    stack.extend(pending)
                    continue
                stack.pop()
                ranks[n] = 1 + max((ranks[d] for d in self._deps[n]), default=-1)
        return ranks


def build_graph(resources: Iterable[Resource]) -> DependencyGraph:
    """Build and cycle-check the graph of a validated desired model."""
    graph = DependencyGraph.from_resources(resources)
    graph.check_acyclic()
    return graph
