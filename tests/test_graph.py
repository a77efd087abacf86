"""
Dependency graph tests — ordering, ranks and cycle detection.
"""
import itertools
import os
import random

import pytest

from converge.engine.graph import DependencyGraph, build_graph
from converge.errors import ConfigurationError
from converge.models.resource import Resource, ResourceID
from converge.models.state import RealizedState
from converge.parsers.expressions import parse_value

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


def _res(rid: str, **attrs) -> Resource:
    kind, name = rid.split(".")
    return Resource(kind, name, parse_value(attrs))


def _rid(text: str) -> ResourceID:
    return ResourceID.parse(text)


class TestOrdering:
    def test_vpc_before_subnet(self):
        g = build_graph([
            _res("aws_subnet.s", vpc_id="${aws_vpc.v.id}"),
            _res("aws_vpc.v", cidr_block="10.0.0.0/16"),
        ])
        assert g.topological_order() == [_rid("aws_vpc.v"), _rid("aws_subnet.s")]
        assert g.ranks() == {_rid("aws_vpc.v"): 0, _rid("aws_subnet.s"): 1}

    def test_fixture_topology_order_respects_references(self):
        from converge.parsers import terraform
        config = terraform.parse_file(os.path.join(FIXTURES, "eks_topology.tf"))
        g = build_graph(config.resources)
        order = g.topological_order()
        position = {rid: i for i, rid in enumerate(order)}
        for r in config.resources:
            for dep in r.references:
                assert position[dep] < position[r.id], f"{dep} must precede {r.id}"
        assert order[-1] == _rid("aws_eks_node_group.workers")

    def test_random_dags_never_place_dependents_first(self):
        rng = random.Random(7)
        for _ in range(25):
            n = rng.randint(2, 15)
            resources = []
            for i in range(n):
                deps = [j for j in range(i) if rng.random() < 0.3]
                attrs = {f"ref{j}": f"${{aws_vpc.n{j}.id}}" for j in deps}
                resources.append(_res(f"aws_vpc.n{i}", **attrs))
            rng.shuffle(resources)
            g = build_graph(resources)
            order = g.topological_order()
            ranks = g.ranks()
            position = {rid: i for i, rid in enumerate(order)}
            for r in resources:
                for dep in r.references:
                    assert position[dep] < position[r.id]
                    assert ranks[dep] < ranks[r.id]

    def test_rank_is_longest_path(self):
        g = build_graph([
            _res("aws_vpc.v"),
            _res("aws_subnet.s", vpc_id="${aws_vpc.v.id}"),
            _res("aws_nat_gateway.n", subnet_id="${aws_subnet.s.id}"),
            _res("aws_route_table.r", vpc_id="${aws_vpc.v.id}",
                 route=[{"nat_gateway_id": "${aws_nat_gateway.n.id}"}]),
        ])
        assert g.ranks()[_rid("aws_route_table.r")] == 3

    def test_independent_branches(self):
        g = build_graph([
            _res("aws_vpc.v"),
            _res("aws_subnet.a", vpc_id="${aws_vpc.v.id}"),
            _res("aws_subnet.b", vpc_id="${aws_vpc.v.id}"),
        ])
        assert g.independent(_rid("aws_subnet.a"), _rid("aws_subnet.b"))
        assert not g.independent(_rid("aws_subnet.a"), _rid("aws_vpc.v"))
        assert g.dependents(_rid("aws_vpc.v")) == {_rid("aws_subnet.a"), _rid("aws_subnet.b")}
        assert g.descendants(_rid("aws_vpc.v")) == {_rid("aws_subnet.a"), _rid("aws_subnet.b")}


class TestCycles:
    def test_two_node_cycle(self):
        resources = [
            _res("aws_vpc.a", x="${aws_vpc.b.id}"),
            _res("aws_vpc.b", x="${aws_vpc.a.id}"),
        ]
        with pytest.raises(ConfigurationError) as exc:
            build_graph(resources)
        assert "aws_vpc.a -> aws_vpc.b -> aws_vpc.a" in str(exc.value)

    def test_cycle_path_is_complete(self):
        resources = [
            _res("aws_vpc.root"),
            _res("aws_vpc.a", x="${aws_vpc.root.id}", y="${aws_vpc.c.id}"),
            _res("aws_vpc.b", x="${aws_vpc.a.id}"),
            _res("aws_vpc.c", x="${aws_vpc.b.id}"),
        ]
        g = DependencyGraph.from_resources(resources)
        cycle = g.find_cycle()
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {_rid("aws_vpc.a"), _rid("aws_vpc.b"), _rid("aws_vpc.c")}
        for src, dst in zip(cycle, cycle[1:]):
            assert dst in g.dependencies(src)

    def test_long_chain_does_not_exhaust_stack(self):
        resources = [_res("aws_vpc.n0")]
        for i in range(1, 3000):
            resources.append(_res(f"aws_vpc.n{i}", x=f"${{aws_vpc.n{i - 1}.id}}"))
        g = build_graph(resources)
        assert g.ranks()[_rid("aws_vpc.n2999")] == 2999

    def test_every_permutation_of_a_triangle_is_detected(self):
        names = ["a", "b", "c"]
        for perm in itertools.permutations(names):
            resources = [
                _res(f"aws_vpc.{perm[i]}", x=f"${{aws_vpc.{perm[(i + 1) % 3]}.id}}")
                for i in range(3)
            ]
            with pytest.raises(ConfigurationError, match="dependency cycle"):
                build_graph(resources)


class TestStateGraph:
    def test_from_state_uses_recorded_dependencies(self):
        states = {
            _rid("aws_vpc.v"): RealizedState(_rid("aws_vpc.v"), "vpc-1"),
            _rid("aws_subnet.s"): RealizedState(
                _rid("aws_subnet.s"), "subnet-1", dependencies=[_rid("aws_vpc.v")]
            ),
            _rid("aws_subnet.orphan"): RealizedState(
                _rid("aws_subnet.orphan"), "subnet-2", dependencies=[_rid("aws_vpc.gone")]
            ),
        }
        g = DependencyGraph.from_state(states)
        assert g.dependents(_rid("aws_vpc.v")) == {_rid("aws_subnet.s")}
        assert g.dependencies(_rid("aws_subnet.orphan")) == set()
