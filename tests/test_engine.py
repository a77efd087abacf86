"""
End-to-end reconcile tests: Reconciler + StateStore + MemoryProvider.
"""
import json
import os

import pytest

from converge.config import Settings
from converge.engine.core import Reconciler
from converge.engine.state import STATE_VERSION, StateStore
from converge.errors import ConfigurationError, PermanentProviderError, StateCorruptionError, StateLockError
from converge.kinds import default_registry
from converge.models.plan import Action, ResultStatus
from converge.models.resource import Configuration, Resource, ResourceID
from converge.parsers import parse_files
from converge.parsers.expressions import parse_value
from converge.providers.memory import MemoryProvider

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")

V = ResourceID("aws_vpc", "v")
S = ResourceID("aws_subnet", "s")


def _res(rid: str, **attrs) -> Resource:
    kind, name = rid.split(".")
    return Resource(kind, name, parse_value(attrs))


def _config(subnet_cidr="10.0.1.0/24", vpc_cidr="10.0.0.0/16", outputs=None) -> Configuration:
    return Configuration(
        resources=[
            _res("aws_vpc.v", cidr_block=vpc_cidr),
            _res("aws_subnet.s", vpc_id="${aws_vpc.v.id}", cidr_block=subnet_cidr),
        ],
        outputs=parse_value(outputs or {}),
    )


def _ops(plan):
    return [(op.kind, op.resource_id) for op in plan.operations]


class TestReconcile:
    def setup_method(self):
        self.registry = default_registry()
        self.settings = Settings(backoff_base=0.0, backoff_max=0.0, max_attempts=3)

    def _reconciler(self, tmp_path, provider=None):
        self.store = StateStore(str(tmp_path / "state.json"))
        self.provider = provider or MemoryProvider(self.registry)
        return Reconciler(self.store, self.provider, self.registry, self.settings)

    def test_first_apply_then_idempotent(self, tmp_path):
        rec = self._reconciler(tmp_path)
        result = rec.apply(_config())
        assert result.status == ResultStatus.SUCCEEDED
        assert _ops(result.plan) == [(Action.CREATE, V), (Action.CREATE, S)]
        assert self.provider.calls == [("create", "aws_vpc"), ("create", "aws_subnet")]

        states = rec.state()
        assert set(states) == {V, S}
        assert states[S].attributes["vpc_id"] == states[V].provider_id

        assert rec.plan(_config()).is_empty
        again = rec.apply(_config())
        assert again.plan.is_empty
        assert len(self.provider.calls) == 2

    def test_cidr_change_replaces_subnet(self, tmp_path):
        rec = self._reconciler(tmp_path)
        rec.apply(_config())
        old = rec.state()[S].provider_id

        result = rec.apply(_config(subnet_cidr="10.0.9.0/24"))
        assert result.status == ResultStatus.SUCCEEDED
        assert _ops(result.plan) == [(Action.DELETE, S), (Action.CREATE, S)]
        new = rec.state()[S].provider_id
        assert new != old
        assert old not in self.provider.objects
        assert self.provider.objects[new]["attributes"]["cidr_block"] == "10.0.9.0/24"

    def test_in_place_update_keeps_id(self, tmp_path):
        rec = self._reconciler(tmp_path)
        rec.apply(_config())
        vpc_id = rec.state()[V].provider_id
        config = _config()
        config.resources[0].attributes["enable_dns_hostnames"] = True
        result = rec.apply(config)
        assert _ops(result.plan) == [(Action.UPDATE, V)]
        assert rec.state()[V].provider_id == vpc_id
        assert self.provider.calls[-1] == ("update", vpc_id)

    def test_destroy(self, tmp_path):
        rec = self._reconciler(tmp_path)
        rec.apply(_config())
        states = rec.state()
        result = rec.destroy()
        assert result.status == ResultStatus.SUCCEEDED
        assert _ops(result.plan) == [(Action.DELETE, S), (Action.DELETE, V)]
        assert self.provider.calls_for("delete") == [states[S].provider_id, states[V].provider_id]
        assert rec.state() == {}

    def test_cycle_rejected_before_any_call(self, tmp_path):
        rec = self._reconciler(tmp_path)
        config = Configuration(resources=[
            _res("aws_vpc.a", tags={"peer": "${aws_vpc.b.id}"}),
            _res("aws_vpc.b", tags={"peer": "${aws_vpc.a.id}"}),
        ])
        with pytest.raises(ConfigurationError, match="dependency cycle"):
            rec.apply(config)
        assert self.provider.calls == []
        assert not os.path.exists(self.store.path)
        assert self.store.lock_info() is None

    def test_locked_state_refuses_to_run(self, tmp_path):
        rec = self._reconciler(tmp_path)
        holder = StateStore(self.store.path)
        with holder.lock("apply"):
            with pytest.raises(StateLockError):
                rec.apply(_config())
        assert self.provider.calls == []

    def test_partial_failure_is_recorded_and_resumable(self, tmp_path):
        rec = self._reconciler(tmp_path)
        self.provider.inject("aws_subnet", PermanentProviderError("InvalidSubnet.Range"))
        result = rec.apply(_config())
        assert result.status == ResultStatus.FAILED
        assert result.failed == [S]
        assert set(rec.state()) == {V}

        retry = rec.apply(_config())
        assert _ops(retry.plan) == [(Action.CREATE, S)]
        assert retry.status == ResultStatus.SUCCEEDED

    def test_declined_confirmation_changes_nothing(self, tmp_path):
        rec = self._reconciler(tmp_path)
        seen = []

        def confirm(plan):
            seen.append(plan)
            return False

        assert rec.apply(_config(), confirm=confirm) is None
        assert len(seen) == 1
        assert self.provider.calls == []
        assert not os.path.exists(self.store.path)

    def test_newer_state_version_refused(self, tmp_path):
        rec = self._reconciler(tmp_path)
        with open(self.store.path, "w") as fh:
            json.dump({"version": STATE_VERSION + 1, "serial": 9, "resources": []}, fh)
        with pytest.raises(StateCorruptionError):
            rec.apply(_config())
        assert self.provider.calls == []


class TestRefresh:
    def setup_method(self):
        self.registry = default_registry()
        self.settings = Settings(backoff_base=0.0, backoff_max=0.0)

    def _applied(self, tmp_path):
        provider = MemoryProvider(self.registry)
        rec = Reconciler(StateStore(str(tmp_path / "state.json")), provider, self.registry, self.settings)
        rec.apply(_config())
        return rec, provider

    def test_out_of_band_change_is_planned(self, tmp_path):
        rec, provider = self._applied(tmp_path)
        vpc_id = rec.state()[V].provider_id
        provider.objects[vpc_id]["attributes"]["cidr_block"] = "172.16.0.0/16"

        assert rec.plan(_config()).is_empty
        plan = rec.plan(_config(), refresh=True)
        assert plan.changes == {V: Action.REPLACE, S: Action.REPLACE}

    def test_vanished_resource_is_recreated(self, tmp_path):
        rec, provider = self._applied(tmp_path)
        subnet_id = rec.state()[S].provider_id
        del provider.objects[subnet_id]

        plan = rec.plan(_config(), refresh=True)
        assert _ops(plan) == [(Action.CREATE, S)]
        result = rec.apply(_config(), refresh=True)
        assert result.status == ResultStatus.SUCCEEDED
        assert rec.state()[S].provider_id != subnet_id

    def test_vanished_dependency_repoints_dependents(self, tmp_path):
        rec, provider = self._applied(tmp_path)
        old_vpc = rec.state()[V].provider_id
        del provider.objects[old_vpc]

        result = rec.apply(_config(), refresh=True)
        assert result.status == ResultStatus.SUCCEEDED
        assert _ops(result.plan) == [(Action.DELETE, S), (Action.CREATE, V), (Action.CREATE, S)]
        states = rec.state()
        assert states[V].provider_id != old_vpc
        assert states[S].attributes["vpc_id"] == states[V].provider_id
        assert rec.plan(_config(), refresh=True).is_empty


class TestOutputs:
    def test_outputs_resolved_after_apply(self, tmp_path):
        registry = default_registry()
        provider = MemoryProvider(registry, path=str(tmp_path / "cloud.json"))
        rec = Reconciler(StateStore(str(tmp_path / "state.json")), provider, registry, Settings())
        config = parse_files([os.path.join(FIXTURES, "network.yaml")])

        assert rec.outputs(config) == {"vpc_arn": None, "public_subnet": None}

        result = rec.apply(config)
        assert result.status == ResultStatus.SUCCEEDED
        outputs = rec.outputs(config)
        vpc = rec.state()[ResourceID("aws_vpc", "main")]
        assert outputs["vpc_arn"] == f"arn:aws:ec2:us-east-1:123456789012:vpc/{vpc.provider_id}"
        assert outputs["public_subnet"].startswith("subnet-")

    def test_provider_persists_between_runs(self, tmp_path):
        registry = default_registry()
        cloud = str(tmp_path / "cloud.json")
        rec = Reconciler(StateStore(str(tmp_path / "state.json")),
                         MemoryProvider(registry, path=cloud), registry, Settings())
        rec.apply(_config())
        reopened = MemoryProvider(registry, path=cloud)
        for st in rec.state().values():
            assert reopened.read(st.provider_id)["id"] == st.provider_id
