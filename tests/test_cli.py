import json
import os
import subprocess
import sys

import pytest
from click.testing import CliRunner

from converge.cli import cli
from converge.engine.state import StateStore

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
NETWORK = os.path.join(FIXTURES, "network.yaml")
EKS = os.path.join(FIXTURES, "eks_topology.tf")


def test_module_execution():
    """Test that 'python -m converge' works."""
    result = subprocess.run(
        [sys.executable, "-m", "converge", "--help"],
        capture_output=True,
        text=True
    )
    assert result.returncode == 0
    assert "converge" in result.stdout


class TestCommands:
    @pytest.fixture(autouse=True)
    def workspace(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        self.tmp = tmp_path
        self.state = str(tmp_path / "state.json")
        self.runner = CliRunner()
        self.base = ["--no-color", "--state", self.state, "--provider-path", str(tmp_path / "cloud.json")]

    def invoke(self, *args, **kwargs):
        return self.runner.invoke(cli, self.base + list(args), obj={}, **kwargs)

    def test_plan_json(self):
        report = self.tmp / "plan.json"
        result = self.invoke("plan", NETWORK, "--format", "json", "-o", str(report))
        assert result.exit_code == 0, result.output
        data = json.loads(report.read_text())
        assert data["plan"]["summary"]["create"] == 6
        first = data["plan"]["operations"][0]
        assert first["resource_id"] == "aws_vpc.main"
        assert first["kind"] == "create"
        assert not os.path.exists(self.state)

    def test_detailed_exitcode(self):
        assert self.invoke("plan", NETWORK, "--detailed-exitcode").exit_code == 2
        assert self.invoke("apply", NETWORK, "--auto-approve").exit_code == 0
        assert self.invoke("plan", NETWORK, "--detailed-exitcode").exit_code == 0

    def test_apply_state_and_destroy(self):
        result = self.invoke("apply", NETWORK, "--auto-approve")
        assert result.exit_code == 0, result.output

        listed = self.invoke("state", "list")
        assert listed.exit_code == 0
        assert "aws_vpc.main\tvpc-" in listed.output
        assert "aws_route_table_association.public\trtbassoc-" in listed.output

        shown = self.invoke("state", "show", "aws_subnet.public")
        assert shown.exit_code == 0
        assert '"provider_id": "subnet-' in shown.output

        missing = self.invoke("state", "show", "aws_subnet.nope")
        assert missing.exit_code == 1

        destroyed = self.invoke("destroy", "--auto-approve")
        assert destroyed.exit_code == 0, destroyed.output
        assert StateStore(self.state).load() == {}

    def test_apply_eks_topology(self):
        report = self.tmp / "apply.json"
        result = self.invoke("apply", EKS, "--auto-approve", "--parallelism", "4",
                             "--format", "json", "-o", str(report))
        assert result.exit_code == 0, result.output
        data = json.loads(report.read_text())
        assert data["result"]["status"] == "succeeded"
        assert len(data["result"]["succeeded"]) == 21
        assert data["outputs"]["cluster_endpoint"].startswith("https://")

    def test_declined_prompt(self):
        result = self.invoke("apply", NETWORK, input="n\n")
        assert result.exit_code == 0
        assert "cancelled" in result.output
        assert not os.path.exists(self.state)

    def test_bad_parallelism(self):
        assert self.invoke("apply", NETWORK, "--parallelism", "0").exit_code == 2

    def test_cycle_is_config_error(self):
        tf = self.tmp / "cycle.tf"
        tf.write_text(
            'resource "aws_vpc" "a" {\n  tags = { peer = aws_vpc.b.id }\n}\n'
            'resource "aws_vpc" "b" {\n  tags = { peer = aws_vpc.a.id }\n}\n'
        )
        result = self.invoke("plan", str(tf))
        assert result.exit_code == 2
        assert "dependency cycle" in result.output

    def test_locked_state_and_force_unlock(self):
        store = StateStore(self.state)
        assert store._try_lock("apply")
        assert self.invoke("plan", NETWORK).exit_code == 3
        assert self.invoke("force-unlock").exit_code == 0
        assert store.lock_info() is None
        assert self.invoke("plan", NETWORK).exit_code == 0

    def test_corrupt_state_is_state_error(self):
        with open(self.state, "w") as fh:
            fh.write("{broken")
        assert self.invoke("state", "list").exit_code == 3

    def test_failed_settings_file(self):
        (self.tmp / "converge.yaml").write_text("parallelism: 0\n")
        assert self.invoke("kinds").exit_code == 2

    def test_graph(self):
        result = self.invoke("graph", NETWORK)
        assert result.exit_code == 0
        assert "graph LR" in result.output
        assert "aws_subnet_public --> aws_vpc_main" in result.output

    def test_kinds(self):
        result = self.invoke("kinds")
        assert result.exit_code == 0
        assert "aws_vpc" in result.output

    def test_markdown_encoding_and_newline(self):
        output_file = self.tmp / "plan.md"
        result = self.invoke("plan", NETWORK, "--format", "markdown", "--output", str(output_file))
        assert result.exit_code == 0

        with open(output_file, "rb") as f:
            content = f.read()
            assert b"\r\n" not in content
            assert b"\n" in content
        assert "```mermaid" in content.decode("utf-8")
