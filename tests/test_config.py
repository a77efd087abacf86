"""
Settings tests — converge.yaml layering and CONVERGE_* overrides.
"""
import pytest
from click.testing import CliRunner

from converge.cli import cli
from converge.config import Settings, load_settings
from converge.errors import ConfigurationError


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(str(tmp_path / "converge.yaml"))
        assert settings == Settings()

    def test_file_then_overrides(self, tmp_path):
        f = tmp_path / "converge.yaml"
        f.write_text("parallelism: 3\nstate_path: prod.state.json\nbackoff_max: 5\n")
        settings = load_settings(str(f), state_path="override.json", lock_timeout=None)
        assert settings.parallelism == 3
        assert settings.backoff_max == 5.0
        assert settings.state_path == "override.json"
        assert settings.lock_timeout == 0.0

    def test_unknown_key(self, tmp_path):
        f = tmp_path / "converge.yaml"
        f.write_text("paralelism: 3\n")
        with pytest.raises(ConfigurationError, match="unknown setting 'paralelism'"):
            load_settings(str(f))

    def test_bad_values_reported_together(self, tmp_path):
        f = tmp_path / "converge.yaml"
        f.write_text("parallelism: many\nmax_attempts: lots\n")
        with pytest.raises(ConfigurationError) as exc:
            load_settings(str(f))
        assert len(exc.value.problems) == 2

    def test_parallelism_must_be_positive(self, tmp_path):
        with pytest.raises(ConfigurationError, match="parallelism"):
            load_settings(str(tmp_path / "none.yaml"), parallelism=0)

    def test_not_a_mapping(self, tmp_path):
        f = tmp_path / "converge.yaml"
        f.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_settings(str(f))


class TestEnvironmentOverrides:
    def test_state_path_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        state = tmp_path / "env.state.json"
        state.write_text("{broken")
        runner = CliRunner()
        result = runner.invoke(cli, ["state", "list"], obj={}, env={"CONVERGE_STATE": str(state)})
        # the broken file is only read if the env var was honoured
        assert result.exit_code == 3
