"""Tests for config.py - configuration loading and validation."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import (  # noqa: E402
    DEFAULT_TIMEOUT, ENV_OVERRIDES, ConfigError, OrchestratorConfig, get_config_path, load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in list(ENV_OVERRIDES) + ['ORCHESTRATOR_HOME', 'ORCHESTRATOR_CONFIG']:
        monkeypatch.delenv(var, raising=False)


class TestOrchestratorConfig:
    """Test OrchestratorConfig defaults and validation."""

    def test_paths_derive_from_home(self, tmp_path):
        config = OrchestratorConfig(home=tmp_path)
        assert config.apps_dir == tmp_path / 'apps'
        assert config.repos_dir == tmp_path / 'repos'
        assert config.db_path == tmp_path / 'data' / 'operations.db'
        assert config.artifacts_dir == tmp_path / 'artifacts'
        assert config.terraform_dir == tmp_path / 'terraform'
        assert config.ansible_dir == tmp_path / 'ansible'
        assert config.default_ssh_key == tmp_path / '.ssh' / 'deploy_key'

    def test_string_paths_converted(self, tmp_path):
        config = OrchestratorConfig(home=str(tmp_path), infra_dir=str(tmp_path / 'infra'))
        assert config.home == tmp_path
        assert config.terraform_dir == tmp_path / 'infra' / 'terraform'

    def test_timeout_precedence(self):
        """Config entry beats the type default, which beats default_timeout."""
        config = OrchestratorConfig(timeouts={'deploy': 90})
        assert config.timeout_for('deploy', 1800) == 90
        assert config.timeout_for('provision', 2700) == 2700
        assert config.timeout_for('other') == DEFAULT_TIMEOUT

    def test_invalid_timeout(self):
        with pytest.raises(ConfigError, match="timeout for 'deploy'"):
            OrchestratorConfig(timeouts={'deploy': -1})

    def test_invalid_timeouts_type(self):
        with pytest.raises(ConfigError, match='must be a mapping'):
            OrchestratorConfig(timeouts=[1, 2])

    def test_negative_kill_grace(self):
        with pytest.raises(ConfigError, match='kill_grace'):
            OrchestratorConfig(kill_grace=-1)


class TestLoadConfig:
    """Test load_config."""

    def test_loads_file(self, tmp_path):
        path = tmp_path / 'orchestrator.yaml'
        path.write_text(f"home: {tmp_path}\nvault_addr: https://vault:8200\ntimeouts:\n  deploy: 60\n")

        config = load_config(path)

        assert config.home == tmp_path
        assert config.vault_addr == 'https://vault:8200'
        assert config.timeouts == {'deploy': 60}

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / 'orchestrator.yaml'
        path.write_text("vault_role_id: from-file\n")
        monkeypatch.setenv('VAULT_ROLE_ID', 'from-env')
        monkeypatch.setenv('ORCHESTRATOR_HOME', str(tmp_path))

        config = load_config(path)

        assert config.vault_role_id == 'from-env'
        assert config.home == tmp_path

    def test_unknown_keys_rejected(self, tmp_path):
        path = tmp_path / 'orchestrator.yaml'
        path.write_text("colour: blue\n")
        with pytest.raises(ConfigError, match='Unknown config keys.*colour'):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / 'orchestrator.yaml'
        path.write_text("home: [unclosed\n")
        with pytest.raises(ConfigError, match='Invalid YAML'):
            load_config(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / 'orchestrator.yaml'
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match='expected a mapping'):
            load_config(path)

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            load_config(tmp_path / 'missing.yaml')

    def test_missing_discovered_file_uses_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv('ORCHESTRATOR_HOME', str(tmp_path))
        config = load_config()
        assert config.home == tmp_path


class TestGetConfigPath:
    """Test get_config_path discovery."""

    def test_env_var(self, tmp_path, monkeypatch):
        path = tmp_path / 'custom.yaml'
        path.write_text('{}')
        monkeypatch.setenv('ORCHESTRATOR_CONFIG', str(path))
        assert get_config_path() == path

    def test_env_var_missing_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv('ORCHESTRATOR_CONFIG', str(tmp_path / 'missing.yaml'))
        with pytest.raises(ConfigError):
            get_config_path()

    def test_home_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv('ORCHESTRATOR_HOME', str(tmp_path))
        assert get_config_path() == tmp_path / 'orchestrator.yaml'
