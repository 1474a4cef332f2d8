"""Orchestrator configuration management.

Configuration is loaded from a single YAML file:
- $ORCHESTRATOR_CONFIG, if set
- {home}/orchestrator.yaml otherwise ($ORCHESTRATOR_HOME, default /opt/orchestrator)

Deploy-time values (Vault credentials, paths) can be overridden through
environment variables, which take precedence over the file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_HOME = Path('/opt/orchestrator')
DEFAULT_SECRETS_DIR = Path('/run/orchestrator/secrets')
DEFAULT_TIMEOUT = 30 * 60
DEFAULT_KILL_GRACE = 5

# Environment variable -> config attribute
ENV_OVERRIDES = {
    'VAULT_ADDR': 'vault_addr',
    'VAULT_ROLE_ID': 'vault_role_id',
    'VAULT_SECRET_ID': 'vault_secret_id',
    'ANSIBLE_VENV': 'ansible_venv',
    'ORCHESTRATOR_SECRETS_DIR': 'secrets_dir',
    'ANSIBLE_SSH_PRIVATE_KEY_FILE': 'default_ssh_key',
}

PATH_FIELDS = {
    'home', 'apps_dir', 'repos_dir', 'db_path', 'artifacts_dir',
    'infra_dir', 'secrets_dir', 'ansible_venv', 'default_ssh_key', 'cloud_init_template',
}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class OrchestratorConfig:
    """Resolved orchestrator configuration.

    Directory defaults are derived from ``home`` when not set explicitly,
    so a config file usually only needs ``home`` and the Vault address.
    """
    home: Path = DEFAULT_HOME
    apps_dir: Optional[Path] = None
    repos_dir: Optional[Path] = None
    db_path: Optional[Path] = None
    artifacts_dir: Optional[Path] = None
    infra_dir: Optional[Path] = None
    secrets_dir: Path = DEFAULT_SECRETS_DIR
    ansible_venv: Optional[Path] = None
    default_ssh_key: Optional[Path] = None
    tofu_bin: str = 'tofu'

    vault_addr: str = 'https://127.0.0.1:8200'
    vault_role_id: str = ''
    vault_secret_id: str = ''
    vault_mount: str = 'secret'
    shared_secret_path: str = 'pw/infra'

    default_timeout: int = DEFAULT_TIMEOUT
    timeouts: dict = field(default_factory=dict)
    kill_grace: float = DEFAULT_KILL_GRACE
    callback_timeout: int = 10
    cloud_init_template: Optional[Path] = None
    snippet_storage: str = 'local'

    def __post_init__(self):
        for name in PATH_FIELDS:
            value = getattr(self, name)
            if isinstance(value, str):
                setattr(self, name, Path(value))

        if self.apps_dir is None:
            self.apps_dir = self.home / 'apps'
        if self.repos_dir is None:
            self.repos_dir = self.home / 'repos'
        if self.db_path is None:
            self.db_path = self.home / 'data' / 'operations.db'
        if self.artifacts_dir is None:
            self.artifacts_dir = self.home / 'artifacts'
        if self.infra_dir is None:
            self.infra_dir = self.home
        if self.ansible_venv is None:
            self.ansible_venv = self.home / 'venv'
        if self.default_ssh_key is None:
            self.default_ssh_key = self.home / '.ssh' / 'deploy_key'
        if self.cloud_init_template is None:
            self.cloud_init_template = self.infra_dir / 'terraform' / 'templates' / 'cloud-init-base.yml'

        self._validate()

    def _validate(self):
        if not isinstance(self.timeouts, dict):
            raise ConfigError(f"timeouts must be a mapping, got {type(self.timeouts).__name__}")
        if self.default_timeout <= 0:
            raise ConfigError(f"default_timeout must be positive, got {self.default_timeout}")
        for op_type, seconds in self.timeouts.items():
            if not isinstance(seconds, (int, float)) or seconds <= 0:
                raise ConfigError(f"timeout for '{op_type}' must be a positive number, got {seconds!r}")
        if self.kill_grace < 0:
            raise ConfigError(f"kill_grace must not be negative, got {self.kill_grace}")

    def timeout_for(self, op_type: str, fallback: Optional[int] = None) -> float:
        """Timeout in seconds for an operation type.

        Order: config ``timeouts`` entry > type default > ``default_timeout``.
        """
        if op_type in self.timeouts:
            return self.timeouts[op_type]
        return fallback or self.default_timeout

    @property
    def terraform_dir(self) -> Path:
        return self.infra_dir / 'terraform'

    @property
    def ansible_dir(self) -> Path:
        return self.infra_dir / 'ansible'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def get_home_dir() -> Path:
    """Orchestrator home directory ($ORCHESTRATOR_HOME or /opt/orchestrator)."""
    if env_path := os.environ.get('ORCHESTRATOR_HOME'):
        return Path(env_path)
    return DEFAULT_HOME


def get_config_path() -> Path:
    """Discover the config file.

    Resolution order:
    1. $ORCHESTRATOR_CONFIG environment variable
    2. {home}/orchestrator.yaml
    """
    if env_path := os.environ.get('ORCHESTRATOR_CONFIG'):
        path = Path(env_path)
        if not path.exists():
            raise ConfigError(f"ORCHESTRATOR_CONFIG={env_path} does not exist")
        return path
    return get_home_dir() / 'orchestrator.yaml'


def load_config(path: Optional[Path] = None) -> OrchestratorConfig:
    """Load orchestrator configuration.

    Args:
        path: Explicit config file. If None, uses discovery (see get_config_path).

    Raises:
        ConfigError: On unreadable files or invalid values.
    """
    if path is None:
        path = get_config_path()
    elif not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    values: dict = {}
    if path.exists():
        try:
            values = _parse_yaml(path)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    values.setdefault('home', str(get_home_dir()))
    if env_home := os.environ.get('ORCHESTRATOR_HOME'):
        values['home'] = env_home

    for env_var, attr in ENV_OVERRIDES.items():
        if env_value := os.environ.get(env_var):
            values[attr] = env_value

    known = set(OrchestratorConfig.__dataclass_fields__)
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys in {path}: {', '.join(unknown)}")

    try:
        return OrchestratorConfig(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e
