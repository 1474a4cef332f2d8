"""Application manifest loading and registry.

Each application lives in {apps_dir}/{name}/app.yml and declares its
source repository, buildable components, databases and per-environment
VM topology. The registry is the read-only lookup used by the executor
and the lifecycle pipelines.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = 'app.yml'

# Manifest role names -> VM name key (e.g. imp-db-dev)
ROLE_KEY_MAP = {
    'database': 'db',
    'storage': 'minio',
    'client': 'client',
    'server': 'server',
}

DEFAULT_BRANCH = 'main'


class ManifestError(ConfigError):
    """Invalid application manifest."""


@dataclass
class HostSpec:
    """A single VM in an environment, keyed by role.

    Attributes:
        role: Manifest role (server, client, database, storage, ...)
        node: Proxmox node the VM lives on
        vmid: Explicit VM ID
        ip: Internal IP address
        external_ip: Optional public/secondary IP
        cores, memory, disk: VM sizing passed through to tfvars
    """
    role: str
    node: Optional[str] = None
    vmid: Optional[int] = None
    ip: Optional[str] = None
    external_ip: Optional[str] = None
    cores: int = 2
    memory: int = 2048
    disk: int = 20

    @property
    def role_key(self) -> str:
        return ROLE_KEY_MAP.get(self.role, self.role)

    def vm_name(self, app: str, env: str) -> str:
        """VM naming convention: {app}-{role_key}-{env}."""
        return f'{app}-{self.role_key}-{env}'

    @classmethod
    def from_dict(cls, role: str, data: Optional[dict]) -> 'HostSpec':
        data = data or {}
        return cls(
            role=role,
            node=data.get('node'),
            vmid=data.get('vmid'),
            ip=data.get('ip'),
            external_ip=data.get('external_ip'),
            cores=data.get('cores', 2),
            memory=data.get('memory', 2048),
            disk=data.get('disk', 20),
        )


@dataclass
class PipelinePolicy:
    """Per-environment delivery policy."""
    auto_deploy_branch: Optional[str] = None
    requires_approval: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'PipelinePolicy':
        if not data:
            return cls()
        return cls(
            auto_deploy_branch=data.get('auto_deploy_branch'),
            requires_approval=bool(data.get('requires_approval', False)),
        )


@dataclass
class EnvironmentConfig:
    """A deployable environment of an application."""
    name: str
    terraform_workspace: Optional[str] = None
    pipeline: PipelinePolicy = field(default_factory=PipelinePolicy)
    hosts: dict[str, HostSpec] = field(default_factory=dict)

    @property
    def workspace(self) -> str:
        return self.terraform_workspace or self.name

    @property
    def nodes(self) -> list[str]:
        """Distinct Proxmox nodes used by this environment (ordered)."""
        seen: list[str] = []
        for host in self.hosts.values():
            if host.node and host.node not in seen:
                seen.append(host.node)
        return seen

    def ips(self) -> list[str]:
        """All internal and external IPs declared for this environment."""
        result = []
        for host in self.hosts.values():
            if host.ip:
                result.append(host.ip)
            if host.external_ip:
                result.append(host.external_ip)
        return result

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'EnvironmentConfig':
        data = data or {}
        hosts_data = data.get('hosts') or {}
        if not isinstance(hosts_data, dict):
            raise ManifestError(f"Environment '{name}': hosts must be a mapping of role -> host")
        return cls(
            name=name,
            terraform_workspace=data.get('terraform_workspace'),
            pipeline=PipelinePolicy.from_dict(data.get('pipeline')),
            hosts={role: HostSpec.from_dict(role, h) for role, h in hosts_data.items()},
        )


@dataclass
class ComponentBuild:
    """Build recipe for one deployable component.

    Each step is a shell command run inside {repo}/{path}; ``artifact`` is
    the directory (relative to path) archived into the deploy tarball.
    """
    name: str
    path: str = '.'
    install: Optional[str] = None
    build: Optional[str] = None
    artifact: str = 'dist'

    @property
    def steps(self) -> list[tuple[str, str]]:
        """Ordered (label, command) shell steps, skipping undeclared ones."""
        return [(label, cmd) for label, cmd in (('install', self.install), ('build', self.build)) if cmd]

    @classmethod
    def from_dict(cls, name: str, data: Optional[dict]) -> 'ComponentBuild':
        data = data or {}
        return cls(
            name=name,
            path=data.get('path', '.'),
            install=data.get('install'),
            build=data.get('build'),
            artifact=data.get('artifact', 'dist'),
        )


@dataclass
class AppManifest:
    """Application manifest (app.yml).

    Attributes:
        name: Application identifier (used in resource keys and VM names)
        repo: Git URL of the application source
        environments: Environment name -> EnvironmentConfig
        components: Component name -> build recipe
        databases: Database names managed by db-* operations
        shared: Free-form variables for the shared infrastructure workspace
        source_path: Directory the manifest was loaded from
    """
    name: str
    repo: Optional[str] = None
    display_name: str = ''
    environments: dict[str, EnvironmentConfig] = field(default_factory=dict)
    components: dict[str, ComponentBuild] = field(default_factory=dict)
    databases: list[str] = field(default_factory=list)
    shared: dict[str, Any] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def default_branch(self, env: str) -> str:
        """Branch checked out when an operation carries no ref."""
        env_config = self.environments.get(env)
        if env_config and env_config.pipeline.auto_deploy_branch:
            return env_config.pipeline.auto_deploy_branch
        return DEFAULT_BRANCH

    def summary(self) -> dict:
        return {
            'name': self.name,
            'display_name': self.display_name or self.name,
            'repo': self.repo,
            'environments': sorted(self.environments),
        }

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'AppManifest':
        """Create AppManifest from dictionary.

        Raises:
            ManifestError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ManifestError(f"Manifest must be a mapping ({source_path})")
        if not data.get('name'):
            raise ManifestError(f"Manifest missing required field: name ({source_path})")

        envs_data = data.get('environments') or {}
        comps_data = data.get('components') or {}
        if not isinstance(envs_data, dict):
            raise ManifestError(f"{data['name']}: environments must be a mapping")
        if not isinstance(comps_data, dict):
            raise ManifestError(f"{data['name']}: components must be a mapping")

        return cls(
            name=data['name'],
            repo=data.get('repo'),
            display_name=data.get('display_name', ''),
            environments={n: EnvironmentConfig.from_dict(n, e) for n, e in envs_data.items()},
            components={n: ComponentBuild.from_dict(n, c) for n, c in comps_data.items()},
            databases=list(data.get('databases') or []),
            shared=dict(data.get('shared') or {}),
            source_path=source_path,
        )


def load_manifest(path: Path) -> AppManifest:
    """Load a single app.yml file."""
    with open(path, encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in {path}: {e}") from e
    return AppManifest.from_dict(data, source_path=path.parent)


class AppRegistry:
    """In-memory registry of application manifests loaded from disk."""

    def __init__(self, apps_dir: Path):
        self.apps_dir = apps_dir
        self._apps: dict[str, AppManifest] = {}

    def load(self) -> int:
        """(Re)load all manifests. Invalid manifests are logged and skipped.

        Returns:
            Number of loaded apps
        """
        self._apps.clear()
        if not self.apps_dir.exists():
            logger.warning(f"Apps directory not found: {self.apps_dir}")
            return 0

        for entry in sorted(self.apps_dir.iterdir()):
            manifest_path = entry / MANIFEST_FILENAME
            if not entry.is_dir() or not manifest_path.exists():
                continue
            try:
                manifest = load_manifest(manifest_path)
            except (ManifestError, OSError) as e:
                logger.error(f"Failed to load manifest {manifest_path}: {e}")
                continue
            self._apps[manifest.name] = manifest
            logger.info(f"Loaded app: {manifest.name} ({len(manifest.environments)} envs)")
        return len(self._apps)

    def add(self, manifest: AppManifest) -> None:
        self._apps[manifest.name] = manifest

    def get(self, name: str) -> Optional[AppManifest]:
        return self._apps.get(name)

    def get_environment(self, app: str, env: str) -> Optional[EnvironmentConfig]:
        manifest = self._apps.get(app)
        if manifest is None:
            return None
        return manifest.environments.get(env)

    def all(self) -> list[AppManifest]:
        return [self._apps[name] for name in sorted(self._apps)]
