"""Build and destroy lifecycle pipelines.

A pipeline is a fixed, ordered list of steps. All remaining steps are
enqueued up front under the environment's resource key; the scheduler's
per-key FIFO guarantees they run one after another in order.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from actions.ansible import write_inventory
from actions.proxmox import ProxmoxClient, ProxmoxError
from actions.tofu import write_tfvars
from actions.unifi import UniFiClient, UniFiError
from config import OrchestratorConfig
from credentials import generate_env_secrets
from manifest import AppManifest, AppRegistry, EnvironmentConfig, ManifestError
from operations.errors import InputError, PreflightError
from operations.scheduler import Scheduler
from vault import SecretStoreError, VaultClient

logger = logging.getLogger(__name__)

# (step name, operation type), in execution order
BUILD_STEPS = [
    ('infra-shared', 'infra-apply-shared'),
    ('infra', 'infra-apply'),
    ('prepare-ssh', 'prepare-ssh'),
    ('provision', 'provision'),
    ('db-setup', 'db-setup'),
    ('deploy', 'deploy'),
]

DESTROY_STEPS = [
    ('infra-destroy', 'infra-destroy'),
]


@dataclass
class PipelineResult:
    """Operations enqueued by a pipeline run."""
    operations: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    message: str = ''

    def to_dict(self) -> dict:
        return {'operations': self.operations, 'steps': self.steps, 'message': self.message}


def steps_from(steps: list[tuple[str, str]], resume_from: Optional[str]) -> list[tuple[str, str]]:
    """Sublist starting at ``resume_from`` (the whole list when None).

    Raises:
        InputError: resume_from is not a step name
    """
    if resume_from is None:
        return list(steps)
    names = [name for name, _ in steps]
    if resume_from not in names:
        raise InputError(f"Unknown resume step: {resume_from} (valid: {', '.join(names)})")
    return list(steps[names.index(resume_from):])


class LifecycleRunner:
    """Composes operations into build/destroy requests for one environment."""

    def __init__(
        self,
        config: OrchestratorConfig,
        scheduler: Scheduler,
        registry: AppRegistry,
        vault: VaultClient,
        proxmox_factory: Optional[Callable[[dict], ProxmoxClient]] = None,
        unifi_factory: Optional[Callable[[dict], UniFiClient]] = None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.registry = registry
        self.vault = vault
        self.proxmox_factory = proxmox_factory or ProxmoxClient.from_secrets
        self.unifi_factory = unifi_factory or UniFiClient.from_secrets

    def _lookup(self, app: str, env: str) -> tuple[AppManifest, EnvironmentConfig]:
        manifest = self.registry.get(app)
        if manifest is None:
            raise InputError(f"Unknown app: {app}")
        env_config = manifest.environments.get(env)
        if env_config is None:
            raise InputError(f"Unknown environment: {app}:{env}")
        return manifest, env_config

    async def _shared_secrets(self) -> dict:
        if not self.vault.configured:
            return {}
        try:
            return await self.vault.read_shared()
        except SecretStoreError as e:
            logger.warning(f"Could not read shared secrets: {e}")
            return {}

    def _regenerate_files(self, manifest: AppManifest, env: str) -> None:
        try:
            write_tfvars(self.config, manifest, env)
            write_inventory(self.config, manifest, env)
        except (ManifestError, OSError) as e:
            raise PreflightError(f"Could not regenerate tool inputs for {manifest.name}:{env}: {e}") from e

    def _enqueue(self, app: str, env: str, steps: list[tuple[str, str]], ref: Optional[str],
                 initiated_by: str) -> list[str]:
        return [
            self.scheduler.enqueue(app, env, op_type, ref=ref, initiated_by=initiated_by)
            for _, op_type in steps
        ]

    async def build_environment(
        self,
        app: str,
        env: str,
        ref: Optional[str] = None,
        force: bool = False,
        resume_from: Optional[str] = None,
    ) -> PipelineResult:
        """Prepare inputs and enqueue the build steps (from resume_from on)."""
        manifest, env_config = self._lookup(app, env)
        steps = steps_from(BUILD_STEPS, resume_from)
        logger.info(f"Starting build for {app}:{env}"
                    + (f" (resuming from {resume_from})" if resume_from else ''))

        shared = await self._shared_secrets()

        if force and not resume_from:
            await self._cleanup_orphans(app, env, env_config, shared)

        if self.vault.configured:
            try:
                creds = await generate_env_secrets(self.vault, app, env, force=force)
            except SecretStoreError as e:
                raise PreflightError(f"Credential generation failed: {e}") from e
            logger.info(f"Credentials: {'generated' if creds['created'] else 'already exist'}")
        else:
            logger.warning("Secret store not configured, skipping credential generation")

        self._regenerate_files(manifest, env)
        await self._ensure_snippet(env_config, shared)

        operations = self._enqueue(app, env, steps, ref, 'lifecycle:build')
        names = [name for name, _ in steps]
        logger.info(f"Build pipeline queued for {app}:{env}: {len(operations)} operations")
        return PipelineResult(
            operations=operations,
            steps=names,
            message=f"Build pipeline queued: {' -> '.join(names)}",
        )

    async def destroy_environment(self, app: str, env: str, ref: Optional[str] = None) -> PipelineResult:
        """Forget leases and VMs (best effort), then enqueue infra-destroy."""
        manifest, env_config = self._lookup(app, env)
        logger.info(f"Starting destroy for {app}:{env}")

        shared = await self._shared_secrets()
        await self._cleanup_leases(app, env, shared)
        await self._cleanup_orphans(app, env, env_config, shared)

        self._regenerate_files(manifest, env)
        operations = self._enqueue(app, env, DESTROY_STEPS, ref, 'lifecycle:destroy')
        return PipelineResult(
            operations=operations,
            steps=[name for name, _ in DESTROY_STEPS],
            message=f"Destroy queued for {app}:{env}",
        )

    async def _cleanup_orphans(self, app: str, env: str, env_config: EnvironmentConfig,
                               shared: dict) -> Optional[dict]:
        try:
            proxmox = self.proxmox_factory(shared)
            result = await proxmox.destroy_resources_for_environment(app, env, env_config)
        except ProxmoxError as e:
            logger.warning(f"Orphan VM cleanup for {app}:{env} failed: {e}")
            return None
        if result['destroyed'] or result['skipped']:
            logger.info(f"Orphan VM cleanup for {app}:{env}: destroyed={result['destroyed']} "
                        f"skipped={result['skipped']}")
        return result

    async def _cleanup_leases(self, app: str, env: str, shared: dict) -> None:
        try:
            unifi = self.unifi_factory(shared)
            result = await unifi.cleanup_environment_clients(self.registry, app, env)
        except UniFiError as e:
            logger.warning(f"Network lease cleanup for {app}:{env} failed: {e}")
            return
        logger.info(f"Network lease cleanup for {app}:{env}: forgot {result['forgotten']} clients")

    async def _ensure_snippet(self, env_config: EnvironmentConfig, shared: dict) -> None:
        if not env_config.nodes:
            return
        try:
            proxmox = self.proxmox_factory(shared)
            await proxmox.ensure_cloud_init_snippet(
                self.config.cloud_init_template,
                storage=self.config.snippet_storage,
                ssh_key=self.config.default_ssh_key,
            )
        except ProxmoxError as e:
            logger.warning(f"Cloud-init snippet upload failed: {e}")
