"""Operation executor.

Takes one queued operation through running to a terminal status:
secret resolution, checkout, variable/inventory regeneration, component
builds, then the tool process itself. Every line the orchestrator writes
and every chunk the process prints is appended to the operation's output
and published to live subscribers.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional, Union

from actions.ansible import build_playbook_command, write_vault_vars
from actions.build import artifact_path, artifact_var, component_steps, select_components
from actions.git import GitClient, GitError
from actions.proxmox import ProxmoxClient, ProxmoxError
from actions.ssh import prepare_ssh_access
from actions.tofu import build_tofu_command, workspace_for, write_tfvars
from config import OrchestratorConfig
from manifest import AppManifest, AppRegistry, EnvironmentConfig, ManifestError
from notify import notify_callback
from operations.broadcaster import OutputBroadcaster
from operations.errors import (
    ExecutionError, OperationCancelled, OrchestratorError, PreflightError, ProcessTimeout,
)
from operations.models import (
    CANCELLED, FAILED, RUNNING, SHARED_ENV, SUCCESS,
    Operation, OperationType, get_operation_type,
)
from operations.process import SupervisedProcess
from operations.store import OperationStore
from vault import SecretStoreError, VaultClient

logger = logging.getLogger(__name__)

PREFIX = '[orchestrator] '

# secret key -> child environment variable
SECRET_ENV_VARS = [
    ('proxmox_api_token', 'TF_VAR_proxmox_api_token'),
    ('proxmox_api_url', 'TF_VAR_proxmox_api_url'),
    ('unifi_api_key', 'TF_VAR_unifi_api_key'),
    ('unifi_api_url', 'TF_VAR_unifi_api_url'),
    ('minio_access_key', 'AWS_ACCESS_KEY_ID'),
    ('minio_secret_key', 'AWS_SECRET_ACCESS_KEY'),
]

# Older secret layouts
LEGACY_ENV_VARS = [
    ('aws_access_key_id', 'AWS_ACCESS_KEY_ID'),
    ('aws_secret_access_key', 'AWS_SECRET_ACCESS_KEY'),
]

Handle = Union[SupervisedProcess, asyncio.Task]


def build_child_env(secrets: dict, ssh_key: Optional[Path], app: str, env: str) -> dict:
    """Process environment plus tool credentials derived from secrets."""
    child = dict(os.environ)
    for secret_key, var in SECRET_ENV_VARS:
        if secrets.get(secret_key):
            child[var] = str(secrets[secret_key])
    for secret_key, var in LEGACY_ENV_VARS:
        if var not in child and secrets.get(secret_key):
            child[var] = str(secrets[secret_key])
    if ssh_key:
        child['ANSIBLE_SSH_PRIVATE_KEY_FILE'] = str(ssh_key)
        child['GIT_SSH_COMMAND'] = f'ssh -i {ssh_key} -o StrictHostKeyChecking=accept-new'
    child['TARGET_ENV'] = env
    child['APP_NAME'] = app
    return child


class ProcessExecutor:
    """Runs operations and owns the map of live process/task handles.

    Args:
        config: Orchestrator configuration
        store: Operation store
        broadcaster: Live output fan-out
        registry: App manifests
        vault: Secret store client
        git: Source checkout client (default: repos under config.repos_dir)
        proxmox_factory: Builds a Proxmox client from resolved secrets
        notifier: Coroutine function sending the completion webhook
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        store: OperationStore,
        broadcaster: OutputBroadcaster,
        registry: AppRegistry,
        vault: VaultClient,
        git: Optional[GitClient] = None,
        proxmox_factory: Optional[Callable[[dict], ProxmoxClient]] = None,
        notifier: Callable = notify_callback,
    ):
        self.config = config
        self.store = store
        self.broadcaster = broadcaster
        self.registry = registry
        self.vault = vault
        self.git = git or GitClient(config.repos_dir, ssh_key=config.default_ssh_key)
        self.proxmox_factory = proxmox_factory or ProxmoxClient.from_secrets
        self.notifier = notifier
        self._handles: dict[str, Handle] = {}
        self._cancel_requested: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._inline = {
            'prepare-ssh': self._prepare_ssh,
        }

    def emit(self, op_id: str, text: str) -> None:
        """Persist and publish one chunk of output."""
        self.store.append_output(op_id, text)
        self.broadcaster.log(op_id, text)

    def is_active(self, op_id: str) -> bool:
        return op_id in self._handles

    async def execute(self, op: Operation) -> str:
        """Run a queued operation to completion and return its final status."""
        if not self.store.mark_running(op.id):
            logger.info(f"Operation {op.id} left queued before it could start")
            current = self.store.get(op.id)
            return current.status if current else CANCELLED

        self.broadcaster.status(op.id, RUNNING)
        self.emit(op.id, f"{PREFIX}Starting {op.type} for {op.app}:{op.env} (op {op.id})\n")
        logger.info(f"Running {op.type} for {op.app}:{op.env} (op {op.id})")

        temp_files: list[Path] = []
        status, error = FAILED, None
        try:
            await self._run(op, temp_files)
            status = SUCCESS
        except OperationCancelled:
            status = CANCELLED
        except OrchestratorError as e:
            error = str(e)
        except (ManifestError, SecretStoreError, GitError, ProxmoxError, OSError) as e:
            error = str(e)
        except Exception as e:
            logger.exception(f"Unexpected error in operation {op.id}")
            error = f"{type(e).__name__}: {e}"
        finally:
            self._cleanup(temp_files)
            self._cancel_requested.discard(op.id)

        if status == SUCCESS:
            self.store.mark_success(op.id)
            self.emit(op.id, f"{PREFIX}Operation completed successfully\n")
            logger.info(f"Operation {op.id} succeeded")
        elif status == CANCELLED:
            self.store.mark_cancelled(op.id)
            self.emit(op.id, f"{PREFIX}Operation cancelled\n")
            logger.info(f"Operation {op.id} cancelled")
        else:
            self.store.mark_failed(op.id, error)
            self.emit(op.id, f"{PREFIX}FAILED: {error}\n")
            logger.error(f"Operation {op.id} failed: {error}")

        self.broadcaster.status(op.id, status)
        self.broadcaster.done(op.id, status, error)
        if op.callback_url:
            self.detach(self.notifier(op.callback_url, op.id, status, error,
                                      timeout=self.config.callback_timeout))
        return status

    async def _run(self, op: Operation, temp_files: list[Path]) -> None:
        op_type = get_operation_type(op.type)
        if op_type is None:
            raise PreflightError(f"Unknown operation type: {op.type}")
        manifest = self.registry.get(op.app)
        if manifest is None:
            raise PreflightError(f"Unknown app: {op.app}")
        env_config = manifest.environments.get(op.env)
        if env_config is None and op.env != SHARED_ENV:
            raise PreflightError(f"Unknown environment: {op.app}:{op.env}")

        secrets = await self._resolve_secrets(op)
        ssh_key = self._materialize_ssh_key(op, secrets, temp_files)

        if op_type.is_inline:
            await self._run_inline(op, op_type, env_config, secrets)
            return

        variables = dict(op.vars)
        child_env = build_child_env(secrets, ssh_key, op.app, op.env)
        sha = None
        if op_type.needs_checkout:
            sha = await self._checkout(op, manifest, ssh_key)

        if op_type.is_infra:
            cmd, cwd = self._prepare_tofu(op, op_type, manifest, variables)
        else:
            if op.env != SHARED_ENV:
                self._write_ansible_secrets(op, secrets)
            if op_type.builds:
                variables.update(await self._build_components(op, op_type, manifest, sha, child_env))
            cmd, cwd = build_playbook_command(self.config, op_type, op.env, variables)

        timeout = self.config.timeout_for(op.type, op_type.timeout)
        self.emit(op.id, f"{PREFIX}Running: {' '.join(cmd)}\n")

        attempts = 1 + op_type.retries
        for attempt in range(1, attempts + 1):
            rc = await self._spawn(op, cmd, cwd, child_env, timeout)
            if rc == 0:
                break
            if attempt < attempts:
                self.emit(op.id, f"{PREFIX}{op_type.action or op.type} exited with code {rc}, "
                                 f"retrying ({attempt}/{op_type.retries})\n")
        else:
            raise ExecutionError(f"Process exited with code {rc}", exit_code=rc)

    async def _resolve_secrets(self, op: Operation) -> dict:
        if not self.vault.configured:
            self.emit(op.id, f"{PREFIX}Secret store not configured, continuing without secrets\n")
            return {}
        scope = None if op.env == SHARED_ENV else op.env
        try:
            return await self.vault.resolve_scoped(op.app, scope)
        except SecretStoreError as e:
            raise PreflightError(f"Secret resolution failed: {e}") from e

    def _materialize_ssh_key(self, op: Operation, secrets: dict, temp_files: list[Path]) -> Optional[Path]:
        key = secrets.get('ssh_private_key')
        if key:
            return self._write_temp_secret(key, 'id_rsa', temp_files)
        default = self.config.default_ssh_key
        if default and default.exists():
            self.emit(op.id, f"{PREFIX}Using local SSH key {default}\n")
            return default
        return None

    def _write_temp_secret(self, value: str, prefix: str, temp_files: list[Path]) -> Path:
        """Write a secret to a 0600 file under secrets_dir; registered for cleanup."""
        secrets_dir = self.config.secrets_dir
        secrets_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        fd, name = tempfile.mkstemp(prefix=f'{prefix}-', dir=secrets_dir)
        path = Path(name)
        temp_files.append(path)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(value if value.endswith('\n') else value + '\n')
        return path

    def _cleanup(self, temp_files: list[Path]) -> None:
        for path in temp_files:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove temporary secret {path}: {e}")

    async def _checkout(self, op: Operation, manifest: AppManifest, ssh_key: Optional[Path]) -> str:
        ref = op.ref or manifest.default_branch(op.env)
        try:
            await self.git.ensure_repo(op.app, manifest.repo, ssh_key=ssh_key)
            sha = await self.git.pull(op.app, ref, ssh_key=ssh_key)
        except GitError as e:
            raise PreflightError(f"Checkout of {ref} failed: {e}") from e
        self.emit(op.id, f"{PREFIX}Checked out {sha[:8]} ({ref})\n")
        return sha

    def _prepare_tofu(self, op: Operation, op_type: OperationType, manifest: AppManifest,
                      variables: dict) -> tuple[list[str], Path]:
        tf_env = SHARED_ENV if op_type.shared else op.env
        self.emit(op.id, f"{PREFIX}Generating tfvars for {tf_env}...\n")
        try:
            var_file = write_tfvars(self.config, manifest, tf_env)
        except (ManifestError, OSError) as e:
            raise PreflightError(f"tfvars generation failed: {e}") from e
        workspace = workspace_for(manifest, op_type, op.env)
        return build_tofu_command(self.config, op_type, workspace, var_file, variables)

    def _write_ansible_secrets(self, op: Operation, secrets: dict) -> None:
        self.emit(op.id, f"{PREFIX}Generating Ansible vars from secret store for {op.app}:{op.env}...\n")
        try:
            write_vault_vars(self.config, op.env, secrets)
        except OSError as e:
            self.emit(op.id, f"{PREFIX}Warning: Could not generate Ansible vars: {e}\n")

    async def _build_components(self, op: Operation, op_type: OperationType, manifest: AppManifest,
                                sha: Optional[str], child_env: dict) -> dict:
        """Build and archive each component; returns the artifact vars."""
        repo_dir = self.git.repo_dir(op.app)
        timeout = self.config.timeout_for(op.type, op_type.timeout)
        artifacts = {}
        for component in select_components(manifest, op_type.builds):
            archive = artifact_path(self.config.artifacts_dir, op.app, op.env, component.name, sha or 'local')
            archive.parent.mkdir(parents=True, exist_ok=True)
            for step in component_steps(component, repo_dir, archive):
                self.emit(op.id, f"{step.prefix}{step.label}: {' '.join(step.cmd)}\n")
                rc = await self._spawn(op, step.cmd, step.cwd, child_env, timeout)
                if rc != 0:
                    raise PreflightError(
                        f"Build step {component.name}/{step.label} failed with exit code {rc}")
            self.emit(op.id, f"[build:{component.name}] artifact {archive}\n")
            artifacts[artifact_var(component.name)] = str(archive)
        return artifacts

    async def _spawn(self, op: Operation, cmd: list[str], cwd: Path, env: dict, timeout: float) -> int:
        """Run one supervised process for the operation and return its exit code."""
        if op.id in self._cancel_requested:
            raise OperationCancelled(op.id)
        proc = SupervisedProcess(
            cmd,
            on_output=lambda text: self.emit(op.id, text),
            cwd=cwd,
            env=env,
            timeout=timeout,
            kill_grace=self.config.kill_grace,
        )
        try:
            await proc.start()
        except OSError as e:
            raise ExecutionError(f"Failed to spawn {cmd[0]}: {e}") from e

        self._handles[op.id] = proc
        try:
            rc = await proc.wait()
        finally:
            self._handles.pop(op.id, None)

        if proc.cancelled or op.id in self._cancel_requested:
            raise OperationCancelled(op.id)
        if proc.timed_out:
            self.emit(op.id, f"{PREFIX}Process timed out after {timeout:g}s, killed\n")
            raise ProcessTimeout(f"Process timed out after {timeout:g}s", exit_code=rc)
        return rc

    async def _run_inline(self, op: Operation, op_type: OperationType,
                          env_config: Optional[EnvironmentConfig], secrets: dict) -> None:
        handler = self._inline.get(op_type.name)
        if handler is None:
            raise PreflightError(f"No inline handler for {op_type.name}")
        timeout = self.config.timeout_for(op.type, op_type.timeout)

        task = asyncio.create_task(handler(op, env_config, secrets))
        self._handles[op.id] = task
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()
            raise ProcessTimeout(f"{op_type.name} timed out after {timeout:g}s")
        except asyncio.CancelledError:
            if task.cancelled() and op.id in self._cancel_requested:
                raise OperationCancelled(op.id) from None
            task.cancel()
            raise
        finally:
            self._handles.pop(op.id, None)

        if not result.success:
            raise ExecutionError(result.message)
        self.emit(op.id, f"{PREFIX}{result.message}\n")

    async def _prepare_ssh(self, op: Operation, env_config: Optional[EnvironmentConfig], secrets: dict):
        if env_config is None:
            raise PreflightError(f"prepare-ssh needs an environment, got {op.env}")
        public_key = secrets.get('ssh_public_key')
        if not public_key:
            raise PreflightError("ssh_public_key not found in secret store")
        try:
            proxmox = self.proxmox_factory(secrets)
        except ProxmoxError as e:
            raise PreflightError(str(e)) from e
        return await prepare_ssh_access(
            proxmox, op.app, op.env, env_config, public_key.strip(),
            known_hosts=self.config.home / '.ssh' / 'known_hosts',
            emit=lambda text: self.emit(op.id, text),
        )

    async def cancel(self, op_id: str) -> bool:
        """Cancel an operation.

        A live process is terminated (SIGTERM, then SIGKILL after the
        grace period) and a live inline task is cancelled; both end as
        cancelled. Otherwise only a still-queued operation can be cancelled.
        """
        handle = self._handles.get(op_id)
        if handle is None:
            if not self.store.cancel(op_id):
                return False
            logger.info(f"Cancelled queued operation {op_id}")
            self.broadcaster.status(op_id, CANCELLED)
            self.broadcaster.done(op_id, CANCELLED)
            return True

        self._cancel_requested.add(op_id)
        self.emit(op_id, f"{PREFIX}Cancellation requested\n")
        if isinstance(handle, SupervisedProcess):
            await handle.terminate()
        else:
            handle.cancel()
        return True

    def detach(self, coro) -> asyncio.Task:
        """Run a side effect in the background; errors are logged, never raised."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Background task failed: {task.exception()}")

    async def drain_background(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
