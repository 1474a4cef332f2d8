"""OpenTofu command construction and variable-file generation."""

import json
import logging
import shlex
from pathlib import Path
from typing import Optional

from config import OrchestratorConfig
from manifest import AppManifest, ManifestError
from operations.models import SHARED_ENV, OperationType

logger = logging.getLogger(__name__)

TFVARS_SUBDIR = 'environments'


def tfvars_path(config: OrchestratorConfig, env: str) -> Path:
    return config.terraform_dir / TFVARS_SUBDIR / f'{env}.tfvars.json'


def build_tfvars(manifest: AppManifest, env: str) -> dict:
    """Variables for one workspace, derived from the manifest.

    The shared workspace gets the manifest's ``shared`` block; an
    environment gets one entry per VM keyed by role key.
    """
    if env == SHARED_ENV:
        return {'app_name': manifest.name, **manifest.shared}

    env_config = manifest.environments.get(env)
    if env_config is None:
        raise ManifestError(f"{manifest.name}: unknown environment '{env}'")

    vms = {}
    for host in env_config.hosts.values():
        vm = {
            'name': host.vm_name(manifest.name, env),
            'role': host.role,
            'node': host.node,
            'cores': host.cores,
            'memory': host.memory,
            'disk': host.disk,
        }
        if host.vmid is not None:
            vm['vmid'] = host.vmid
        if host.ip:
            vm['ip'] = host.ip
        if host.external_ip:
            vm['external_ip'] = host.external_ip
        vms[host.role_key] = vm

    return {
        'app_name': manifest.name,
        'environment': env,
        'vms': vms,
    }


def write_tfvars(config: OrchestratorConfig, manifest: AppManifest, env: str) -> Path:
    """Regenerate terraform/environments/{env}.tfvars.json from the manifest."""
    path = tfvars_path(config, env)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(build_tfvars(manifest, env), f, indent=2, sort_keys=True)
        f.write('\n')
    logger.info(f"Generated tfvars: {path}")
    return path


def workspace_for(manifest: AppManifest, op_type: OperationType, env: str) -> str:
    if op_type.shared or env == SHARED_ENV:
        return SHARED_ENV
    env_config = manifest.environments.get(env)
    return env_config.workspace if env_config else env


def build_tofu_command(
    config: OrchestratorConfig,
    op_type: OperationType,
    workspace: str,
    var_file: Optional[Path] = None,
    variables: Optional[dict] = None,
) -> tuple[list[str], Path]:
    """init + workspace select/new + action as one shell invocation.

    Returns:
        (argv, cwd)
    """
    tofu = shlex.quote(config.tofu_bin)
    ws = shlex.quote(workspace)

    action_args = [op_type.action]
    if op_type.action in ('apply', 'destroy'):
        action_args.append('-auto-approve')
    action_args.append('-input=false')
    if var_file is not None and var_file.exists():
        action_args.append(shlex.quote(f'-var-file={var_file}'))
    for key, value in (variables or {}).items():
        action_args += ['-var', shlex.quote(f'{key}={value}')]

    script = ' && '.join([
        f'{tofu} init -input=false',
        f'({tofu} workspace select {ws} || {tofu} workspace new {ws})',
        f'{tofu} {" ".join(action_args)}',
    ])
    return ['/bin/bash', '-c', script], config.terraform_dir
