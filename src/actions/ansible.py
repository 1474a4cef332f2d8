"""Ansible playbook commands, inventory and vault vars generation."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

import yaml

from config import OrchestratorConfig
from manifest import AppManifest, ManifestError
from operations.models import OperationType

logger = logging.getLogger(__name__)

ANSIBLE_USER = 'deploy'


def inventory_dir(config: OrchestratorConfig, env: str) -> Path:
    return config.ansible_dir / 'inventories' / env


def inventory_path(config: OrchestratorConfig, env: str) -> Path:
    return inventory_dir(config, env) / 'hosts.yml'


def vault_vars_path(config: OrchestratorConfig, env: str) -> Path:
    return inventory_dir(config, env) / 'group_vars' / 'all' / 'vault.yml'


def build_inventory(manifest: AppManifest, env: str) -> dict:
    """YAML inventory with one group per manifest role."""
    env_config = manifest.environments.get(env)
    if env_config is None:
        raise ManifestError(f"{manifest.name}: unknown environment '{env}'")

    children = {}
    for role, host in env_config.hosts.items():
        host_vars = {'ansible_host': host.ip, 'ansible_user': ANSIBLE_USER}
        if host.external_ip:
            host_vars['external_ip'] = host.external_ip
        children[role] = {'hosts': {host.vm_name(manifest.name, env): host_vars}}

    return {
        'all': {
            'vars': {
                'app_name': manifest.name,
                'environment_name': env,
                'databases': list(manifest.databases),
            },
            'children': children,
        }
    }


def write_inventory(config: OrchestratorConfig, manifest: AppManifest, env: str) -> Path:
    """Regenerate ansible/inventories/{env}/hosts.yml from the manifest."""
    path = inventory_path(config, env)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(build_inventory(manifest, env), f, default_flow_style=False, sort_keys=False)
    logger.info(f"Generated inventory: {path}")
    return path


def write_vault_vars(config: OrchestratorConfig, env: str, secrets: dict) -> Path:
    """Write resolved secrets as group vars readable only by the owner."""
    path = vault_vars_path(config, env)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        yaml.safe_dump(dict(sorted(secrets.items())), f, default_flow_style=False)
    # O_CREAT mode only applies to new files
    os.chmod(path, 0o600)
    logger.info(f"Generated ansible vault vars: {path} ({len(secrets)} keys)")
    return path


def playbook_vars(op_type: OperationType, env: str, variables: Optional[dict] = None) -> dict:
    """Operation vars plus the fixed vars of the type.

    deploy and rollback types also learn which environment they target.
    """
    merged = dict(variables or {})
    if op_type.name.startswith('deploy') or op_type.name == 'rollback':
        merged['environment_name'] = env
    merged.update(dict(op_type.extra_vars))
    return merged


def build_playbook_command(
    config: OrchestratorConfig,
    op_type: OperationType,
    env: str,
    variables: Optional[dict] = None,
) -> tuple[list[str], Path]:
    """ansible-playbook invocation for an operation type.

    Returns:
        (argv, cwd)
    """
    ansible_dir = config.ansible_dir
    cmd = [
        str(config.ansible_venv / 'bin' / 'ansible-playbook'),
        str(ansible_dir / op_type.playbook),
        '-i', str(inventory_path(config, env)),
        '--become',
    ]
    extra = playbook_vars(op_type, env, variables)
    if extra:
        cmd += ['-e', json.dumps(extra)]
    return cmd, ansible_dir
