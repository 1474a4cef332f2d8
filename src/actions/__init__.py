"""External tool families and infrastructure service clients."""

from actions.ansible import build_playbook_command, write_inventory, write_vault_vars
from actions.build import BuildStep, component_steps, select_components
from actions.git import GitClient, GitError
from actions.proxmox import ProxmoxClient, ProxmoxError
from actions.ssh import prepare_ssh_access
from actions.tofu import build_tofu_command, write_tfvars
from actions.unifi import UniFiClient, UniFiError

__all__ = [
    'build_playbook_command',
    'write_inventory',
    'write_vault_vars',
    'BuildStep',
    'component_steps',
    'select_components',
    'GitClient',
    'GitError',
    'ProxmoxClient',
    'ProxmoxError',
    'prepare_ssh_access',
    'build_tofu_command',
    'write_tfvars',
    'UniFiClient',
    'UniFiError',
]
