"""Inline prepare-ssh operation.

After infra-apply creates the VMs, the orchestrator's public key is pushed
into every VM through the guest agent, the VMs are rebooted so they pick
up their DHCP reservations, the key is pushed again (cloud-init may reset
authorized_keys) and the orchestrator's known_hosts is refreshed.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

from actions.proxmox import ProxmoxClient, ProxmoxError
from common import ActionResult, run_command
from manifest import EnvironmentConfig

logger = logging.getLogger(__name__)


async def refresh_known_hosts(known_hosts: Path, ips: list[str]) -> list[str]:
    """Replace known_hosts entries for ips with freshly scanned keys.

    Returns the IPs whose key was recorded.
    """
    known_hosts.parent.mkdir(parents=True, exist_ok=True)
    scanned = []
    for ip in ips:
        await run_command(['ssh-keygen', '-f', str(known_hosts), '-R', ip], timeout=10)
    for ip in ips:
        rc, out, _ = await run_command(['ssh-keyscan', '-H', ip], timeout=10)
        if rc == 0 and out.strip():
            with open(known_hosts, 'a', encoding='utf-8') as f:
                f.write(out if out.endswith('\n') else out + '\n')
            scanned.append(ip)
    return scanned


async def prepare_ssh_access(
    proxmox: ProxmoxClient,
    app: str,
    env: str,
    env_config: EnvironmentConfig,
    public_key: str,
    known_hosts: Path,
    emit: Callable[[str], None],
) -> ActionResult:
    """Make every VM of the environment reachable over SSH."""
    start = time.time()
    vms = await proxmox.find_resources_for_environment(app, env, env_config)
    if not vms:
        return ActionResult(
            success=False,
            message=f"No VMs found for {app}:{env}",
            duration=time.time() - start,
        )

    emit(f"[orchestrator] Preparing SSH access for {len(vms)} VMs\n")
    prepared, failed = [], []
    for vm in vms:
        try:
            await proxmox.deploy_ssh_key(vm['node'], vm['vmid'], vm['name'], public_key)
        except ProxmoxError as e:
            emit(f"[orchestrator] SSH key deploy failed for {vm['name']}: {e}\n")
            failed.append(vm['name'])
            continue
        emit(f"[orchestrator] SSH key deployed to {vm['name']}\n")
        prepared.append(vm['name'])

    emit(f"[orchestrator] Rebooting {len(vms)} VMs to pick up DHCP reservations\n")

    async def reboot(vm: dict) -> None:
        try:
            await proxmox.reboot_vm(vm['node'], vm['vmid'])
        except ProxmoxError as e:
            logger.warning(f"Reboot of {vm['name']} failed: {e}")
            emit(f"[orchestrator] Reboot of {vm['name']} failed: {e}\n")

    await asyncio.gather(*(reboot(vm) for vm in vms))

    for vm in vms:
        if vm['name'] not in prepared:
            continue
        try:
            await proxmox.deploy_ssh_key(vm['node'], vm['vmid'], vm['name'], public_key)
        except ProxmoxError as e:
            logger.warning(f"Post-reboot SSH key deploy failed for {vm['name']}: {e}")

    scanned = await refresh_known_hosts(known_hosts, [h.ip for h in env_config.hosts.values() if h.ip])
    emit(f"[orchestrator] Scanned host keys for {len(scanned)} hosts\n")

    return ActionResult(
        success=not failed,
        message=(f"SSH prepared on {len(prepared)} VMs" if not failed
                 else f"SSH key deploy failed on: {', '.join(failed)}"),
        duration=time.time() - start,
        details={'prepared': prepared, 'failed': failed},
    )
