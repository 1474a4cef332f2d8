"""Proxmox VE API client.

Finds and tears down the VMs of an environment by naming convention
({app}-{role_key}-{env}), uploads the cloud-init snippet over SSH and
runs commands inside VMs through the QEMU guest agent.

requests is blocking; every public coroutine runs its HTTP calls in a
worker thread with asyncio.to_thread.
"""

import asyncio
import logging
import re
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlparse

import requests

from common import run_ssh
from manifest import EnvironmentConfig

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
HA_SID_RE = re.compile(r'^vm:(\d+)$')
SNIPPET_NAME = 'pw-cloud-init-base.yml'


class ProxmoxError(Exception):
    """Proxmox API call failed or a VM did not reach the expected state."""


class ProxmoxClient:
    """Minimal Proxmox VE REST client authenticated with an API token."""

    def __init__(self, api_url: str, api_token: str, session: Optional[requests.Session] = None,
                 poll_interval: float = 3):
        self.api_url = api_url.rstrip('/')
        self.api_token = api_token
        self.poll_interval = poll_interval
        self._session = session or requests.Session()

    @classmethod
    def from_secrets(cls, secrets: dict, **kwargs) -> 'ProxmoxClient':
        if not secrets.get('proxmox_api_url') or not secrets.get('proxmox_api_token'):
            raise ProxmoxError("Proxmox API credentials not found in secret store")
        return cls(secrets['proxmox_api_url'], secrets['proxmox_api_token'], **kwargs)

    @property
    def host(self) -> str:
        return urlparse(self.api_url).hostname or ''

    def _request(self, method: str, path: str, payload: Optional[dict] = None):
        try:
            resp = self._session.request(
                method,
                f'{self.api_url}{path}',
                headers={'Authorization': f'PVEAPIToken={self.api_token}'},
                json=payload,
                verify=False,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise ProxmoxError(f"Proxmox API request failed: {e}") from e
        try:
            body = resp.json()
        except ValueError:
            raise ProxmoxError(f"Proxmox API {method} {path}: non-JSON response ({resp.status_code})")
        if not 200 <= resp.status_code < 300:
            msg = body.get('errors') or body.get('message') or f'HTTP {resp.status_code}'
            raise ProxmoxError(f"Proxmox API {method} {path}: {msg}")
        return body.get('data', body) if isinstance(body, dict) else body

    async def _call(self, method: str, path: str, payload: Optional[dict] = None):
        return await asyncio.to_thread(self._request, method, path, payload)

    async def list_vms(self, node: str) -> list[dict]:
        return await self._call('GET', f'/nodes/{node}/qemu') or []

    async def list_ha_resources(self) -> list[dict]:
        return await self._call('GET', '/cluster/ha/resources') or []

    async def remove_ha_resource(self, sid: str) -> None:
        logger.info(f"Removing HA resource: {sid}")
        await self._call('DELETE', f'/cluster/ha/resources/{quote(sid, safe="")}')

    async def stop_vm(self, node: str, vmid: int) -> None:
        logger.info(f"Stopping VM {vmid} on {node}")
        await self._call('POST', f'/nodes/{node}/qemu/{vmid}/status/stop')

    async def destroy_vm(self, node: str, vmid: int) -> None:
        logger.info(f"Destroying VM {vmid} on {node}")
        await self._call('DELETE', f'/nodes/{node}/qemu/{vmid}?purge=1&destroy-unreferenced-disks=1')

    async def reboot_vm(self, node: str, vmid: int, max_wait: float = 180) -> None:
        logger.info(f"Rebooting VM {vmid} on {node}")
        await self._call('POST', f'/nodes/{node}/qemu/{vmid}/status/reboot')
        await asyncio.sleep(self.poll_interval)
        await self.wait_for_guest_agent(node, vmid, max_wait=max_wait)

    async def wait_for_status(self, node: str, vmid: int, target: str, max_wait: float = 60) -> None:
        """Poll until the VM reports ``target`` (or disappears).

        Raises:
            ProxmoxError: If the state is not reached within max_wait seconds
        """
        deadline = time.monotonic() + max_wait
        while True:
            vm = next((v for v in await self.list_vms(node) if v.get('vmid') == vmid), None)
            if vm is None or vm.get('status') == target:
                return
            if time.monotonic() >= deadline:
                raise ProxmoxError(f"VM {vmid} did not reach '{target}' within {max_wait}s")
            await asyncio.sleep(self.poll_interval)

    async def find_resources_for_environment(self, app: str, env: str,
                                             env_config: EnvironmentConfig) -> list[dict]:
        """VMs on the environment's nodes whose names match the naming convention."""
        expected = {host.vm_name(app, env): host for host in env_config.hosts.values()}
        found = []
        for node in env_config.nodes:
            for vm in await self.list_vms(node):
                host = expected.get(vm.get('name'))
                if host is None:
                    continue
                found.append({
                    'vmid': vm['vmid'],
                    'name': vm['name'],
                    'node': node,
                    'role': host.role,
                    'status': vm.get('status'),
                })
        return found

    async def _ha_index(self) -> dict[int, str]:
        try:
            resources = await self.list_ha_resources()
        except ProxmoxError as e:
            logger.warning(f"Could not list HA resources: {e}")
            return {}
        index = {}
        for res in resources:
            match = HA_SID_RE.match(res.get('sid') or '')
            if match:
                index[int(match.group(1))] = res['sid']
        return index

    async def destroy_resources_for_environment(self, app: str, env: str,
                                                env_config: EnvironmentConfig) -> dict:
        """Tear down every VM of the environment, best effort.

        Per VM: drop HA registration, stop if running, wait for stopped,
        destroy. A VM whose teardown fails is reported as skipped and the
        loop continues.

        Returns:
            {'destroyed': [names], 'skipped': [names]}
        """
        vms = await self.find_resources_for_environment(app, env, env_config)
        destroyed: list[str] = []
        skipped: list[str] = []
        if not vms:
            logger.info(f"No VMs found for {app}:{env}")
            return {'destroyed': destroyed, 'skipped': skipped}

        logger.info(f"Found {len(vms)} VMs for {app}:{env}: "
                    + ', '.join(f"{vm['name']}({vm['vmid']})" for vm in vms))
        ha_by_vmid = await self._ha_index()

        for vm in vms:
            try:
                sid = ha_by_vmid.get(vm['vmid'])
                if sid:
                    await self.remove_ha_resource(sid)
                    await asyncio.sleep(self.poll_interval)
                if vm['status'] == 'running':
                    await self.stop_vm(vm['node'], vm['vmid'])
                    await self.wait_for_status(vm['node'], vm['vmid'], 'stopped')
                await self.destroy_vm(vm['node'], vm['vmid'])
            except ProxmoxError as e:
                logger.error(f"Failed to destroy {vm['name']}: {e}")
                skipped.append(vm['name'])
                continue
            destroyed.append(vm['name'])
            logger.info(f"Destroyed {vm['name']} (vmid: {vm['vmid']})")

        return {'destroyed': destroyed, 'skipped': skipped}

    async def ensure_cloud_init_snippet(self, template: Path, storage: str = 'local',
                                        ssh_key: Optional[Path] = None) -> str:
        """Write the cloud-init base snippet onto the Proxmox host.

        The API has no snippet upload, so the file is piped over SSH.
        Returns the remote path.
        """
        try:
            content = template.read_text(encoding='utf-8')
        except OSError as e:
            raise ProxmoxError(f"Cannot read cloud-init template {template}: {e}") from e
        snippet_dir = '/var/lib/vz/snippets' if storage == 'local' else f'/mnt/pve/{storage}/snippets'
        remote_path = f'{snippet_dir}/{SNIPPET_NAME}'

        logger.info(f"Writing cloud-init snippet to {self.host}:{remote_path} via SSH")
        rc, _, err = await run_ssh(
            self.host, f'mkdir -p {snippet_dir} && cat > {remote_path}',
            timeout=15, key_file=ssh_key, input_data=content,
        )
        if rc != 0:
            raise ProxmoxError(f"SSH snippet upload failed (code {rc}): {err.strip()}")
        return remote_path

    async def wait_for_guest_agent(self, node: str, vmid: int, max_wait: float = 120) -> None:
        deadline = time.monotonic() + max_wait
        while True:
            try:
                await self._call('POST', f'/nodes/{node}/qemu/{vmid}/agent/ping')
                return
            except ProxmoxError:
                if time.monotonic() >= deadline:
                    raise ProxmoxError(f"Guest agent on VM {vmid} not responsive after {max_wait}s")
            await asyncio.sleep(self.poll_interval)

    async def guest_exec(self, node: str, vmid: int, script: str, max_wait: float = 30) -> dict:
        """Run a bash script inside the VM via the guest agent.

        Returns:
            {'exitcode': int, 'out': str, 'err': str}
        """
        result = await self._call('POST', f'/nodes/{node}/qemu/{vmid}/agent/exec',
                                  {'command': '/bin/bash', 'input-data': script + '\n'})
        pid = result['pid']
        deadline = time.monotonic() + max_wait
        while time.monotonic() < deadline:
            await asyncio.sleep(self.poll_interval)
            try:
                status = await self._call('GET', f'/nodes/{node}/qemu/{vmid}/agent/exec-status?pid={pid}')
            except ProxmoxError:
                continue
            if status.get('exited'):
                return {
                    'exitcode': status.get('exitcode', 0),
                    'out': status.get('out-data', ''),
                    'err': status.get('err-data', ''),
                }
        raise ProxmoxError(f"Guest exec on VM {vmid} timed out after {max_wait}s")

    async def deploy_ssh_key(self, node: str, vmid: int, vm_name: str, public_key: str) -> None:
        """Append the public key to root's and deploy's authorized_keys."""
        logger.info(f"Deploying SSH key to {vm_name} (VM {vmid}) on {node}")
        await self.wait_for_guest_agent(node, vmid)
        script = ' && '.join([
            'mkdir -p /root/.ssh /home/deploy/.ssh',
            f"echo '{public_key}' >> /root/.ssh/authorized_keys",
            f"echo '{public_key}' >> /home/deploy/.ssh/authorized_keys",
            'chown -R deploy:deploy /home/deploy/.ssh',
            'chmod 700 /root/.ssh /home/deploy/.ssh',
            'chmod 600 /root/.ssh/authorized_keys /home/deploy/.ssh/authorized_keys',
            "echo 'SSH_KEY_DEPLOYED'",
        ])
        result = await self.guest_exec(node, vmid, script)
        if 'SSH_KEY_DEPLOYED' not in result['out']:
            raise ProxmoxError(f"SSH key deploy failed on {vm_name}: {result['err'] or result['out']}")
