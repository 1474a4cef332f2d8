"""UniFi Network client for DHCP lease cleanup.

Destroyed VMs leave client records behind whose fixed IPs block the
reservations of the next build ("FixedIpAlreadyUsedByClient").
"""

import asyncio
import logging
from typing import Optional

import requests

from manifest import AppRegistry

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15
DEFAULT_API_URL = 'https://10.0.5.254'


class UniFiError(Exception):
    """UniFi API call failed."""


class UniFiClient:

    def __init__(self, api_url: str, api_key: str, site: str = 'default',
                 session: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip('/')
        self.api_key = api_key
        self.site = site
        self._session = session or requests.Session()

    @classmethod
    def from_secrets(cls, secrets: dict, **kwargs) -> 'UniFiClient':
        if not secrets.get('unifi_api_key'):
            raise UniFiError("UniFi API credentials not found in secret store")
        return cls(secrets.get('unifi_api_url') or DEFAULT_API_URL, secrets['unifi_api_key'], **kwargs)

    def _request(self, method: str, path: str, payload: Optional[dict] = None):
        url = f'{self.api_url}/proxy/network/api/s/{self.site}{path}'
        try:
            resp = self._session.request(method, url, headers={'X-API-KEY': self.api_key},
                                         json=payload, verify=False, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise UniFiError(f"UniFi API request failed: {e}") from e
        try:
            body = resp.json()
        except ValueError:
            raise UniFiError(f"UniFi API {method} {path}: non-JSON response ({resp.status_code})")
        if not 200 <= resp.status_code < 300:
            msg = (body.get('meta') or {}).get('msg') or f'HTTP {resp.status_code}'
            raise UniFiError(f"UniFi API {method} {path}: {msg}")
        return body.get('data', body)

    async def _call(self, method: str, path: str, payload: Optional[dict] = None):
        return await asyncio.to_thread(self._request, method, path, payload)

    async def forget_clients_by_ips(self, ips: list[str]) -> dict:
        """Forget client records whose fixed or last IP is one of ``ips``."""
        targets = set(ips)
        clients = await self._call('GET', '/rest/user') or []
        macs = [c['mac'] for c in clients if (c.get('fixed_ip') or c.get('last_ip') or '') in targets]
        if not macs:
            logger.info(f"No stale clients found for IPs: {', '.join(ips)}")
            return {'forgotten': 0}

        await self._call('POST', '/cmd/stamgr', {'cmd': 'forget-sta', 'macs': macs})
        logger.info(f"Forgot {len(macs)} clients: {', '.join(macs)}")
        return {'forgotten': len(macs)}

    async def cleanup_environment_clients(self, registry: AppRegistry, app: str, env: str) -> dict:
        """Forget every client holding one of the environment's manifest IPs."""
        env_config = registry.get_environment(app, env)
        if env_config is None:
            return {'forgotten': 0}
        ips = env_config.ips()
        if not ips:
            return {'forgotten': 0}
        return await self.forget_clients_by_ips(ips)
