"""HashiCorp Vault secret store client.

Secrets are addressed by logical path and stored in a KV v2 mount:

    apps/{app}          app scope
    apps/{app}/{env}    environment scope
    pw/infra            shared infrastructure scope (configurable)

Authentication uses AppRole. The client token is cached until 80% of its
lease has elapsed. HTTP calls block, so the public coroutines move them
off the event loop with asyncio.to_thread.
"""

import asyncio
import logging
import threading
import time
from typing import Optional

import requests
import urllib3

from config import OrchestratorConfig

# Vault runs with a self-signed certificate
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10
TOKEN_RENEW_FRACTION = 0.8


class SecretStoreError(Exception):
    """Secret store unreachable, unauthenticated or misconfigured."""


def app_path(app: str) -> str:
    return f'apps/{app}'


def env_path(app: str, env: str) -> str:
    return f'apps/{app}/{env}'


class VaultClient:
    """Minimal KV v2 client: read, write, merge, delete-key."""

    def __init__(
        self,
        addr: str,
        role_id: str = '',
        secret_id: str = '',
        mount: str = 'secret',
        shared_path: str = 'pw/infra',
        session: Optional[requests.Session] = None,
    ):
        self.addr = addr.rstrip('/')
        self.role_id = role_id
        self.secret_id = secret_id
        self.mount = mount
        self.shared_path = shared_path
        self._session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expiry = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: OrchestratorConfig) -> 'VaultClient':
        return cls(
            addr=config.vault_addr,
            role_id=config.vault_role_id,
            secret_id=config.vault_secret_id,
            mount=config.vault_mount,
            shared_path=config.shared_secret_path,
        )

    @property
    def configured(self) -> bool:
        return bool(self.role_id and self.secret_id)

    def _data_url(self, path: str) -> str:
        return f'{self.addr}/v1/{self.mount}/data/{path.strip("/")}'

    def _login(self) -> str:
        """AppRole login, returning a (cached) client token."""
        with self._lock:
            if self._token and time.time() < self._token_expiry:
                return self._token
            if not self.configured:
                raise SecretStoreError("Vault AppRole credentials not configured (VAULT_ROLE_ID/VAULT_SECRET_ID)")
            try:
                resp = self._session.post(
                    f'{self.addr}/v1/auth/approle/login',
                    json={'role_id': self.role_id, 'secret_id': self.secret_id},
                    verify=False,
                    timeout=REQUEST_TIMEOUT,
                )
            except requests.exceptions.RequestException as e:
                raise SecretStoreError(f"Cannot reach Vault at {self.addr}: {e}") from e
            if resp.status_code != 200:
                raise SecretStoreError(f"Vault AppRole login failed: HTTP {resp.status_code}")

            auth = resp.json()['auth']
            self._token = auth['client_token']
            self._token_expiry = time.time() + auth.get('lease_duration', 3600) * TOKEN_RENEW_FRACTION
            logger.info("Authenticated with Vault via AppRole")
            return self._token

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> requests.Response:
        token = self._login()
        try:
            return self._session.request(
                method,
                self._data_url(path),
                headers={'X-Vault-Token': token},
                json=payload,
                verify=False,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise SecretStoreError(f"Vault request {method} {path} failed: {e}") from e

    def read_secret_sync(self, path: str) -> Optional[dict]:
        resp = self._request('GET', path)
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise SecretStoreError(f"Failed to read secret at {path}: HTTP {resp.status_code}")
        body = resp.json().get('data') or {}
        return body.get('data', body)

    def write_secret_sync(self, path: str, data: dict) -> None:
        resp = self._request('POST', path, {'data': data})
        if resp.status_code not in (200, 204):
            raise SecretStoreError(f"Failed to write secret at {path}: HTTP {resp.status_code}")
        logger.debug(f"Wrote {len(data)} keys to {path}")

    async def read_secret(self, path: str) -> Optional[dict]:
        """Read a secret map. Returns None if the path does not exist."""
        return await asyncio.to_thread(self.read_secret_sync, path)

    async def write_secret(self, path: str, data: dict) -> None:
        """Replace the secret map at path."""
        await asyncio.to_thread(self.write_secret_sync, path, data)

    async def merge_secret(self, path: str, data: dict) -> dict:
        """Overlay keys onto the existing secret map and write it back."""
        existing = await self.read_secret(path) or {}
        merged = {**existing, **data}
        await self.write_secret(path, merged)
        return merged

    async def delete_key(self, path: str, key: str) -> bool:
        """Remove one key from a secret map. Returns False if absent."""
        existing = await self.read_secret(path)
        if not existing or key not in existing:
            return False
        remaining = {k: v for k, v in existing.items() if k != key}
        await self.write_secret(path, remaining)
        return True

    async def read_shared(self) -> dict:
        return await self.read_secret(self.shared_path) or {}

    async def resolve_scoped(self, app: str, env: Optional[str]) -> dict:
        """Merge shared and environment-scope secrets.

        Environment-scope values take precedence over shared ones.
        """
        shared = await self.read_shared()
        scoped = (await self.read_secret(env_path(app, env)) or {}) if env else {}
        return {**shared, **scoped}
