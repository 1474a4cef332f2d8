"""Per-environment credential generation."""

import logging
import secrets

from vault import VaultClient, env_path

logger = logging.getLogger(__name__)

REQUIRED_SHARED_KEYS = [
    'proxmox_api_url',
    'proxmox_api_token',
    'unifi_api_key',
    'ssh_public_key',
    'ssh_private_key',
    'minio_access_key',
    'minio_secret_key',
]

# Presence of this key marks an environment as already provisioned
SENTINEL_KEY = 'mysql_root_password'


def random_password(length: int = 32) -> str:
    return secrets.token_urlsafe(length)[:length]


def random_hex(length: int = 64) -> str:
    return secrets.token_hex(length // 2)


def build_env_secrets(app: str) -> dict:
    """Fresh secret map for one environment."""
    return {
        'mysql_root_password': random_password(32),
        'mysql_user': f'{app}_api_001',
        'mysql_password': random_password(32),
        'mysql_ssl_user': f'{app}_ssl_user',
        'mysql_ssl_password': random_password(32),
        'minio_access_key': random_password(20),
        'minio_secret_key': random_password(40),
        'auth_secret_key': random_hex(64),
        'cookie_secret': random_hex(64),
        'file_encryption_key': random_hex(64),
        'sync_encryption_key': random_hex(64),
    }


async def generate_env_secrets(vault: VaultClient, app: str, env: str, force: bool = False) -> dict:
    """Generate and store environment secrets.

    Skips generation when secrets already exist unless ``force`` is set.

    Returns:
        {'created': bool, 'path': str}
    """
    path = env_path(app, env)
    if not force:
        existing = await vault.read_secret(path)
        if existing and existing.get(SENTINEL_KEY):
            logger.info(f"Secrets already exist at {path}, skipping (use force to regenerate)")
            return {'created': False, 'path': path}

    await vault.write_secret(path, build_env_secrets(app))
    logger.info(f"Generated and stored secrets at {path}")
    return {'created': True, 'path': path}


async def verify_shared_secrets(vault: VaultClient) -> dict:
    """Check that every key the tool families need exists in the shared scope.

    Raises:
        ValueError: Listing the missing keys
    """
    existing = await vault.read_shared()
    missing = [k for k in REQUIRED_SHARED_KEYS if not existing.get(k)]
    if missing:
        raise ValueError(f"Missing shared secrets at {vault.shared_path}: {', '.join(missing)}")
    logger.info("Shared secrets verified")
    return {'valid': True, 'path': vault.shared_path}
