"""Application source checkouts."""

import logging
import os
from pathlib import Path
from typing import Optional

from common import run_command

logger = logging.getLogger(__name__)

CLONE_TIMEOUT = 120
FETCH_TIMEOUT = 60


class GitError(Exception):
    """A git command failed."""


class GitClient:
    """Maintains one working copy per application under repos_dir."""

    def __init__(self, repos_dir: Path, ssh_key: Optional[Path] = None):
        self.repos_dir = repos_dir
        self.ssh_key = ssh_key

    def repo_dir(self, app: str) -> Path:
        return self.repos_dir / app

    def _env(self, ssh_key: Optional[Path] = None) -> dict:
        env = dict(os.environ)
        key = ssh_key or self.ssh_key
        if key and Path(key).exists():
            env['GIT_SSH_COMMAND'] = f'ssh -i {key} -o StrictHostKeyChecking=accept-new'
        return env

    async def _git(self, args: list[str], cwd: Optional[Path] = None, timeout: float = FETCH_TIMEOUT,
                   ssh_key: Optional[Path] = None) -> str:
        rc, out, err = await run_command(['git'] + args, cwd=cwd, timeout=timeout, env=self._env(ssh_key))
        if rc != 0:
            raise GitError(f"git {' '.join(args)} failed: {(err or out).strip()}")
        return out

    async def ensure_repo(self, app: str, url: Optional[str], ssh_key: Optional[Path] = None) -> Path:
        """Clone the repository if no working copy exists yet."""
        path = self.repo_dir(app)
        if (path / '.git').exists():
            logger.debug(f"Repo exists: {path}")
            return path
        if not url:
            raise GitError(f"No repository configured for {app}")
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Cloning {url} to {path}")
        await self._git(['clone', url, str(path)], timeout=CLONE_TIMEOUT, ssh_key=ssh_key)
        return path

    async def pull(self, app: str, ref: str = 'main', ssh_key: Optional[Path] = None) -> str:
        """Fetch, check out ref and fast-forward it. Returns the resolved commit SHA."""
        path = self.repo_dir(app)
        await self._git(['fetch', '--all', '--prune'], cwd=path, ssh_key=ssh_key)
        await self._git(['checkout', ref], cwd=path, ssh_key=ssh_key)
        try:
            await self._git(['pull', '--ff-only'], cwd=path, ssh_key=ssh_key)
        except GitError as e:
            # Tags and detached SHAs have no upstream to pull
            logger.debug(f"Not fast-forwarding {ref}: {e}")
        sha = (await self._git(['rev-parse', 'HEAD'], cwd=path)).strip()
        logger.info(f"{app} at {sha[:8]} ({ref})")
        return sha
