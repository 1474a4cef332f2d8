"""Shared pytest fixtures for orchestrator tests."""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import OrchestratorConfig  # noqa: E402
from manifest import AppManifest, AppRegistry  # noqa: E402
from operations.broadcaster import OutputBroadcaster  # noqa: E402
from operations.models import CANCELLED, SUCCESS, utcnow  # noqa: E402
from operations.store import OperationStore  # noqa: E402

SAMPLE_MANIFEST = {
    'name': 'imp',
    'display_name': 'Imp',
    'repo': 'git@example.com:org/imp.git',
    'databases': ['imp_main'],
    'shared': {'network_cidr': '10.0.20.0/24'},
    'components': {
        'server': {'path': 'server', 'install': 'npm ci', 'build': 'npm run build', 'artifact': 'dist'},
        'client': {'path': 'client', 'build': 'npm run build', 'artifact': 'build'},
    },
    'environments': {
        'dev': {
            'terraform_workspace': 'imp-dev',
            'pipeline': {'auto_deploy_branch': 'develop'},
            'hosts': {
                'server': {'node': 'pve1', 'vmid': 201, 'ip': '10.0.20.11'},
                'database': {'node': 'pve1', 'vmid': 202, 'ip': '10.0.20.12'},
                'client': {'node': 'pve2', 'vmid': 203, 'ip': '10.0.20.13', 'external_ip': '203.0.113.5'},
            },
        },
        'staging': {
            'pipeline': {'auto_deploy_branch': 'main', 'requires_approval': True},
            'hosts': {
                'server': {'node': 'pve1', 'vmid': 301, 'ip': '10.0.30.11'},
            },
        },
    },
}


@pytest.fixture
def orch_config(tmp_path):
    """Config rooted in a temporary home."""
    return OrchestratorConfig(
        home=tmp_path / 'home',
        secrets_dir=tmp_path / 'secrets',
        default_ssh_key=tmp_path / 'no-such-key',
        kill_grace=1,
    )


@pytest.fixture
def manifest():
    return AppManifest.from_dict(SAMPLE_MANIFEST)


@pytest.fixture
def registry(tmp_path, manifest):
    reg = AppRegistry(tmp_path / 'apps')
    reg.add(manifest)
    return reg


@pytest.fixture
def store(tmp_path):
    s = OperationStore(tmp_path / 'ops.db')
    yield s
    s.close()


@pytest.fixture
def broadcaster():
    return OutputBroadcaster()


@pytest.fixture
def unconfigured_vault():
    vault = MagicMock()
    vault.configured = False
    vault.resolve_scoped = AsyncMock(return_value={})
    vault.read_shared = AsyncMock(return_value={})
    return vault


class RecordingExecutor:
    """Executor stand-in that records execution order and overlap.

    Each operation sleeps for ``delay`` seconds (or waits on a gate event
    registered in ``gates``) and then succeeds.
    """

    def __init__(self, store, broadcaster, delay=0.05):
        self.store = store
        self.broadcaster = broadcaster
        self.delay = delay
        self.gates: dict[str, asyncio.Event] = {}
        self.started: list[str] = []
        self.finished: list[str] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}
        self.max_total = 0
        self.hooks = {}

    async def execute(self, op):
        if not self.store.mark_running(op.id):
            return CANCELLED
        key = op.key
        self.active[key] = self.active.get(key, 0) + 1
        self.max_active[key] = max(self.max_active.get(key, 0), self.active[key])
        self.max_total = max(self.max_total, sum(self.active.values()))
        self.started.append(op.id)
        self.broadcaster.status(op.id, 'running')
        try:
            if op.id in self.hooks:
                self.hooks[op.id](op)
            text = f'[orchestrator] running {op.type}\n'
            self.store.append_output(op.id, text)
            self.broadcaster.log(op.id, text)
            if op.id in self.gates:
                await self.gates[op.id].wait()
            else:
                await asyncio.sleep(self.delay)
        finally:
            self.active[key] -= 1
        self.store.mark_success(op.id)
        self.finished.append(op.id)
        self.broadcaster.status(op.id, SUCCESS)
        self.broadcaster.done(op.id, SUCCESS)
        return SUCCESS

    async def cancel(self, op_id):
        if self.store.cancel(op_id):
            self.broadcaster.done(op_id, CANCELLED)
            return True
        return False

    async def drain_background(self):
        return None


@pytest.fixture
def recording_executor(store, broadcaster):
    return RecordingExecutor(store, broadcaster)


async def wait_until(predicate, timeout=5.0, interval=0.02):
    """Poll ``predicate`` until true or fail after ``timeout`` seconds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError('condition not met in time')
        await asyncio.sleep(interval)


__all__ = ['SAMPLE_MANIFEST', 'RecordingExecutor', 'wait_until', 'utcnow']
