"""Tests for the build and destroy lifecycle pipelines."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from actions.proxmox import ProxmoxError
from actions.unifi import UniFiError
from operations.errors import InputError, PreflightError
from operations.models import SUCCESS
from operations.pipeline import BUILD_STEPS, LifecycleRunner, steps_from
from operations.scheduler import Scheduler
from vault import SecretStoreError


def fake_proxmox(destroy_result=None):
    proxmox = MagicMock()
    proxmox.destroy_resources_for_environment = AsyncMock(
        return_value=destroy_result or {'destroyed': [], 'skipped': []})
    proxmox.ensure_cloud_init_snippet = AsyncMock(return_value='/var/lib/vz/snippets/x.yml')
    return proxmox


def fake_unifi(forgotten=0):
    unifi = MagicMock()
    unifi.cleanup_environment_clients = AsyncMock(return_value={'forgotten': forgotten})
    return unifi


@pytest.fixture
def proxmox():
    return fake_proxmox()


@pytest.fixture
def unifi():
    return fake_unifi()


@pytest.fixture
def scheduler(store, recording_executor, broadcaster, registry):
    return Scheduler(store, recording_executor, broadcaster, registry=registry)


@pytest.fixture
def runner(orch_config, scheduler, registry, unconfigured_vault, proxmox, unifi):
    return LifecycleRunner(
        orch_config, scheduler, registry, unconfigured_vault,
        proxmox_factory=lambda secrets: proxmox,
        unifi_factory=lambda secrets: unifi,
    )


class TestStepsFrom:
    """Tests for resume step selection."""

    def test_all_steps_without_resume(self):
        assert steps_from(BUILD_STEPS, None) == BUILD_STEPS

    def test_resume_from_middle(self):
        names = [name for name, _ in steps_from(BUILD_STEPS, 'provision')]
        assert names == ['provision', 'db-setup', 'deploy']

    def test_unknown_step(self):
        with pytest.raises(InputError, match='Unknown resume step: bogus'):
            steps_from(BUILD_STEPS, 'bogus')


class TestBuildEnvironment:
    """Tests for build_environment()."""

    @pytest.mark.asyncio
    async def test_enqueues_all_steps_in_order(self, runner, scheduler, store, recording_executor, orch_config):
        result = await runner.build_environment('imp', 'dev', ref='main')
        await scheduler.wait_idle()

        types = [store.get(op_id).type for op_id in result.operations]
        assert types == ['infra-apply-shared', 'infra-apply', 'prepare-ssh', 'provision', 'db-setup', 'deploy']
        assert recording_executor.started == result.operations
        assert result.message == ('Build pipeline queued: infra-shared -> infra -> prepare-ssh'
                                  ' -> provision -> db-setup -> deploy')
        for op_id in result.operations:
            op = store.get(op_id)
            assert op.status == SUCCESS
            assert op.env == 'dev'
            assert op.ref == 'main'
            assert op.initiated_by == 'lifecycle:build'

        assert (orch_config.terraform_dir / 'environments' / 'dev.tfvars.json').exists()
        assert (orch_config.ansible_dir / 'inventories' / 'dev' / 'hosts.yml').exists()

    @pytest.mark.asyncio
    async def test_resume_skips_earlier_steps(self, runner, scheduler, store):
        """Resuming from provision never creates the earlier operations."""
        result = await runner.build_environment('imp', 'dev', resume_from='provision')
        await scheduler.wait_idle()

        assert result.steps == ['provision', 'db-setup', 'deploy']
        assert sorted(op.type for op in store.list()) == ['db-setup', 'deploy', 'provision']

    @pytest.mark.asyncio
    async def test_unknown_resume_enqueues_nothing(self, runner, store):
        with pytest.raises(InputError):
            await runner.build_environment('imp', 'dev', resume_from='bogus')
        assert store.list() == []

    @pytest.mark.asyncio
    async def test_unknown_environment(self, runner):
        with pytest.raises(InputError, match='Unknown environment'):
            await runner.build_environment('imp', 'prod')

    @pytest.mark.asyncio
    async def test_force_cleans_orphans(self, runner, scheduler, proxmox):
        await runner.build_environment('imp', 'dev', force=True)
        await scheduler.wait_idle()
        proxmox.destroy_resources_for_environment.assert_awaited_once()
        args = proxmox.destroy_resources_for_environment.call_args.args
        assert args[:2] == ('imp', 'dev')

    @pytest.mark.asyncio
    async def test_force_with_resume_keeps_vms(self, runner, scheduler, proxmox):
        await runner.build_environment('imp', 'dev', force=True, resume_from='deploy')
        await scheduler.wait_idle()
        proxmox.destroy_resources_for_environment.assert_not_called()

    @pytest.mark.asyncio
    async def test_orphan_cleanup_failure_is_not_fatal(self, runner, proxmox, scheduler):
        proxmox.destroy_resources_for_environment.side_effect = ProxmoxError('node offline')
        result = await runner.build_environment('imp', 'dev', force=True)
        await scheduler.wait_idle()
        assert len(result.operations) == len(BUILD_STEPS)

    @pytest.mark.asyncio
    async def test_snippet_uploaded(self, runner, scheduler, proxmox, orch_config):
        await runner.build_environment('imp', 'dev')
        await scheduler.wait_idle()
        proxmox.ensure_cloud_init_snippet.assert_awaited_once_with(
            orch_config.cloud_init_template, storage='local', ssh_key=orch_config.default_ssh_key)

    @pytest.mark.asyncio
    async def test_snippet_failure_is_not_fatal(self, runner, scheduler, proxmox):
        proxmox.ensure_cloud_init_snippet.side_effect = ProxmoxError('ssh refused')
        result = await runner.build_environment('imp', 'dev')
        await scheduler.wait_idle()
        assert len(result.operations) == len(BUILD_STEPS)

    @pytest.mark.asyncio
    async def test_credentials_generated_when_vault_configured(self, runner, scheduler):
        runner.vault = MagicMock()
        runner.vault.configured = True
        runner.vault.read_shared = AsyncMock(return_value={})

        with patch('operations.pipeline.generate_env_secrets',
                   AsyncMock(return_value={'created': True, 'path': 'apps/imp/dev'})) as generate:
            await runner.build_environment('imp', 'dev', force=True)
        await scheduler.wait_idle()

        generate.assert_awaited_once_with(runner.vault, 'imp', 'dev', force=True)

    @pytest.mark.asyncio
    async def test_credential_failure_enqueues_nothing(self, runner, store):
        runner.vault = MagicMock()
        runner.vault.configured = True
        runner.vault.read_shared = AsyncMock(return_value={})

        with patch('operations.pipeline.generate_env_secrets',
                   AsyncMock(side_effect=SecretStoreError('permission denied'))):
            with pytest.raises(PreflightError, match='Credential generation failed'):
                await runner.build_environment('imp', 'dev')
        assert store.list() == []


class TestDestroyEnvironment:
    """Tests for destroy_environment()."""

    @pytest.mark.asyncio
    async def test_cleans_up_then_enqueues_destroy(self, runner, scheduler, store, proxmox, unifi, registry):
        result = await runner.destroy_environment('imp', 'dev')
        await scheduler.wait_idle()

        unifi.cleanup_environment_clients.assert_awaited_once_with(registry, 'imp', 'dev')
        proxmox.destroy_resources_for_environment.assert_awaited_once()
        assert [store.get(i).type for i in result.operations] == ['infra-destroy']
        assert store.get(result.operations[0]).initiated_by == 'lifecycle:destroy'

    @pytest.mark.asyncio
    async def test_cleanup_failures_are_not_fatal(self, runner, scheduler, proxmox, unifi):
        unifi.cleanup_environment_clients.side_effect = UniFiError('controller down')
        proxmox.destroy_resources_for_environment.side_effect = ProxmoxError('node offline')

        result = await runner.destroy_environment('imp', 'dev')
        await scheduler.wait_idle()
        assert len(result.operations) == 1

    @pytest.mark.asyncio
    async def test_missing_credentials_are_not_fatal(self, orch_config, scheduler, registry, unconfigured_vault):
        """Factories that reject missing secrets only skip the cleanup."""
        def no_proxmox(secrets):
            raise ProxmoxError('Proxmox API credentials not found in secret store')

        def no_unifi(secrets):
            raise UniFiError('UniFi API credentials not found in secret store')

        runner = LifecycleRunner(orch_config, scheduler, registry, unconfigured_vault,
                                 proxmox_factory=no_proxmox, unifi_factory=no_unifi)
        result = await runner.destroy_environment('imp', 'dev')
        await scheduler.wait_idle()
        assert len(result.operations) == 1

    @pytest.mark.asyncio
    async def test_unknown_app(self, runner):
        with pytest.raises(InputError, match='Unknown app'):
            await runner.destroy_environment('ghost', 'dev')
