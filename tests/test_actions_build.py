"""Tests for component build steps."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from actions.build import artifact_path, artifact_var, component_steps, select_components  # noqa: E402
from operations.models import ALL_COMPONENTS  # noqa: E402


class TestSelectComponents:
    """Test select_components."""

    def test_all_components(self, manifest):
        assert [c.name for c in select_components(manifest, ALL_COMPONENTS)] == ['server', 'client']

    def test_named_component(self, manifest):
        assert [c.name for c in select_components(manifest, ('client',))] == ['client']

    def test_undeclared_component_skipped(self, manifest):
        assert select_components(manifest, ('worker',)) == []


class TestComponentSteps:
    """Test component_steps."""

    def test_install_build_archive(self, manifest, tmp_path):
        archive = tmp_path / 'out.tar.gz'
        steps = component_steps(manifest.components['server'], tmp_path / 'repo', archive)

        assert [s.label for s in steps] == ['install', 'build', 'archive']
        assert steps[0].cmd == ['/bin/sh', '-c', 'npm ci']
        assert steps[0].cwd == tmp_path / 'repo' / 'server'
        assert steps[2].cmd == ['tar', '-czf', str(archive), '-C', str(tmp_path / 'repo' / 'server'), 'dist']
        assert steps[0].prefix == '[build:server] '

    def test_undeclared_install_skipped(self, manifest, tmp_path):
        steps = component_steps(manifest.components['client'], tmp_path, tmp_path / 'c.tar.gz')
        assert [s.label for s in steps] == ['build', 'archive']


class TestArtifacts:
    """Test artifact naming."""

    def test_artifact_path(self, tmp_path):
        path = artifact_path(tmp_path, 'imp', 'dev', 'server', '0123456789abcdef0123')
        assert path == tmp_path / 'imp' / 'dev' / 'server-0123456789ab.tar.gz'

    def test_artifact_var(self):
        assert artifact_var('client') == 'client_artifact'
