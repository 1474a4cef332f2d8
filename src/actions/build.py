"""Component build steps for deploy operations.

A deploy builds each component inside the application checkout
(install, then build) and archives its artifact directory into a
tarball under artifacts_dir. The archive path is handed to the playbook
as ``{component}_artifact``.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from manifest import AppManifest, ComponentBuild
from operations.models import ALL_COMPONENTS

logger = logging.getLogger(__name__)


@dataclass
class BuildStep:
    """One shell step of a component build."""
    component: str
    label: str
    cmd: list[str]
    cwd: Path

    @property
    def prefix(self) -> str:
        return f'[build:{self.component}] '


def artifact_var(component: str) -> str:
    return f'{component}_artifact'


def artifact_path(artifacts_dir: Path, app: str, env: str, component: str, sha: str) -> Path:
    return artifacts_dir / app / env / f'{component}-{sha[:12]}.tar.gz'


def select_components(manifest: AppManifest, builds: tuple) -> list[ComponentBuild]:
    """Components a deploy type builds, in manifest order.

    Names the manifest does not declare are skipped.
    """
    if builds == ALL_COMPONENTS:
        return list(manifest.components.values())
    selected = []
    for name in builds:
        component = manifest.components.get(name)
        if component is None:
            logger.warning(f"{manifest.name}: component '{name}' not declared, skipping build")
            continue
        selected.append(component)
    return selected


def component_steps(component: ComponentBuild, repo_dir: Path, archive: Path) -> list[BuildStep]:
    """install, build and archive steps for one component."""
    workdir = repo_dir / component.path
    steps = [
        BuildStep(component.name, label, ['/bin/sh', '-c', cmd], workdir)
        for label, cmd in component.steps
    ]
    steps.append(BuildStep(
        component.name, 'archive',
        ['tar', '-czf', str(archive), '-C', str(workdir), component.artifact],
        workdir,
    ))
    return steps
