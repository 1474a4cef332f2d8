"""Common async subprocess helpers for infrastructure automation."""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SSH_OPTS = ['-o', 'StrictHostKeyChecking=no', '-o', 'BatchMode=yes', '-o', 'LogLevel=ERROR']


@dataclass
class ActionResult:
    """Result returned by an inline action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    details: dict = field(default_factory=dict)


async def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: float = 600,
    env: Optional[dict] = None,
    input_data: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    Output is buffered, so this is for short helper commands (git, ssh),
    not for operation processes whose output must be streamed.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return -1, '', str(e)

    payload = input_data.encode() if input_data is not None else None
    try:
        out, err = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, '', f'Command timed out after {timeout}s'
    return proc.returncode, out.decode(errors='replace'), err.decode(errors='replace')


async def run_ssh(
    host: str,
    command: str,
    user: str = 'root',
    timeout: float = 60,
    key_file: Optional[Path] = None,
    input_data: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run command over SSH."""
    cmd = ['ssh'] + SSH_OPTS + ['-o', f'ConnectTimeout={min(int(timeout), 30)}']
    if key_file:
        cmd += ['-i', str(key_file)]
    cmd += [f'{user}@{host}', command]
    return await run_command(cmd, timeout=timeout, input_data=input_data)
