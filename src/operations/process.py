"""Supervised child process with streamed output.

The child runs in its own session (process group). Termination signals
the whole group, so children left behind by an exited leader are reached
too. stdout and stderr are read concurrently in chunks;
each decoded chunk is handed to the output callback as soon as it
arrives, so consumers see output live rather than on exit.
"""

import asyncio
import codecs
import logging
import os
import signal
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096

# Upper bound on waiting for the group to go away after SIGKILL
SIGKILL_WAIT = 5


class SupervisedProcess:
    """One child process plus its readers, timeout and termination.

    Attributes:
        timed_out: The timeout elapsed and the group was terminated
        cancelled: terminate() was requested by a caller
        returncode: Exit code once finished (negative = killed by signal)
    """

    def __init__(
        self,
        cmd: list[str],
        on_output: Callable[[str], None],
        cwd: Optional[Path] = None,
        env: Optional[dict] = None,
        timeout: Optional[float] = None,
        kill_grace: float = 5,
    ):
        self.cmd = cmd
        self.on_output = on_output
        self.cwd = cwd
        self.env = env
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.timed_out = False
        self.cancelled = False
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._finished = False

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc else None

    async def start(self) -> None:
        """Spawn the child. Raises OSError if the executable cannot be started."""
        logger.debug(f"Spawning: {' '.join(self.cmd)}")
        self._proc = await asyncio.create_subprocess_exec(
            *self.cmd,
            cwd=self.cwd,
            env=self.env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        # Incremental decoding keeps multi-byte characters split across
        # chunk boundaries intact
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self.on_output(text)
        tail = decoder.decode(b'', final=True)
        if tail:
            self.on_output(tail)

    async def wait(self) -> int:
        """Stream output until the child exits, enforcing the timeout.

        Returns the exit code.
        """
        if self._proc is None:
            raise RuntimeError("Process not started")
        readers = asyncio.gather(self._pump(self._proc.stdout), self._pump(self._proc.stderr))
        try:
            if self.timeout:
                await asyncio.wait_for(self._proc.wait(), timeout=self.timeout)
            else:
                await self._proc.wait()
            self._finished = True
        except asyncio.TimeoutError:
            self.timed_out = True
            logger.warning(f"Process {self.pid} timed out after {self.timeout}s")
            await self._terminate()
        except asyncio.CancelledError:
            await self._terminate()
            readers.cancel()
            raise
        if self._finished:
            await readers
        else:
            logger.warning(f"Process {self.pid} output still open after SIGKILL, abandoning readers")
            readers.cancel()
        return self._proc.returncode

    async def run(self) -> int:
        await self.start()
        return await self.wait()

    async def terminate(self) -> None:
        """Cancel a running child: SIGTERM the group, SIGKILL after the grace period."""
        self.cancelled = True
        await self._terminate()

    async def _terminate(self) -> None:
        # The leader can exit while children left in its group keep the
        # pipes open, so the group is signalled even when a returncode is set
        if self._proc is None or self._finished:
            return
        self._signal(signal.SIGTERM)
        if await self._wait_closed(self.kill_grace):
            return
        logger.warning(f"Process group {self.pid} ignored SIGTERM, sending SIGKILL")
        self._signal(signal.SIGKILL)
        await self._wait_closed(SIGKILL_WAIT)

    async def _wait_closed(self, timeout: float) -> bool:
        """Wait for exit and pipe closure. Returns False if ``timeout`` ran out."""
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._finished = True
        return True

    def _signal(self, sig: int) -> None:
        # start_new_session makes the child its own group leader
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            pass
