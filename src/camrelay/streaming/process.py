"""External transcoder process ownership: spawn, liveness, stop and reap."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Sequence
from typing import Protocol

from camrelay.streaming.ffmpeg import format_cmd

logger = logging.getLogger(__name__)


class TranscoderHandle(Protocol):
    """Control surface of one running transcoder process."""

    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> int | None: ...

    @property
    def stdout(self) -> asyncio.StreamReader | None: ...

    def is_alive(self) -> bool: ...

    async def wait(self) -> int: ...

    async def stop(self) -> None: ...


class ProcessFactory(Protocol):
    async def __call__(
        self,
        cmd: Sequence[str],
        *,
        capture_stdout: bool,
        name: str,
    ) -> TranscoderHandle: ...


class TranscoderProcess:
    """Owns one OS process reading an RTSP source.

    Stdout is either piped (for stream consumers) or discarded when output goes
    to the filesystem. Stderr is inherited so ffmpeg diagnostics reach the host
    stderr. The child runs in its own session so the whole tree can be signaled.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        name: str,
        kill_timeout_s: float = 5.0,
    ) -> None:
        self._process = process
        self._name = name
        self._kill_timeout_s = kill_timeout_s
        self._exited: asyncio.Future[int] = asyncio.ensure_future(process.wait())

    @classmethod
    async def spawn(
        cls,
        cmd: Sequence[str],
        *,
        capture_stdout: bool,
        name: str,
        kill_timeout_s: float = 5.0,
    ) -> TranscoderProcess:
        """Start `cmd` and return the owning handle.

        Raises:
            OSError: If the executable cannot be started
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
            stderr=None,
            start_new_session=True,
        )
        logger.info("Transcoder started: name=%s pid=%d", name, process.pid)
        return cls(process, name=name, kill_timeout_s=kill_timeout_s)

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def exited(self) -> asyncio.Future[int]:
        """Future resolved with the exit code once the process has been reaped."""
        return self._exited

    def is_alive(self) -> bool:
        return self._process.returncode is None and not self._exited.done()

    async def wait(self) -> int:
        return await asyncio.shield(self._exited)

    async def stop(self) -> None:
        """Terminate, escalate to kill, and reap. Best-effort: failures are logged."""
        if not self.is_alive():
            await self._reap()
            return

        if not _signal_process_group(self.pid, signal.SIGTERM):
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
        try:
            await asyncio.wait_for(asyncio.shield(self._exited), timeout=self._kill_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "Transcoder did not exit after SIGTERM; forcing kill: name=%s pid=%d",
                self._name,
                self.pid,
            )
            if not _signal_process_group(self.pid, signal.SIGKILL):
                try:
                    self._process.kill()
                except ProcessLookupError:
                    pass
            await self._reap()
        logger.info(
            "Transcoder stopped: name=%s pid=%d rc=%s",
            self._name,
            self.pid,
            self._process.returncode,
        )

    async def _reap(self) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(self._exited), timeout=self._kill_timeout_s)
        except asyncio.TimeoutError:
            logger.error("Transcoder could not be reaped: name=%s pid=%d", self._name, self.pid)
        except Exception as exc:
            logger.error(
                "Failed while reaping transcoder: name=%s pid=%d error=%s",
                self._name,
                self.pid,
                exc,
                exc_info=exc,
            )


def make_process_factory(*, kill_timeout_s: float) -> ProcessFactory:
    """Return a factory spawning `TranscoderProcess` handles with the given kill timeout."""

    async def _spawn(
        cmd: Sequence[str],
        *,
        capture_stdout: bool,
        name: str,
    ) -> TranscoderHandle:
        logger.debug("Spawning transcoder %s: %s", name, format_cmd(cmd))
        return await TranscoderProcess.spawn(
            cmd,
            capture_stdout=capture_stdout,
            name=name,
            kill_timeout_s=kill_timeout_s,
        )

    return _spawn


def _signal_process_group(pid: int, sig: int) -> bool:
    """Best-effort process-group signal for spawned ffmpeg trees."""
    if not hasattr(os, "killpg"):
        return False
    try:
        pgid = os.getpgid(pid)
    except OSError:
        return False
    try:
        os.killpg(pgid, sig)
        return True
    except OSError:
        return False
