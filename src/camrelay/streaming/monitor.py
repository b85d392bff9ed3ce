"""Periodic liveness and freshness supervision for transcoder-backed streams."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from camrelay.models.enums import RestartReason
from camrelay.models.stream import StreamEntry
from camrelay.streaming.supervisor import SupervisedStreamService

logger = logging.getLogger(__name__)


class StreamHealthMonitor:
    """Ticks every `check_interval_s` and restarts dead or stalled transcoders.

    Each tick holds the service's registry lock for its whole duration. Process
    exit notifications wake the loop early so crashed transcoders are restarted
    without waiting for the next interval.
    """

    def __init__(self, service: SupervisedStreamService[Any]) -> None:
        self._service = service
        self._policy = service.policy
        self._clock = service.clock
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        service.set_exit_listener(self.wake)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def wake(self) -> None:
        self._wake.set()

    async def check_once(self) -> int:
        """Run one health tick. Returns the number of restarts attempted."""
        restarts = 0
        async with self._service.registry.lock:
            for entry in self._service.registry.entries():
                try:
                    self._service.before_health_check(entry)
                except Exception as exc:
                    logger.warning(
                        "Pre-check hook failed for camera %d: %s",
                        entry.camera_id,
                        exc,
                        exc_info=exc,
                        extra={"camera_id": entry.camera_id},
                    )
                reason = self._evaluate(entry)
                if reason is None:
                    continue
                await self._service.restart_unsafe(entry, reason)
                restarts += 1
        return restarts

    def _evaluate(self, entry: StreamEntry) -> RestartReason | None:
        if entry.exhausted or entry.launching:
            return None

        process = entry.process
        if process is None:
            return RestartReason.PROCESS_MISSING
        if not process.is_alive():
            return RestartReason.PROCESS_DEAD

        updated_at = self._service.output_updated_at(entry)
        if updated_at is not None:
            age = self._clock.time() - updated_at
            if age > self._policy.stale_after_s:
                logger.warning(
                    "Output for camera %d is stale (%.1fs old)",
                    entry.camera_id,
                    age,
                    extra={"camera_id": entry.camera_id},
                )
                return RestartReason.OUTPUT_STALE
            self._service.mark_healthy_unsafe(entry, updated_at)
            return None

        running_for = self._clock.now() - entry.started_at
        if running_for < self._policy.startup_grace_s:
            logger.debug(
                "Waiting for first output from camera %d (%.1fs since start)",
                entry.camera_id,
                running_for,
                extra={"camera_id": entry.camera_id},
            )
            return None
        return RestartReason.OUTPUT_MISSING

    async def _run(self) -> None:
        interval = self._policy.check_interval_s
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            try:
                await self.check_once()
            except Exception as exc:
                logger.error("Health check tick failed: %s", exc, exc_info=exc)
