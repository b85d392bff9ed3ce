"""Delegated streaming through a MediaMTX-style media server's HTTP control API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from camrelay.errors import RemoteControlError, StreamNotFoundError
from camrelay.models.config import MediaServerConfig
from camrelay.models.enums import Transport
from camrelay.streaming.ffmpeg import redact_rtsp_url

logger = logging.getLogger(__name__)

_CONFIG_PATCH_ENDPOINT = "/v2/config/patch"
_PATHS_LIST_ENDPOINT = "/v2/paths/list"


@dataclass(slots=True)
class RemotePath:
    camera_id: int
    name: str
    source_url: str


def path_name(camera_id: int) -> str:
    return f"cam{camera_id}"


def parse_path_names(payload: Any) -> set[str]:
    """Extract path names from a paths listing.

    `items` is either a mapping keyed by path name or a list of objects with a
    `name` field, depending on the server version.
    """
    if not isinstance(payload, dict):
        return set()
    items = payload.get("items")
    if isinstance(items, dict):
        return {str(name) for name in items}
    if isinstance(items, list):
        return {
            str(item["name"])
            for item in items
            if isinstance(item, dict) and item.get("name") is not None
        }
    return set()


class MediaServerService:
    """Mirrors active camera paths locally and drives the remote server.

    The local mirror answers "is this camera started" and "what is its URL";
    the remote listing is the source of truth for health.
    """

    transport = Transport.MEDIA_SERVER

    def __init__(self, config: MediaServerConfig) -> None:
        self.config = config
        self._paths: dict[int, RemotePath] = {}
        self._lock = asyncio.Lock()
        self._session: aiohttp.ClientSession | None = None
        self._reconcile_task: asyncio.Task[None] | None = None
        self._shutdown_called = False

    def hls_url(self, name: str) -> str:
        return f"{self.config.hls_base_url}/{name}/index.m3u8"

    def _path_config(self, source_url: str) -> dict[str, object]:
        return {
            "source": source_url,
            "sourceOnDemand": True,
            "sourceOnDemandStartTimeout": self.config.on_demand_start_timeout,
            "sourceOnDemandCloseAfter": self.config.on_demand_close_after,
            "sourceProtocol": "tcp",
            "sourceAnyPortEnable": False,
        }

    async def start_stream(self, camera_id: int, source_url: str) -> str:
        """Configure the remote path for a camera and return its HLS URL.

        Raises:
            RemoteControlError: If the server rejects the path or is unreachable
        """
        async with self._lock:
            existing = self._paths.get(camera_id)
            if existing is not None:
                return self.hls_url(existing.name)

            name = path_name(camera_id)
            await self._patch_paths(
                {name: self._path_config(source_url)},
                camera_id=camera_id,
                accepted=(200, 201),
            )
            self._paths[camera_id] = RemotePath(camera_id=camera_id, name=name, source_url=source_url)

        url = self.hls_url(name)
        logger.info(
            "Media server path configured for camera %d: %s (%s) -> %s",
            camera_id,
            name,
            redact_rtsp_url(source_url),
            url,
            extra={"camera_id": camera_id},
        )
        return url

    async def stop_stream(self, camera_id: int) -> None:
        """Remove the camera's remote path.

        The local mirror is only dropped once the server confirms removal.

        Raises:
            StreamNotFoundError: If the camera has no configured path
            RemoteControlError: If the server rejects the removal
        """
        async with self._lock:
            remote = self._paths.get(camera_id)
            if remote is None:
                raise StreamNotFoundError(camera_id, self.transport)
            await self._patch_paths({remote.name: None}, camera_id=camera_id, accepted=(200,))
            del self._paths[camera_id]
        logger.info(
            "Media server path removed for camera %d: %s",
            camera_id,
            remote.name,
            extra={"camera_id": camera_id},
        )

    async def get_stream_url(self, camera_id: int) -> str | None:
        async with self._lock:
            remote = self._paths.get(camera_id)
            return self.hls_url(remote.name) if remote is not None else None

    async def get_stream_health(self, camera_id: int) -> bool:
        """Return whether the server currently lists the camera's path.

        Raises:
            StreamNotFoundError: If the camera has no configured path
            RemoteControlError: If the listing cannot be fetched
        """
        async with self._lock:
            remote = self._paths.get(camera_id)
            if remote is None:
                raise StreamNotFoundError(camera_id, self.transport)
            name = remote.name
        names = await self._list_paths(camera_id=camera_id)
        return name in names

    async def get_all_stream_health(self) -> dict[int, bool]:
        """Health of every mirrored path from one listing; API failure marks all unhealthy."""
        async with self._lock:
            mirrored = {camera_id: remote.name for camera_id, remote in self._paths.items()}
        if not mirrored:
            return {}
        try:
            names = await self._list_paths(camera_id=None)
        except RemoteControlError as exc:
            logger.warning("Media server health listing failed: %s", exc)
            return {camera_id: False for camera_id in mirrored}
        return {camera_id: name in names for camera_id, name in mirrored.items()}

    async def reconcile(self) -> list[int]:
        """Re-create mirrored paths the server no longer lists.

        Returns the camera ids whose paths were restored.
        """
        async with self._lock:
            if not self._paths:
                return []
            names = await self._list_paths(camera_id=None)
            missing = [remote for remote in self._paths.values() if remote.name not in names]
            for remote in missing:
                await self._patch_paths(
                    {remote.name: self._path_config(remote.source_url)},
                    camera_id=remote.camera_id,
                    accepted=(200, 201),
                )
                logger.warning(
                    "Media server path %s was missing; restored for camera %d",
                    remote.name,
                    remote.camera_id,
                    extra={"camera_id": remote.camera_id},
                )
        return [remote.camera_id for remote in missing]

    def start_reconciler(self) -> None:
        """Start periodic reconciliation when `reconcile_interval_s` is positive."""
        if self.config.reconcile_interval_s <= 0 or self._reconcile_task is not None:
            return
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop reconciliation and close the HTTP session. Remote paths are left in place."""
        _ = timeout
        if self._shutdown_called:
            return
        self._shutdown_called = True

        task = self._reconcile_task
        self._reconcile_task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._session and not self._session.closed:
            await self._session.close()

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reconcile_interval_s)
            try:
                await self.reconcile()
            except RemoteControlError as exc:
                logger.warning("Media server reconciliation failed: %s", exc)

    def _ensure_open(self, camera_id: int | None) -> None:
        if self._shutdown_called:
            raise RemoteControlError(
                "media server client has been shut down",
                camera_id=camera_id,
                transport=self.transport,
            )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _patch_paths(
        self,
        paths: dict[str, dict[str, object] | None],
        *,
        camera_id: int,
        accepted: tuple[int, ...],
    ) -> None:
        self._ensure_open(camera_id)
        session = await self._get_session()
        url = f"{self.config.api_base_url}{_CONFIG_PATCH_ENDPOINT}"
        try:
            async with session.post(url, json={"paths": paths}) as response:
                if response.status not in accepted:
                    details = await response.text()
                    raise RemoteControlError(
                        f"media server API error (status {response.status}): {details}",
                        camera_id=camera_id,
                        transport=self.transport,
                        status_code=response.status,
                    )
                await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RemoteControlError(
                f"failed to reach media server at {self.config.api_base_url}: {exc}",
                camera_id=camera_id,
                transport=self.transport,
                cause=exc,
            ) from exc

    async def _list_paths(self, *, camera_id: int | None) -> set[str]:
        self._ensure_open(camera_id)
        session = await self._get_session()
        url = f"{self.config.api_base_url}{_PATHS_LIST_ENDPOINT}"
        try:
            async with session.get(url) as response:
                if response.status != 200:
                    raise RemoteControlError(
                        f"media server API error (status {response.status})",
                        camera_id=camera_id,
                        transport=self.transport,
                        status_code=response.status,
                    )
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise RemoteControlError(
                f"failed to list media server paths: {exc}",
                camera_id=camera_id,
                transport=self.transport,
                cause=exc,
            ) from exc
        return parse_path_names(payload)
