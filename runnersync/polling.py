"""Data-version polling used while the hub is unavailable."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from pydantic import ValidationError

from .config import SyncConfig
from .dispatch import EventDispatcher
from .errors import NetworkError, RequestError
from .session import SessionStore
from .types import DataVersion, SignalName

logger = logging.getLogger("runnersync.polling")


class PollingFallback:
    """Polls ``/api/data-version`` on a fixed interval.

    The first successful poll only records the version. Every later poll that
    observes a different version emits one ``dataVersionChanged`` signal before
    the new version is recorded. Failures never stop the loop.
    """

    def __init__(
        self,
        config: SyncConfig,
        sessions: SessionStore,
        dispatcher: EventDispatcher,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._dispatcher = dispatcher
        self._client = client
        self._interval = config.polling_interval
        self._task: asyncio.Task[None] | None = None
        self.last_version_seen: str | None = None
        self.polls = 0

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self._config.request_timeout) as client:
            yield client

    def start(self) -> None:
        if self.is_polling:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.info("polling_started", extra={"interval": self._interval})

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("polling_stopped")
        self.last_version_seen = None

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("polling_check_crashed")
            await asyncio.sleep(self._interval)

    async def fetch_version(self) -> str:
        url = self._config.resolved_data_version_url
        headers = {
            "Cache-Control": "no-cache",
            "X-Client": self._config.client_header,
        }
        headers.update(self._sessions.auth_header())
        try:
            async with self._client_context() as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Data version request failed: {exc}") from exc
        if not response.is_success:
            raise RequestError(response.status_code, "Data version request rejected")
        try:
            payload: Any = response.json()
            return DataVersion.from_payload(payload).version
        except (json.JSONDecodeError, ValidationError, ValueError) as exc:
            raise RequestError(response.status_code, "Malformed data version response") from exc

    async def poll_once(self) -> bool:
        """Run one poll; returns True when a change signal was emitted."""
        self.polls += 1
        try:
            version = await self.fetch_version()
        except (NetworkError, RequestError) as exc:
            logger.warning("polling_check_failed", extra={"error": str(exc)})
            return False

        previous = self.last_version_seen
        changed = previous is not None and version != previous
        if changed:
            logger.info("data_version_changed", extra={"previous": previous, "current": version})
            self._dispatcher.emit(
                SignalName.DATA_VERSION_CHANGED,
                {"version": version, "timestamp": time.time()},
            )
        self.last_version_seen = version
        return changed


__all__ = ["PollingFallback"]
