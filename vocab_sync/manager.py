"""Manage the vocabulary sync worker lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import voluptuous as vol
from aiohttp import ClientSession

from .auth import StaticTokenProvider, TokenProvider
from .blob_client import BlobStore, BlobStoreClient, BlobStoreError
from .const import (
    CONF_ACCESS_TOKEN,
    CONF_API_BASE_URL,
    CONF_CONCURRENCY,
    CONF_INTERVAL,
    CONF_REQUEST_TIMEOUT,
    CONF_STORE_PATH,
    CONF_UPLOAD_BASE_URL,
    DEFAULT_API_BASE_URL,
    DEFAULT_CONCURRENCY,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_STORE_PATH,
    DEFAULT_SYNC_INTERVAL,
    DEFAULT_UPLOAD_BASE_URL,
    MIN_SYNC_INTERVAL,
)
from .kv import KeyValueStore, SQLiteKeyValueStore
from .store import ReviewStore, SyncStateStore, VocabStore
from .worker import SyncResult, VocabSyncError, VocabSyncWorker

_LOGGER = logging.getLogger(__name__)

_URL = vol.All(str, vol.Length(min=1))

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_STORE_PATH, default=DEFAULT_STORE_PATH): vol.All(vol.Coerce(str), vol.Length(min=1)),
        vol.Optional(CONF_API_BASE_URL, default=DEFAULT_API_BASE_URL): _URL,
        vol.Optional(CONF_UPLOAD_BASE_URL, default=DEFAULT_UPLOAD_BASE_URL): _URL,
        vol.Optional(CONF_CONCURRENCY, default=DEFAULT_CONCURRENCY): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional(CONF_INTERVAL, default=DEFAULT_SYNC_INTERVAL): vol.All(
            vol.Coerce(int), vol.Range(min=MIN_SYNC_INTERVAL)
        ),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0, min_included=False)
        ),
        vol.Optional(CONF_ACCESS_TOKEN): vol.Any(None, str),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(slots=True)
class SyncConfig:
    """Validated settings for one replica."""

    store_path: str = DEFAULT_STORE_PATH
    api_base_url: str = DEFAULT_API_BASE_URL
    upload_base_url: str = DEFAULT_UPLOAD_BASE_URL
    concurrency: int = DEFAULT_CONCURRENCY
    interval: int = DEFAULT_SYNC_INTERVAL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    access_token: str | None = None

    @classmethod
    def from_options(cls, options: Mapping[str, Any] | None) -> SyncConfig:
        try:
            data = CONFIG_SCHEMA(dict(options or {}))
        except vol.Invalid as err:
            raise VocabSyncError(f"invalid configuration: {err}", reason="invalid_config") from err
        token = (data.get(CONF_ACCESS_TOKEN) or "").strip()
        return cls(
            store_path=data[CONF_STORE_PATH],
            api_base_url=data[CONF_API_BASE_URL],
            upload_base_url=data[CONF_UPLOAD_BASE_URL],
            concurrency=data[CONF_CONCURRENCY],
            interval=data[CONF_INTERVAL],
            request_timeout=data[CONF_REQUEST_TIMEOUT],
            access_token=token or None,
        )


class VocabSyncManager:
    """Owns the store, client and worker and runs at most one pass at a time."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        token_provider: TokenProvider | None = None,
        session: ClientSession | None = None,
        client: BlobStore | None = None,
        kv: KeyValueStore | None = None,
    ) -> None:
        self.config = config
        self._owns_kv = kv is None
        self.kv = kv if kv is not None else SQLiteKeyValueStore(config.store_path)
        self.store = VocabStore(self.kv)
        self.reviews = ReviewStore(self.kv)
        self.token_provider = token_provider or StaticTokenProvider(config.access_token)
        self.client = client or BlobStoreClient(
            session,
            api_base_url=config.api_base_url,
            upload_base_url=config.upload_base_url,
            timeout=config.request_timeout,
        )
        self.worker = VocabSyncWorker(
            self.store,
            self.reviews,
            SyncStateStore(self.kv),
            self.client,
            self.token_provider,
            concurrency=config.concurrency,
        )
        self._sync_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._last_success_at: datetime | None = None
        self._last_result: SyncResult | None = None
        self._last_error: str | None = None
        self._last_error_reason: str | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def async_start(self) -> None:
        """Start periodic syncing every ``config.interval`` seconds."""

        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever())

    async def async_stop(self) -> None:
        """Stop periodic syncing and release resources."""

        if self._task:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        close = getattr(self.client, "async_close", None)
        if close is not None:
            await close()
        if self._owns_kv and isinstance(self.kv, SQLiteKeyValueStore):
            self.kv.close()

    async def run_forever(self, *, interval_seconds: int | None = None) -> None:
        interval = interval_seconds or self.config.interval
        while True:
            try:
                await self.async_sync_now()
            except asyncio.CancelledError:
                raise
            except VocabSyncError as err:
                if err.reason == "sync_in_progress":
                    _LOGGER.debug("Skipping scheduled sync: %s", err)
                else:
                    _LOGGER.warning("Scheduled sync failed: %s", err)
            except Exception as err:  # pragma: no cover - defensive log
                _LOGGER.exception("Unexpected sync error: %s", err)
            await asyncio.sleep(interval)

    async def async_sync_now(self) -> SyncResult:
        """Run one full pass; refuses to start while another is in flight."""

        if self._sync_lock.locked():
            raise VocabSyncError("a sync pass is already running", reason="sync_in_progress")
        async with self._sync_lock:
            try:
                result = await self.worker.full_sync()
            except VocabSyncError as err:
                self._record_error(err, err.reason)
                raise
            except BlobStoreError as err:
                self._record_error(err, "sync_failed")
                raise VocabSyncError(str(err), reason="sync_failed") from err

        self._last_success_at = datetime.now(tz=UTC)
        self._last_result = result
        self._last_error = None
        self._last_error_reason = None
        return result

    def _record_error(self, err: Exception, reason: str | None) -> None:
        self._last_error = str(err)
        self._last_error_reason = reason

    def status(self, now: datetime | None = None) -> dict[str, Any]:
        """Return runtime status information for diagnostics."""

        now = now or datetime.now(tz=UTC)
        status: dict[str, Any] = {
            "store_path": self.config.store_path,
            "running": self.running,
            "syncing": self._sync_lock.locked(),
            "last_success_at": self._last_success_at.isoformat() if self._last_success_at else None,
            "last_success_age_seconds": (
                max((now - self._last_success_at).total_seconds(), 0.0) if self._last_success_at else None
            ),
            "last_result": self._last_result.to_dict() if self._last_result else None,
            "last_error": self._last_error,
            "last_error_reason": self._last_error_reason,
            "entries": self.store.get_index().total_count,
        }
        status.update(self.worker.status())
        if isinstance(self.token_provider, StaticTokenProvider):
            status["logged_in"] = self.token_provider.logged_in
            status["token_expired"] = self.token_provider.expired(now=now)
        return status


__all__ = ["CONFIG_SCHEMA", "SyncConfig", "VocabSyncError", "VocabSyncManager"]
