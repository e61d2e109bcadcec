"""Pull/push orchestration between the local replica and the blob store."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, MutableMapping, MutableSet
from dataclasses import asdict, dataclass, field
from typing import Any

from .auth import TokenProvider
from .blob_client import BlobStore
from .const import DEFAULT_CONCURRENCY, fsrs_blob_name, partition_blob_name, reviews_blob_name
from .fanout import parallel_map
from .merge import (
    clean_tombstones,
    count_changed_entries,
    merge_entries,
    merge_fsrs_states,
    merge_review_logs,
    merge_tombstones,
    next_version,
    now_ms,
)
from .models import FsrsState, PartitionContent, ReviewLogEntry, ReviewLogState, VocabEntry, month_of
from .session import SyncContext, commit_sync_meta, create_sync_context, read_remote, resolve_file_id, write_blob
from .store import ReviewStore, SyncStateStore, VocabStore

LOGGER = logging.getLogger(__name__)


class VocabSyncError(RuntimeError):
    """Raised when a sync pass cannot be started or completed."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(slots=True)
class SyncResult:
    """Counters reported by one pass."""

    changed: bool = False
    pulled: int = 0
    pushed: int = 0
    entries_changed: int = 0
    fsrs_pulled: int = 0
    reviews_pulled: int = 0
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _stale_keys(remote_versions: Mapping[str, int], local_versions: Mapping[str, int]) -> list[str]:
    return sorted(key for key, version in remote_versions.items() if version > local_versions.get(key, 0))


class VocabSyncWorker:
    """Keeps a local replica and the shared blob store converging.

    Local mutations go through this class so the dirty sets and tombstones
    stay in step with the data. A pass pulls entries, scheduler states and
    review logs, pushes whatever is dirty, then commits the metadata once.
    """

    def __init__(
        self,
        store: VocabStore,
        reviews: ReviewStore,
        state_store: SyncStateStore,
        client: BlobStore,
        token_provider: TokenProvider,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.reviews = reviews
        self.state_store = state_store
        self.client = client
        self.token_provider = token_provider
        self.concurrency = concurrency
        self.logger = logger or LOGGER
        self.state = state_store.load()

    # ------------------------------------------------------------------
    def add_entry(self, entry: VocabEntry) -> None:
        self.store.add_entry(entry)
        self.state.dirty_dates.add(entry.date_added)
        self._save()

    def update_entry(self, entry: VocabEntry) -> bool:
        if not self.store.update_entry(entry):
            return False
        self.state.dirty_dates.add(entry.date_added)
        self._save()
        return True

    def delete_entry(self, entry_id: str, date: str, *, now: int | None = None) -> bool:
        """Delete locally and leave a tombstone for the other replicas."""

        if not self.store.delete_entry(entry_id, date):
            return False
        self.state.record_deletion(entry_id, date, now_ms() if now is None else now)
        self._save()
        return True

    def record_review(self, log: ReviewLogEntry, card_state: Mapping[str, Any] | None = None) -> None:
        """Append a review log and optionally replace the card's scheduler state.

        Card states live in the month their entry was added; logs live in the
        month they were recorded.
        """

        self.reviews.append_review_log(log)
        self.state.dirty_review_months.add(log.month)
        if card_state is not None:
            date = self.store.locate(log.vocab_id)
            month = month_of(date) if date else log.month
            self.reviews.put_card_state(log.vocab_id, month, card_state)
            self.state.dirty_fsrs_months.add(month)
        self._save()

    def _save(self) -> None:
        self.state_store.save(self.state)

    # ------------------------------------------------------------------
    async def pull_entries(self, ctx: SyncContext, result: SyncResult | None = None) -> SyncResult:
        """Apply remote tombstones, then pull every partition the remote has newer."""

        result = result or SyncResult()
        remote = ctx.remote_meta
        tombstones = merge_tombstones(self.state.deleted_entries, remote.deleted_entries)
        self.state.deleted_entries = tombstones
        remote.deleted_entries = dict(tombstones)
        removed = self.store.remove_entries(tombstones)
        if removed:
            self.logger.info("Removed %s entries deleted on another device", removed)
            result.entries_changed += removed

        async def pull_one(date: str) -> int | None:
            file_id = await resolve_file_id(ctx, partition_blob_name(date))
            read = await read_remote(ctx.client, ctx.token, file_id, PartitionContent.from_dict)
            local = self.store.get_entries(date)
            if read.value is None:
                self.logger.debug("Partition %s unavailable remotely (%s)", date, read.status)
                if local:
                    self.state.dirty_dates.add(date)
                self.state.partition_versions[date] = remote.partition_versions[date]
                return None
            merged = merge_entries(local, read.value.entries, tombstones)
            changed = count_changed_entries(local, merged)
            if changed:
                self.store.replace_partition(date, merged)
            if count_changed_entries(read.value.entries, merged):
                self.state.dirty_dates.add(date)
            self.state.partition_versions[date] = max(remote.partition_versions[date], read.value.version)
            return changed

        pulled = await self._pull(
            _stale_keys(remote.partition_versions, self.state.partition_versions),
            pull_one,
            partition_blob_name,
            result,
        )
        result.pulled += len(pulled)
        result.entries_changed += sum(pulled)
        self._mark_unsynced(
            self.store.get_index().dates,
            self.state.partition_versions,
            remote.partition_versions,
            self.state.dirty_dates,
        )
        return result

    async def pull_fsrs(self, ctx: SyncContext, result: SyncResult | None = None) -> SyncResult:
        result = result or SyncResult()
        remote_versions = ctx.remote_meta.fsrs_partition_versions or {}
        local_versions = self.state.fsrs_partition_versions

        async def pull_one(month: str) -> bool | None:
            file_id = await resolve_file_id(ctx, fsrs_blob_name(month))
            read = await read_remote(ctx.client, ctx.token, file_id, FsrsState.from_dict)
            local = FsrsState(self.reviews.get_card_states(month), local_versions.get(month, 0))
            if read.value is None:
                if local.card_states:
                    self.state.dirty_fsrs_months.add(month)
                local_versions[month] = remote_versions[month]
                return None
            merged = merge_fsrs_states(local, read.value)
            changed = merged.card_states != local.card_states
            if changed:
                self.reviews.set_card_states(month, merged.card_states)
            if merged.card_states != read.value.card_states:
                self.state.dirty_fsrs_months.add(month)
            local_versions[month] = max(remote_versions[month], read.value.version)
            return changed

        pulled = await self._pull(_stale_keys(remote_versions, local_versions), pull_one, fsrs_blob_name, result)
        result.fsrs_pulled += sum(1 for changed in pulled if changed)
        self._mark_unsynced(self.reviews.fsrs_months(), local_versions, remote_versions, self.state.dirty_fsrs_months)
        return result

    async def pull_reviews(self, ctx: SyncContext, result: SyncResult | None = None) -> SyncResult:
        result = result or SyncResult()
        remote_versions = ctx.remote_meta.review_partition_versions or {}
        local_versions = self.state.review_partition_versions

        async def pull_one(month: str) -> bool | None:
            file_id = await resolve_file_id(ctx, reviews_blob_name(month))
            read = await read_remote(ctx.client, ctx.token, file_id, ReviewLogState.from_dict)
            local = ReviewLogState(self.reviews.get_review_logs(month), local_versions.get(month, 0))
            if read.value is None:
                if local.logs:
                    self.state.dirty_review_months.add(month)
                local_versions[month] = remote_versions[month]
                return None
            merged = merge_review_logs(local, read.value)
            changed = len(merged.logs) != len(local.logs)
            if changed:
                self.reviews.set_review_logs(month, merged.logs)
            if len(merged.logs) != len(read.value.logs):
                self.state.dirty_review_months.add(month)
            local_versions[month] = max(remote_versions[month], read.value.version)
            return changed

        pulled = await self._pull(_stale_keys(remote_versions, local_versions), pull_one, reviews_blob_name, result)
        result.reviews_pulled += sum(1 for changed in pulled if changed)
        self._mark_unsynced(
            self.reviews.review_months(),
            local_versions,
            remote_versions,
            self.state.dirty_review_months,
        )
        return result

    async def _pull(
        self,
        keys: list[str],
        pull_one: Callable[[str], Awaitable[Any]],
        blob_name: Callable[[str], str],
        result: SyncResult,
    ) -> list[Any]:
        settled = await parallel_map(keys, pull_one, self.concurrency)
        values = []
        for key, outcome in zip(keys, settled, strict=True):
            if not outcome.ok:
                self._record_failure(result, blob_name(key), outcome.reason)
            elif outcome.value is not None:
                values.append(outcome.value)
        return values

    @staticmethod
    def _mark_unsynced(
        keys: Iterable[str],
        local_versions: Mapping[str, int],
        remote_versions: Mapping[str, int],
        dirty: MutableSet[str],
    ) -> None:
        for key in keys:
            local_version = local_versions.get(key)
            if local_version is None or local_version > remote_versions.get(key, 0):
                dirty.add(key)

    # ------------------------------------------------------------------
    async def push_entries(
        self,
        ctx: SyncContext,
        dates: Iterable[str] | None = None,
        result: SyncResult | None = None,
    ) -> SyncResult:
        """Write each dirty date as ``{date, entries, version}``."""

        def build(date: str, version: int) -> tuple[dict[str, Any], bool]:
            entries = self.store.get_entries(date)
            return PartitionContent(date=date, entries=entries, version=version).to_dict(), not entries

        return await self._push(
            ctx,
            sorted(self.state.dirty_dates) if dates is None else list(dates),
            build,
            blob_name=partition_blob_name,
            local_versions=self.state.partition_versions,
            remote_versions=ctx.remote_meta.partition_versions,
            patches=ctx.version_patches.partition_versions,
            dirty=self.state.dirty_dates,
            result=result or SyncResult(),
        )

    async def push_fsrs(
        self,
        ctx: SyncContext,
        months: Iterable[str] | None = None,
        result: SyncResult | None = None,
    ) -> SyncResult:
        def build(month: str, version: int) -> tuple[dict[str, Any], bool]:
            states = self.reviews.get_card_states(month)
            return FsrsState(card_states=states, version=version).to_dict(), not states

        return await self._push(
            ctx,
            sorted(self.state.dirty_fsrs_months) if months is None else list(months),
            build,
            blob_name=fsrs_blob_name,
            local_versions=self.state.fsrs_partition_versions,
            remote_versions=ctx.remote_meta.fsrs_partition_versions or {},
            patches=ctx.version_patches.fsrs_partition_versions,
            dirty=self.state.dirty_fsrs_months,
            result=result or SyncResult(),
        )

    async def push_reviews(
        self,
        ctx: SyncContext,
        months: Iterable[str] | None = None,
        result: SyncResult | None = None,
    ) -> SyncResult:
        def build(month: str, version: int) -> tuple[dict[str, Any], bool]:
            logs = self.reviews.get_review_logs(month)
            return ReviewLogState(logs=logs, version=version).to_dict(), not logs

        return await self._push(
            ctx,
            sorted(self.state.dirty_review_months) if months is None else list(months),
            build,
            blob_name=reviews_blob_name,
            local_versions=self.state.review_partition_versions,
            remote_versions=ctx.remote_meta.review_partition_versions or {},
            patches=ctx.version_patches.review_partition_versions,
            dirty=self.state.dirty_review_months,
            result=result or SyncResult(),
        )

    async def _push(
        self,
        ctx: SyncContext,
        keys: list[str],
        build: Callable[[str, int], tuple[dict[str, Any], bool]],
        *,
        blob_name: Callable[[str], str],
        local_versions: MutableMapping[str, int],
        remote_versions: Mapping[str, int],
        patches: MutableMapping[str, int],
        dirty: MutableSet[str],
        result: SyncResult,
    ) -> SyncResult:
        ready = []
        for key in keys:
            if remote_versions.get(key, 0) > local_versions.get(key, 0):
                self.logger.debug("Not pushing %s until the newer remote copy is pulled", blob_name(key))
                continue
            ready.append(key)

        async def push_one(key: str) -> int | None:
            name = blob_name(key)
            version = next_version(local_versions.get(key), remote_versions.get(key))
            payload, empty = build(key, version)
            if not await write_blob(ctx, name, payload, create=not empty):
                return None
            return version

        settled = await parallel_map(ready, push_one, self.concurrency)
        for key, outcome in zip(ready, settled, strict=True):
            if not outcome.ok:
                self._record_failure(result, blob_name(key), outcome.reason)
                continue
            dirty.discard(key)
            if outcome.value is None:
                continue
            local_versions[key] = outcome.value
            patches[key] = outcome.value
            result.pushed += 1
        return result

    def _record_failure(self, result: SyncResult, name: str, reason: BaseException | None) -> None:
        self.logger.warning("Sync of %s failed: %s", name, reason)
        result.failed.append(name)

    # ------------------------------------------------------------------
    async def _require_token(self) -> str:
        token = await self.token_provider.get_valid_token()
        if not token:
            raise VocabSyncError("no valid access token", reason="not_authenticated")
        return token

    async def full_sync(self, *, now: int | None = None) -> SyncResult:
        """Pull everything newer, push everything dirty, commit metadata once."""

        token = await self._require_token()
        ctx = await create_sync_context(self.client, token, self.state.file_ids)
        read_tombstones = dict(ctx.remote_meta.deleted_entries)
        result = SyncResult()
        try:
            await self.pull_entries(ctx, result)
            await self.pull_fsrs(ctx, result)
            await self.pull_reviews(ctx, result)
            await self.push_entries(ctx, result=result)
            await self.push_fsrs(ctx, result=result)
            await self.push_reviews(ctx, result=result)
            if not ctx.version_patches.is_empty() or ctx.remote_meta.deleted_entries != read_tombstones:
                final = await commit_sync_meta(ctx, now=now)
                self.state.deleted_entries = merge_tombstones(self.state.deleted_entries, final.deleted_entries)
            self.state.deleted_entries = clean_tombstones(self.state.deleted_entries, now=now)
            self.state.last_sync_timestamp = now_ms() if now is None else now
        finally:
            self._save()

        result.changed = bool(result.entries_changed or result.fsrs_pulled or result.reviews_pulled)
        self.logger.info(
            "Sync finished: pulled %s partitions (%s entries changed), pushed %s, %s failed",
            result.pulled,
            result.entries_changed,
            result.pushed,
            len(result.failed),
        )
        return result

    async def push_pending(self, *, now: int | None = None) -> SyncResult:
        """Push dirty partitions without listing the remote space.

        Partitions whose remote copy is newer are left dirty for the next
        full pass.
        """

        result = SyncResult()
        if not self.state.pending:
            return result
        token = await self._require_token()
        ctx = await create_sync_context(self.client, token, self.state.file_ids, use_listing=False)
        read_tombstones = dict(ctx.remote_meta.deleted_entries)
        ctx.remote_meta.deleted_entries = merge_tombstones(ctx.remote_meta.deleted_entries, self.state.deleted_entries)
        try:
            await self.push_entries(ctx, result=result)
            await self.push_fsrs(ctx, result=result)
            await self.push_reviews(ctx, result=result)
            if not ctx.version_patches.is_empty() or ctx.remote_meta.deleted_entries != read_tombstones:
                await commit_sync_meta(ctx, now=now)
        finally:
            self._save()
        return result

    def status(self) -> dict[str, Any]:
        return {
            "pending_dates": len(self.state.dirty_dates),
            "pending_fsrs_months": len(self.state.dirty_fsrs_months),
            "pending_review_months": len(self.state.dirty_review_months),
            "tombstones": len(self.state.deleted_entries),
            "last_sync_timestamp": self.state.last_sync_timestamp,
        }


__all__ = ["SyncResult", "VocabSyncError", "VocabSyncWorker"]
