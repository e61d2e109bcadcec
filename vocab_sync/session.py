"""Sync session: one listing and one metadata read per pass, one reconciled write at the end.

A :class:`SyncContext` is created at the start of a pass and threaded through
every pull and push. Push steps accumulate version patches on it; the pass
ends with :func:`commit_sync_meta`, which re-reads the remote metadata, folds
the patches in with a key-wise maximum and writes it back once. Because the
merge never lowers a version and re-applying a patch changes nothing, two
replicas committing concurrently cannot regress each other.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import voluptuous as vol

from .blob_client import BlobDecodeError, BlobNotFoundError, BlobStore
from .const import REMOTE_META_FILE
from .merge import build_file_id_map, clean_tombstones, merge_tombstones, merge_versions
from .models import SyncMeta

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

READ_OK = "ok"
READ_MISSING = "missing"
READ_CORRUPT = "corrupt"


@dataclass(slots=True)
class RemoteRead(Generic[T]):
    """A remote object, or the default substituted when it was absent or unreadable."""

    value: T
    status: str = READ_OK

    @property
    def defaulted(self) -> bool:
        return self.status != READ_OK


@dataclass(slots=True)
class VersionPatches:
    """Version bumps recorded by push steps during one session."""

    partition_versions: dict[str, int] = field(default_factory=dict)
    fsrs_partition_versions: dict[str, int] = field(default_factory=dict)
    review_partition_versions: dict[str, int] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.partition_versions or self.fsrs_partition_versions or self.review_partition_versions)


@dataclass(slots=True)
class SyncContext:
    """State owned by exactly one sync pass."""

    client: BlobStore
    token: str
    file_id_map: dict[str, str]
    file_ids: MutableMapping[str, str]
    remote_meta: SyncMeta
    version_patches: VersionPatches = field(default_factory=VersionPatches)
    listed: bool = True
    meta_read: str = READ_OK


async def read_remote(
    client: BlobStore,
    token: str,
    file_id: str | None,
    parse: Callable[[Any], T],
    default: Callable[[], T] | None = None,
) -> RemoteRead[T | None]:
    """Fetch and parse one object; absence and corruption yield ``default()``.

    Transport failures are not caught.
    """

    fallback = default or (lambda: None)
    if not file_id:
        return RemoteRead(fallback(), READ_MISSING)
    try:
        payload = await client.get_file(token, file_id)
    except BlobNotFoundError:
        return RemoteRead(fallback(), READ_MISSING)
    except BlobDecodeError as err:
        _LOGGER.warning("Remote object %s is not valid JSON, using defaults: %s", file_id, err)
        return RemoteRead(fallback(), READ_CORRUPT)
    try:
        return RemoteRead(parse(payload), READ_OK)
    except (vol.Invalid, TypeError, ValueError, KeyError) as err:
        _LOGGER.warning("Remote object %s has an unexpected shape, using defaults: %s", file_id, err)
        return RemoteRead(fallback(), READ_CORRUPT)


async def resolve_file_id(ctx: SyncContext, name: str) -> str | None:
    """Return the id for ``name`` from the listing, the local cache, or a lookup.

    A listed session trusts its listing alone. The cache and the
    single-object lookup only serve sessions that skipped the listing.
    """

    if ctx.listed:
        return ctx.file_id_map.get(name)
    file_id = ctx.file_id_map.get(name) or ctx.file_ids.get(name)
    if file_id:
        return file_id
    file_id = await ctx.client.find_file_by_name(ctx.token, name)
    if file_id:
        ctx.file_id_map[name] = file_id
        ctx.file_ids[name] = file_id
    return file_id


async def write_blob(ctx: SyncContext, name: str, content: Any, *, create: bool = True) -> str | None:
    """Update ``name`` in place when its id is known, otherwise create it.

    With ``create=False`` nothing is written when the object does not exist
    remotely, and ``None`` is returned.
    """

    file_id = await resolve_file_id(ctx, name)
    if file_id:
        try:
            await ctx.client.update_file(ctx.token, file_id, content)
            return file_id
        except BlobNotFoundError:
            _LOGGER.debug("Cached id for %s is stale", name)
            ctx.file_id_map.pop(name, None)
            ctx.file_ids.pop(name, None)
    if not create:
        return None
    new_id = await ctx.client.create_file(ctx.token, name, content)
    ctx.file_id_map[name] = new_id
    ctx.file_ids[name] = new_id
    return new_id


async def create_sync_context(
    client: BlobStore,
    token: str,
    file_ids: MutableMapping[str, str],
    *,
    use_listing: bool = True,
) -> SyncContext:
    """Open a session with one listing and one metadata read.

    Ids found by the listing are written into ``file_ids`` so later sessions
    can reuse them, and cached names the listing no longer shows are
    dropped. Missing or unreadable metadata falls back to an empty
    :class:`SyncMeta`. With ``use_listing=False`` the listing is skipped and
    names the cache does not know are looked up one at a time.
    """

    file_id_map: dict[str, str] = {}
    if use_listing:
        file_id_map = build_file_id_map(await client.list_files(token))
        for name in [name for name in file_ids if name not in file_id_map]:
            del file_ids[name]
        file_ids.update(file_id_map)

    ctx = SyncContext(
        client=client,
        token=token,
        file_id_map=file_id_map,
        file_ids=file_ids,
        remote_meta=SyncMeta(),
        listed=use_listing,
    )
    meta_id = await resolve_file_id(ctx, REMOTE_META_FILE)
    meta = await read_remote(client, token, meta_id, SyncMeta.from_dict, SyncMeta)
    ctx.remote_meta = meta.value
    ctx.meta_read = meta.status
    _LOGGER.debug(
        "Sync context ready: %s remote objects, metadata %s",
        len(file_id_map),
        meta.status,
    )
    return ctx


def reconcile_sync_meta(
    fresh: SyncMeta,
    patches: VersionPatches,
    tombstones: Mapping[str, int],
    *,
    now: int | None = None,
) -> SyncMeta:
    """Fold a session's patches and tombstones into freshly read metadata."""

    fsrs = fresh.fsrs_partition_versions
    if patches.fsrs_partition_versions:
        fsrs = merge_versions(fsrs, patches.fsrs_partition_versions)
    reviews = fresh.review_partition_versions
    if patches.review_partition_versions:
        reviews = merge_versions(reviews, patches.review_partition_versions)
    return SyncMeta(
        partition_versions=merge_versions(fresh.partition_versions, patches.partition_versions),
        deleted_entries=clean_tombstones(merge_tombstones(fresh.deleted_entries, tombstones), now=now),
        fsrs_partition_versions=fsrs,
        review_partition_versions=reviews,
    )


async def commit_sync_meta(ctx: SyncContext, *, now: int | None = None) -> SyncMeta:
    """Re-read, merge and write the remote metadata once at the end of a push phase."""

    meta_id = await resolve_file_id(ctx, REMOTE_META_FILE)
    fresh = await read_remote(ctx.client, ctx.token, meta_id, SyncMeta.from_dict, SyncMeta)
    final = reconcile_sync_meta(fresh.value, ctx.version_patches, ctx.remote_meta.deleted_entries, now=now)
    await write_blob(ctx, REMOTE_META_FILE, final.to_dict())
    ctx.remote_meta = final
    _LOGGER.debug(
        "Committed sync metadata: %s partitions, %s tombstones",
        len(final.partition_versions),
        len(final.deleted_entries),
    )
    return final


__all__ = [
    "READ_CORRUPT",
    "READ_MISSING",
    "READ_OK",
    "RemoteRead",
    "SyncContext",
    "VersionPatches",
    "commit_sync_meta",
    "create_sync_context",
    "read_remote",
    "reconcile_sync_meta",
    "resolve_file_id",
    "write_blob",
]
