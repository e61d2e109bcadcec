"""Pure conflict-resolution functions used by every sync pass.

Nothing in this module performs I/O. Entries resolve by last-writer-wins on
their ``timestamp``, tombstones veto any surviving copy while they are
retained, scheduler card states prefer the most recent review and review logs
are a deduplicated append-only union. Version maps merge by key-wise maximum
so re-applying the same patch is harmless.
"""

from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from .const import TOMBSTONE_TTL_MS
from .models import BlobFile, FsrsState, ReviewLogState, VocabEntry


def now_ms() -> int:
    return int(time.time() * 1000)


def merge_entries(
    local: Iterable[VocabEntry],
    remote: Iterable[VocabEntry],
    tombstones: Mapping[str, int],
) -> list[VocabEntry]:
    """Merge two copies of a partition.

    Remote entries replace local ones only when their timestamp is strictly
    greater, so ties keep the local copy. Any id present in ``tombstones`` is
    dropped from the result whatever its timestamp, which also suppresses an
    id re-created before its tombstone expires.
    """

    merged: dict[str, VocabEntry] = {}
    for entry in local:
        if entry.id not in tombstones:
            merged[entry.id] = entry

    for entry in remote:
        if entry.id in tombstones:
            continue
        existing = merged.get(entry.id)
        if existing is None or entry.timestamp > existing.timestamp:
            merged[entry.id] = entry

    return list(merged.values())


def _parse_review_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def merge_fsrs_states(local: FsrsState, remote: FsrsState) -> FsrsState:
    """Merge scheduler card states card by card.

    A reviewed card beats a never-reviewed one; between two reviewed cards the
    strictly more recent ``last_review`` wins, otherwise local is kept.
    """

    merged = {key: dict(value) for key, value in local.card_states.items()}
    for vocab_id, remote_state in remote.card_states.items():
        local_state = merged.get(vocab_id)
        if local_state is None:
            merged[vocab_id] = dict(remote_state)
            continue
        local_review = _parse_review_time(local_state.get("last_review"))
        remote_review = _parse_review_time(remote_state.get("last_review"))
        if remote_review is None:
            continue
        if local_review is None or remote_review > local_review:
            merged[vocab_id] = dict(remote_state)

    return FsrsState(card_states=merged, version=max(local.version, remote.version))


def merge_review_logs(local: ReviewLogState, remote: ReviewLogState) -> ReviewLogState:
    """Union two review logs, first occurrence per ``(vocab_id, reviewed_at)`` wins."""

    seen: set[str] = set()
    logs = []
    for log in [*local.logs, *remote.logs]:
        if log.key in seen:
            continue
        seen.add(log.key)
        logs.append(log)
    # fixed-width ISO-8601 strings sort chronologically
    logs.sort(key=lambda log: log.reviewed_at)
    return ReviewLogState(logs=logs, version=max(local.version, remote.version))


def clean_tombstones(deleted: Mapping[str, int], *, now: int | None = None) -> dict[str, int]:
    """Drop tombstones older than the retention window."""

    now = now_ms() if now is None else now
    return {entry_id: ts for entry_id, ts in deleted.items() if now - ts < TOMBSTONE_TTL_MS}


def merge_tombstones(*maps: Mapping[str, int] | None) -> dict[str, int]:
    """Union of tombstone maps; the latest deletion time wins per id."""

    merged: dict[str, int] = {}
    for tombstones in maps:
        for entry_id, ts in (tombstones or {}).items():
            current = merged.get(entry_id)
            if current is None or ts > current:
                merged[entry_id] = ts
    return merged


def merge_versions(base: Mapping[str, int] | None, patch: Mapping[str, int] | None) -> dict[str, int]:
    """Key-wise maximum of two version maps."""

    merged = dict(base or {})
    for key, version in (patch or {}).items():
        merged[key] = max(version, merged.get(key, 0))
    return merged


def next_version(*known: int | None, now: int | None = None) -> int:
    """Return a version strictly greater than every known one.

    The wall clock in milliseconds is used when it is already ahead, which
    keeps versions comparable with clients that stamp partitions with it.
    """

    floor = max((version for version in known if version is not None), default=0)
    now = now_ms() if now is None else now
    return max(now, floor + 1)


def count_changed_entries(before: Iterable[VocabEntry], after: Iterable[VocabEntry]) -> int:
    """Number of additions, timestamp changes and removals between two lists."""

    before_ts = {entry.id: entry.timestamp for entry in before}
    after_ts = {entry.id: entry.timestamp for entry in after}
    changed = 0
    for entry_id, ts in after_ts.items():
        if entry_id not in before_ts or before_ts[entry_id] != ts:
            changed += 1
    changed += sum(1 for entry_id in before_ts if entry_id not in after_ts)
    return changed


def build_file_id_map(files: Iterable[BlobFile]) -> dict[str, str]:
    return {file.name: file.id for file in files}


__all__ = [
    "build_file_id_map",
    "clean_tombstones",
    "count_changed_entries",
    "merge_entries",
    "merge_fsrs_states",
    "merge_review_logs",
    "merge_tombstones",
    "merge_versions",
    "next_version",
    "now_ms",
]
