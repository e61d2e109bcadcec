"""Date-partitioned local storage for vocabulary entries and review data.

Each calendar date owns one partition key. Two derived documents sit beside
the partitions: the index (dates newest first plus a total count) and a flat
search projection. Every mutation computes the new partition, index and
projection first and hands them to the backend as one batch, so a reader never
observes an entry without its index and search counterparts.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .const import (
    KEY_FSRS_PREFIX,
    KEY_INDEX,
    KEY_PARTITION_PREFIX,
    KEY_REVIEWS_PREFIX,
    KEY_SEARCH,
    KEY_SYNC_STATE,
)
from .kv import KeyValueStore
from .models import ReviewLogEntry, SearchEntry, VocabEntry, VocabIndex

_LOGGER = logging.getLogger(__name__)


def _partition_key(date: str) -> str:
    return f"{KEY_PARTITION_PREFIX}{date}"


def _with_date(dates: Iterable[str], date: str) -> list[str]:
    return sorted({*dates, date}, reverse=True)


class VocabStore:
    """Partitioned entry store with a derived index and search projection."""

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    # ------------------------------------------------------------------
    def get_index(self) -> VocabIndex:
        return VocabIndex.from_dict(self.kv.get(KEY_INDEX))

    def get_entries(self, date: str) -> list[VocabEntry]:
        return self._decode(self.kv.get(_partition_key(date)))

    def get_entries_by_dates(self, dates: Iterable[str]) -> dict[str, list[VocabEntry]]:
        """Read exactly the requested partitions; missing ones come back empty."""

        wanted = list(dict.fromkeys(dates))
        raw = self.kv.get_many(_partition_key(date) for date in wanted)
        return {date: self._decode(raw.get(_partition_key(date))) for date in wanted}

    def locate(self, entry_id: str) -> str | None:
        """Return the partition date holding ``entry_id``."""

        for item in self._search_entries():
            if item.id == entry_id:
                return item.date
        return None

    def _search_entries(self) -> list[SearchEntry]:
        return [SearchEntry.from_dict(item) for item in self.kv.get(KEY_SEARCH) or []]

    @staticmethod
    def _decode(raw: Any) -> list[VocabEntry]:
        return [VocabEntry.from_dict(item) for item in raw or []]

    @staticmethod
    def _encode(entries: Iterable[VocabEntry]) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in entries]

    # ------------------------------------------------------------------
    def add_entry(self, entry: VocabEntry) -> None:
        index = self.get_index()
        entries = self.get_entries(entry.date_added)
        entries.append(entry)
        search = self._search_entries()
        search.append(SearchEntry.from_entry(entry))

        index.dates = _with_date(index.dates, entry.date_added)
        index.total_count += 1
        self.kv.write_batch(
            {
                _partition_key(entry.date_added): self._encode(entries),
                KEY_INDEX: index.to_dict(),
                KEY_SEARCH: [item.to_dict() for item in search],
            }
        )

    def update_entry(self, entry: VocabEntry) -> bool:
        """Replace an entry in place; unknown ids are ignored."""

        entries = self.get_entries(entry.date_added)
        for position, current in enumerate(entries):
            if current.id == entry.id:
                entries[position] = entry
                break
        else:
            return False

        search = [
            SearchEntry.from_entry(entry) if item.id == entry.id else item for item in self._search_entries()
        ]
        self.kv.write_batch(
            {
                _partition_key(entry.date_added): self._encode(entries),
                KEY_SEARCH: [item.to_dict() for item in search],
            }
        )
        return True

    def delete_entry(self, entry_id: str, date: str) -> bool:
        entries = self.get_entries(date)
        remaining = [entry for entry in entries if entry.id != entry_id]
        if len(remaining) == len(entries):
            return False

        index = self.get_index()
        index.total_count = max(index.total_count - 1, 0)
        sets: dict[str, Any] = {}
        removes: list[str] = []
        if remaining:
            sets[_partition_key(date)] = self._encode(remaining)
        else:
            removes.append(_partition_key(date))
            index.dates = [item for item in index.dates if item != date]
        sets[KEY_INDEX] = index.to_dict()
        sets[KEY_SEARCH] = [item.to_dict() for item in self._search_entries() if item.id != entry_id]
        self.kv.write_batch(sets, removes)
        return True

    def remove_entries(self, entry_ids: Iterable[str]) -> int:
        """Delete ``entry_ids`` wherever they are stored and return how many went."""

        targets = set(entry_ids)
        search = self._search_entries()
        by_date: dict[str, set[str]] = defaultdict(set)
        for item in search:
            if item.id in targets:
                by_date[item.date].add(item.id)
        if not by_date:
            return 0

        index = self.get_index()
        partitions = self.get_entries_by_dates(by_date)
        sets: dict[str, Any] = {}
        removes: list[str] = []
        removed = 0
        for date, entries in partitions.items():
            remaining = [entry for entry in entries if entry.id not in by_date[date]]
            removed += len(entries) - len(remaining)
            if remaining:
                sets[_partition_key(date)] = self._encode(remaining)
            else:
                removes.append(_partition_key(date))
                index.dates = [item for item in index.dates if item != date]
        index.total_count = max(index.total_count - removed, 0)
        sets[KEY_INDEX] = index.to_dict()
        sets[KEY_SEARCH] = [item.to_dict() for item in search if item.id not in targets]
        self.kv.write_batch(sets, removes)
        return removed

    def replace_partition(self, date: str, entries: list[VocabEntry]) -> None:
        """Store a merged partition and realign the index and search projection."""

        previous = self.get_entries(date)
        previous_ids = {entry.id for entry in previous}
        index = self.get_index()
        index.total_count = max(index.total_count - len(previous) + len(entries), 0)

        sets: dict[str, Any] = {}
        removes: list[str] = []
        if entries:
            sets[_partition_key(date)] = self._encode(entries)
            index.dates = _with_date(index.dates, date)
        else:
            removes.append(_partition_key(date))
            index.dates = [item for item in index.dates if item != date]

        search = [item for item in self._search_entries() if item.id not in previous_ids and item.date != date]
        search.extend(SearchEntry.from_entry(entry) for entry in entries)
        sets[KEY_INDEX] = index.to_dict()
        sets[KEY_SEARCH] = [item.to_dict() for item in search]
        self.kv.write_batch(sets, removes)

    # ------------------------------------------------------------------
    def search(self, query: str) -> list[VocabEntry]:
        """Case-insensitive substring search that only loads matching partitions."""

        if not query.strip():
            return []
        matches: dict[str, set[str]] = defaultdict(set)
        for item in self._search_entries():
            if item.matches(query):
                matches[item.date].add(item.id)
        if not matches:
            return []

        order = {date: position for position, date in enumerate(self.get_index().dates)}
        dates = sorted(matches, key=lambda date: (order.get(date, len(order)), date))
        partitions = self.get_entries_by_dates(dates)
        return [entry for date in dates for entry in partitions[date] if entry.id in matches[date]]

    def export_all(self) -> list[VocabEntry]:
        dates = self.get_index().dates
        partitions = self.get_entries_by_dates(dates)
        return [entry for date in dates for entry in partitions[date]]

    def import_entries(self, entries: Iterable[VocabEntry]) -> int:
        """Add entries whose id is not stored yet; returns the number added."""

        search = self._search_entries()
        known = {item.id for item in search}
        grouped: dict[str, list[VocabEntry]] = defaultdict(list)
        for entry in entries:
            if entry.id in known:
                continue
            known.add(entry.id)
            grouped[entry.date_added].append(entry)
        if not grouped:
            return 0

        index = self.get_index()
        partitions = self.get_entries_by_dates(grouped)
        sets: dict[str, Any] = {}
        added = 0
        for date, new_entries in grouped.items():
            sets[_partition_key(date)] = self._encode([*partitions[date], *new_entries])
            search.extend(SearchEntry.from_entry(entry) for entry in new_entries)
            index.dates = _with_date(index.dates, date)
            added += len(new_entries)
        index.total_count += added
        sets[KEY_INDEX] = index.to_dict()
        sets[KEY_SEARCH] = [item.to_dict() for item in search]
        self.kv.write_batch(sets)
        _LOGGER.info("Imported %s vocabulary entries", added)
        return added

    def rebuild_search_index(self) -> int:
        """Recompute the search projection from the stored partitions."""

        search = [SearchEntry.from_entry(entry) for entry in self.export_all()]
        self.kv.set(KEY_SEARCH, [item.to_dict() for item in search])
        return len(search)

    def rebuild_index(self) -> VocabIndex:
        """Recompute the index from the partition keys present in the backend."""

        keys = self.kv.keys(KEY_PARTITION_PREFIX)
        raw = self.kv.get_many(keys)
        dates: list[str] = []
        total = 0
        for key in keys:
            count = len(raw.get(key) or [])
            if count:
                dates.append(key[len(KEY_PARTITION_PREFIX) :])
                total += count
        index = VocabIndex(dates=sorted(dates, reverse=True), total_count=total)
        self.kv.set(KEY_INDEX, index.to_dict())
        return index


class ReviewStore:
    """Monthly scheduler card states and review logs."""

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    def get_card_states(self, month: str) -> dict[str, dict[str, Any]]:
        return dict(self.kv.get(f"{KEY_FSRS_PREFIX}{month}") or {})

    def set_card_states(self, month: str, states: Mapping[str, Mapping[str, Any]]) -> None:
        self.kv.set(f"{KEY_FSRS_PREFIX}{month}", {key: dict(value) for key, value in states.items()})

    def put_card_state(self, vocab_id: str, month: str, state: Mapping[str, Any]) -> None:
        states = self.get_card_states(month)
        states[vocab_id] = dict(state)
        self.set_card_states(month, states)

    def get_review_logs(self, month: str) -> list[ReviewLogEntry]:
        return [ReviewLogEntry.from_dict(item) for item in self.kv.get(f"{KEY_REVIEWS_PREFIX}{month}") or []]

    def set_review_logs(self, month: str, logs: Iterable[ReviewLogEntry]) -> None:
        self.kv.set(f"{KEY_REVIEWS_PREFIX}{month}", [log.to_dict() for log in logs])

    def append_review_log(self, log: ReviewLogEntry) -> None:
        logs = self.get_review_logs(log.month)
        logs.append(log)
        self.set_review_logs(log.month, logs)

    def fsrs_months(self) -> list[str]:
        return [key[len(KEY_FSRS_PREFIX) :] for key in self.kv.keys(KEY_FSRS_PREFIX)]

    def review_months(self) -> list[str]:
        return [key[len(KEY_REVIEWS_PREFIX) :] for key in self.kv.keys(KEY_REVIEWS_PREFIX)]


@dataclass(slots=True)
class SyncState:
    """Per-replica sync bookkeeping persisted next to the data."""

    partition_versions: dict[str, int] = field(default_factory=dict)
    fsrs_partition_versions: dict[str, int] = field(default_factory=dict)
    review_partition_versions: dict[str, int] = field(default_factory=dict)
    file_ids: dict[str, str] = field(default_factory=dict)
    deleted_entries: dict[str, int] = field(default_factory=dict)
    dirty_dates: set[str] = field(default_factory=set)
    dirty_fsrs_months: set[str] = field(default_factory=set)
    dirty_review_months: set[str] = field(default_factory=set)
    last_sync_timestamp: int | None = None

    def record_deletion(self, entry_id: str, date: str, now: int) -> None:
        self.deleted_entries[entry_id] = now
        self.dirty_dates.add(date)

    @property
    def pending(self) -> int:
        return len(self.dirty_dates) + len(self.dirty_fsrs_months) + len(self.dirty_review_months)

    def to_dict(self) -> dict[str, Any]:
        return {
            "partitionVersions": dict(self.partition_versions),
            "fsrsPartitionVersions": dict(self.fsrs_partition_versions),
            "reviewPartitionVersions": dict(self.review_partition_versions),
            "fileIds": dict(self.file_ids),
            "deletedEntries": dict(self.deleted_entries),
            "dirtyDates": sorted(self.dirty_dates),
            "dirtyFsrsMonths": sorted(self.dirty_fsrs_months),
            "dirtyReviewMonths": sorted(self.dirty_review_months),
            "lastSyncTimestamp": self.last_sync_timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> SyncState:
        if not payload:
            return cls()
        return cls(
            partition_versions={k: int(v) for k, v in (payload.get("partitionVersions") or {}).items()},
            fsrs_partition_versions={k: int(v) for k, v in (payload.get("fsrsPartitionVersions") or {}).items()},
            review_partition_versions={k: int(v) for k, v in (payload.get("reviewPartitionVersions") or {}).items()},
            file_ids={str(k): str(v) for k, v in (payload.get("fileIds") or {}).items()},
            deleted_entries={k: int(v) for k, v in (payload.get("deletedEntries") or {}).items()},
            dirty_dates=set(payload.get("dirtyDates") or ()),
            dirty_fsrs_months=set(payload.get("dirtyFsrsMonths") or ()),
            dirty_review_months=set(payload.get("dirtyReviewMonths") or ()),
            last_sync_timestamp=payload.get("lastSyncTimestamp"),
        )


class SyncStateStore:
    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    def load(self) -> SyncState:
        return SyncState.from_dict(self.kv.get(KEY_SYNC_STATE))

    def save(self, state: SyncState) -> None:
        self.kv.set(KEY_SYNC_STATE, state.to_dict())


__all__ = ["ReviewStore", "SyncState", "SyncStateStore", "VocabStore"]
