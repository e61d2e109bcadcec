"""Data types exchanged between the local store, the merge engine and the blob store."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import voluptuous as vol

_TEXT_FIELDS = {
    "word": "word",
    "reading": "reading",
    "romaji": "romaji",
    "meaning": "meaning",
    "pos": "pos",
    "example_sentence": "exampleSentence",
    "example_source": "exampleSource",
    "note": "note",
}
_KNOWN_KEYS = {"id", "tags", "dateAdded", "timestamp", *_TEXT_FIELDS.values()}

_NON_EMPTY = vol.All(str, vol.Length(min=1))
_VERSION_MAP = vol.Schema({str: vol.Coerce(int)})

ENTRY_SCHEMA = vol.Schema(
    {
        vol.Required("id"): _NON_EMPTY,
        vol.Required("dateAdded"): _NON_EMPTY,
        vol.Required("timestamp"): vol.Coerce(int),
        vol.Optional("tags", default=list): [str],
        **{vol.Optional(key, default=""): vol.Any(str, None) for key in _TEXT_FIELDS.values()},
    },
    extra=vol.ALLOW_EXTRA,
)

PARTITION_SCHEMA = vol.Schema(
    {
        vol.Required("date"): _NON_EMPTY,
        vol.Required("entries"): [dict],
        vol.Optional("version", default=0): vol.Coerce(int),
    },
    extra=vol.ALLOW_EXTRA,
)

META_SCHEMA = vol.Schema(
    {
        vol.Optional("partitionVersions", default=dict): _VERSION_MAP,
        vol.Optional("deletedEntries", default=dict): _VERSION_MAP,
        vol.Optional("fsrsPartitionVersions"): vol.Any(None, _VERSION_MAP),
        vol.Optional("reviewPartitionVersions"): vol.Any(None, _VERSION_MAP),
    },
    extra=vol.ALLOW_EXTRA,
)

FSRS_SCHEMA = vol.Schema(
    {
        vol.Required("cardStates"): {str: dict},
        vol.Optional("version", default=0): vol.Coerce(int),
    },
    extra=vol.ALLOW_EXTRA,
)

REVIEW_LOG_SCHEMA = vol.Schema(
    {
        vol.Required("vocab_id"): _NON_EMPTY,
        vol.Required("rating"): vol.Coerce(int),
        vol.Required("reviewed_at"): _NON_EMPTY,
    },
    extra=vol.ALLOW_EXTRA,
)

REVIEWS_SCHEMA = vol.Schema(
    {
        vol.Required("logs"): [dict],
        vol.Optional("version", default=0): vol.Coerce(int),
    },
    extra=vol.ALLOW_EXTRA,
)


@dataclass(slots=True)
class VocabEntry:
    """A user-created lexical note. Payload fields are opaque to the sync core."""

    id: str
    date_added: str
    timestamp: int
    word: str = ""
    reading: str = ""
    romaji: str = ""
    meaning: str = ""
    pos: str = ""
    example_sentence: str = ""
    example_source: str = ""
    note: str = ""
    tags: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload["id"] = self.id
        for attr, key in _TEXT_FIELDS.items():
            payload[key] = getattr(self, attr)
        payload["tags"] = list(self.tags)
        payload["dateAdded"] = self.date_added
        payload["timestamp"] = self.timestamp
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> VocabEntry:
        data = ENTRY_SCHEMA(dict(payload))
        texts = {attr: data.get(key) or "" for attr, key in _TEXT_FIELDS.items()}
        return cls(
            id=data["id"],
            date_added=data["dateAdded"],
            timestamp=data["timestamp"],
            tags=list(data["tags"]),
            extra={key: value for key, value in data.items() if key not in _KNOWN_KEYS},
            **texts,
        )


@dataclass(slots=True)
class SearchEntry:
    """Denormalised projection of an entry used for substring search."""

    id: str
    date: str
    word: str = ""
    reading: str = ""
    romaji: str = ""
    meaning: str = ""
    note: str = ""

    @classmethod
    def from_entry(cls, entry: VocabEntry) -> SearchEntry:
        return cls(
            id=entry.id,
            date=entry.date_added,
            word=entry.word,
            reading=entry.reading,
            romaji=entry.romaji,
            meaning=entry.meaning,
            note=entry.note,
        )

    def matches(self, query: str) -> bool:
        needle = query.casefold()
        return any(
            needle in value.casefold()
            for value in (self.word, self.reading, self.romaji, self.meaning, self.note)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "word": self.word,
            "reading": self.reading,
            "romaji": self.romaji,
            "meaning": self.meaning,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SearchEntry:
        return cls(
            id=str(payload["id"]),
            date=str(payload["date"]),
            word=str(payload.get("word") or ""),
            reading=str(payload.get("reading") or ""),
            romaji=str(payload.get("romaji") or ""),
            meaning=str(payload.get("meaning") or ""),
            note=str(payload.get("note") or ""),
        )


@dataclass(slots=True)
class VocabIndex:
    """Dates with at least one entry (newest first) plus the entry count."""

    dates: list[str] = field(default_factory=list)
    total_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"dates": list(self.dates), "totalCount": self.total_count}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> VocabIndex:
        if not payload:
            return cls()
        return cls(
            dates=[str(date) for date in payload.get("dates", [])],
            total_count=int(payload.get("totalCount", 0)),
        )


@dataclass(slots=True)
class PartitionContent:
    """Remote representation of one date partition."""

    date: str
    entries: list[VocabEntry]
    version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "entries": [entry.to_dict() for entry in self.entries],
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> PartitionContent:
        data = PARTITION_SCHEMA(payload)
        return cls(
            date=data["date"],
            entries=[VocabEntry.from_dict(item) for item in data["entries"]],
            version=data["version"],
        )


@dataclass(slots=True)
class SyncMeta:
    """Remote metadata singleton: per-partition versions plus tombstones."""

    partition_versions: dict[str, int] = field(default_factory=dict)
    deleted_entries: dict[str, int] = field(default_factory=dict)
    fsrs_partition_versions: dict[str, int] | None = None
    review_partition_versions: dict[str, int] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "partitionVersions": dict(self.partition_versions),
            "deletedEntries": dict(self.deleted_entries),
        }
        if self.fsrs_partition_versions is not None:
            payload["fsrsPartitionVersions"] = dict(self.fsrs_partition_versions)
        if self.review_partition_versions is not None:
            payload["reviewPartitionVersions"] = dict(self.review_partition_versions)
        return payload

    @classmethod
    def from_dict(cls, payload: Any) -> SyncMeta:
        data = META_SCHEMA(payload)
        fsrs = data.get("fsrsPartitionVersions")
        reviews = data.get("reviewPartitionVersions")
        return cls(
            partition_versions=dict(data["partitionVersions"]),
            deleted_entries=dict(data["deletedEntries"]),
            fsrs_partition_versions=dict(fsrs) if fsrs is not None else None,
            review_partition_versions=dict(reviews) if reviews is not None else None,
        )


@dataclass(slots=True)
class FsrsState:
    """Scheduler card states for one month, keyed by vocabulary id."""

    card_states: dict[str, dict[str, Any]] = field(default_factory=dict)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "cardStates": {key: dict(value) for key, value in self.card_states.items()},
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> FsrsState:
        data = FSRS_SCHEMA(payload)
        return cls(
            card_states={key: dict(value) for key, value in data["cardStates"].items()},
            version=data["version"],
        )


@dataclass(slots=True)
class ReviewLogEntry:
    vocab_id: str
    rating: int
    reviewed_at: str

    @property
    def key(self) -> str:
        return f"{self.vocab_id}|{self.reviewed_at}"

    @property
    def month(self) -> str:
        return self.reviewed_at[:7]

    def to_dict(self) -> dict[str, Any]:
        return {"vocab_id": self.vocab_id, "rating": self.rating, "reviewed_at": self.reviewed_at}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ReviewLogEntry:
        data = REVIEW_LOG_SCHEMA(dict(payload))
        return cls(vocab_id=data["vocab_id"], rating=data["rating"], reviewed_at=data["reviewed_at"])


@dataclass(slots=True)
class ReviewLogState:
    """Append-only review logs for one month."""

    logs: list[ReviewLogEntry] = field(default_factory=list)
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"logs": [log.to_dict() for log in self.logs], "version": self.version}

    @classmethod
    def from_dict(cls, payload: Any) -> ReviewLogState:
        data = REVIEWS_SCHEMA(payload)
        return cls(
            logs=[ReviewLogEntry.from_dict(item) for item in data["logs"]],
            version=data["version"],
        )


@dataclass(slots=True)
class BlobFile:
    """One object returned by a blob store listing."""

    id: str
    name: str
    modified_time: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> BlobFile:
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            modified_time=payload.get("modifiedTime"),
        )


def month_of(date: str) -> str:
    """Return the ``YYYY-MM`` partition key for a date or ISO timestamp."""

    return date[:7]


__all__ = [
    "BlobFile",
    "FsrsState",
    "PartitionContent",
    "ReviewLogEntry",
    "ReviewLogState",
    "SearchEntry",
    "SyncMeta",
    "VocabEntry",
    "VocabIndex",
    "month_of",
]
