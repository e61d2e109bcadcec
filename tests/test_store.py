from __future__ import annotations

from pathlib import Path

from vocab_sync.const import KEY_INDEX, KEY_PARTITION_PREFIX, KEY_SEARCH
from vocab_sync.kv import MemoryKeyValueStore, SQLiteKeyValueStore
from vocab_sync.models import ReviewLogEntry
from vocab_sync.store import ReviewStore, SyncState, SyncStateStore, VocabStore

from tests.fakes import make_entry


def test_add_entry_updates_partition_index_and_search(store: VocabStore) -> None:
    store.add_entry(make_entry("a", "2024-05-01"))
    store.add_entry(make_entry("b", "2024-05-03"))
    store.add_entry(make_entry("c", "2024-05-01"))

    index = store.get_index()
    assert index.dates == ["2024-05-03", "2024-05-01"]
    assert index.total_count == 3
    assert [entry.id for entry in store.get_entries("2024-05-01")] == ["a", "c"]
    assert {item["id"] for item in store.kv.get(KEY_SEARCH)} == {"a", "b", "c"}


def test_get_entries_by_dates_reads_only_requested(kv: MemoryKeyValueStore, store: VocabStore) -> None:
    store.add_entry(make_entry("a", "2024-05-01"))
    store.add_entry(make_entry("b", "2024-05-02"))

    result = store.get_entries_by_dates(["2024-05-02", "2024-06-01"])

    assert [entry.id for entry in result["2024-05-02"]] == ["b"]
    assert result["2024-06-01"] == []
    assert "2024-05-01" not in result


def test_update_entry_replaces_in_place(store: VocabStore) -> None:
    store.add_entry(make_entry("a", word="old"))

    assert store.update_entry(make_entry("a", timestamp=2, word="new"))
    assert store.get_entries("2024-05-01")[0].word == "new"
    assert [entry.id for entry in store.search("new")] == ["a"]


def test_update_and_delete_unknown_id_are_noops(store: VocabStore) -> None:
    store.add_entry(make_entry("a"))

    assert not store.update_entry(make_entry("missing"))
    assert not store.delete_entry("missing", "2024-05-01")
    assert store.get_index().total_count == 1


def test_deleting_last_entry_prunes_the_date(kv: MemoryKeyValueStore, store: VocabStore) -> None:
    store.add_entry(make_entry("a", "2024-05-01"))
    store.add_entry(make_entry("b", "2024-05-02"))

    assert store.delete_entry("a", "2024-05-01")

    index = store.get_index()
    assert index.dates == ["2024-05-02"]
    assert index.total_count == 1
    assert kv.get(f"{KEY_PARTITION_PREFIX}2024-05-01") is None
    assert store.search("word-a") == []


def test_search_is_case_insensitive_and_ordered_by_date(store: VocabStore) -> None:
    store.add_entry(make_entry("a", "2024-05-01", word="Taberu", meaning="to eat"))
    store.add_entry(make_entry("b", "2024-05-03", word="nomu", meaning="to drink"))
    store.add_entry(make_entry("c", "2024-05-02", word="neru", meaning="to sleep"))

    assert [entry.id for entry in store.search("TO ")] == ["b", "c", "a"]
    assert [entry.id for entry in store.search("taber")] == ["a"]
    assert store.search("   ") == []
    assert store.search("xyz") == []
    assert store.search(" b") == []
    assert store.search("u ") == []


class RecordingKeyValueStore(MemoryKeyValueStore):
    def __init__(self) -> None:
        super().__init__()
        self.partition_reads: list[list[str]] = []

    def _record(self, keys: list[str]) -> None:
        wanted = [key for key in keys if key.startswith(KEY_PARTITION_PREFIX)]
        if wanted:
            self.partition_reads.append(wanted)

    def get(self, key: str):
        self._record([key])
        return super().get(key)

    def get_many(self, keys):
        keys = list(keys)
        self._record(keys)
        return super().get_many(keys)


def test_search_loads_only_partitions_with_matches() -> None:
    kv = RecordingKeyValueStore()
    store = VocabStore(kv)
    store.add_entry(make_entry("a", "2024-05-01", word="taberu"))
    store.add_entry(make_entry("b", "2024-05-02", word="nomu"))
    store.add_entry(make_entry("c", "2024-05-03", word="nomikai"))
    store.add_entry(make_entry("d", "2024-05-03", word="neru"))
    kv.partition_reads.clear()

    assert [entry.id for entry in store.search("nomi")] == ["c"]
    assert kv.partition_reads == [[f"{KEY_PARTITION_PREFIX}2024-05-03"]]

    kv.partition_reads.clear()
    assert store.search("zzz") == []
    assert kv.partition_reads == []


def test_import_is_idempotent(store: VocabStore) -> None:
    entries = [make_entry("a", "2024-05-01"), make_entry("b", "2024-05-02"), make_entry("a", "2024-05-01")]

    assert store.import_entries(entries) == 2
    assert store.get_index().total_count == 2
    assert store.import_entries(entries) == 0
    assert store.get_index().total_count == 2


def test_export_all_follows_index_order(store: VocabStore) -> None:
    store.import_entries([make_entry("a", "2024-05-01"), make_entry("b", "2024-05-03")])

    assert [entry.id for entry in store.export_all()] == ["b", "a"]


def test_remove_entries_across_partitions(store: VocabStore) -> None:
    store.import_entries(
        [make_entry("a", "2024-05-01"), make_entry("b", "2024-05-01"), make_entry("c", "2024-05-02")]
    )

    assert store.remove_entries(["a", "c", "zzz"]) == 2

    index = store.get_index()
    assert index.dates == ["2024-05-01"]
    assert index.total_count == 1
    assert store.locate("b") == "2024-05-01"
    assert store.locate("a") is None


def test_replace_partition_realigns_derived_documents(store: VocabStore) -> None:
    store.import_entries([make_entry("a", "2024-05-01"), make_entry("b", "2024-05-02")])

    store.replace_partition("2024-05-01", [make_entry("x", "2024-05-01"), make_entry("y", "2024-05-01")])
    assert store.get_index().total_count == 3
    assert [entry.id for entry in store.search("word-")] == ["b", "x", "y"]

    store.replace_partition("2024-05-01", [])
    assert store.get_index().dates == ["2024-05-02"]
    assert store.get_index().total_count == 1


def test_rebuild_index_and_search(kv: MemoryKeyValueStore, store: VocabStore) -> None:
    store.import_entries([make_entry("a", "2024-05-01"), make_entry("b", "2024-05-02")])
    kv.remove(KEY_INDEX)
    kv.remove(KEY_SEARCH)

    index = store.rebuild_index()
    assert index.dates == ["2024-05-02", "2024-05-01"]
    assert index.total_count == 2
    assert store.rebuild_search_index() == 2
    assert [entry.id for entry in store.search("word-b")] == ["b"]


def test_entry_round_trip_keeps_unknown_fields(store: VocabStore) -> None:
    entry = make_entry("a", example_sentence="ご飯を食べる", extra={"imageUrl": "https://x"})
    store.add_entry(entry)

    stored = store.kv.get(f"{KEY_PARTITION_PREFIX}2024-05-01")[0]
    assert stored["exampleSentence"] == "ご飯を食べる"
    assert stored["imageUrl"] == "https://x"
    assert store.get_entries("2024-05-01")[0] == entry


def test_sqlite_backend(tmp_path: Path) -> None:
    kv = SQLiteKeyValueStore(tmp_path / "replica.db")
    store = VocabStore(kv)
    store.add_entry(make_entry("a", "2024-05-01"))
    store.add_entry(make_entry("b", "2024-05-02"))
    store.delete_entry("a", "2024-05-01")

    reopened = VocabStore(SQLiteKeyValueStore(tmp_path / "replica.db"))
    assert reopened.get_index().dates == ["2024-05-02"]
    assert reopened.kv.keys(KEY_PARTITION_PREFIX) == [f"{KEY_PARTITION_PREFIX}2024-05-02"]
    assert [entry.id for entry in reopened.search("word")] == ["b"]


def test_sqlite_memory_backend_shares_connection() -> None:
    kv = SQLiteKeyValueStore(":memory:")
    kv.write_batch({"x": {"n": 1}, "y": [1, 2]})
    kv.write_batch({"z": "v"}, removes=["x"])

    assert kv.get_many(["x", "y", "z"]) == {"y": [1, 2], "z": "v"}
    kv.close()


def test_review_store_months(kv: MemoryKeyValueStore) -> None:
    reviews = ReviewStore(kv)
    reviews.append_review_log(ReviewLogEntry("a", 3, "2024-05-02T10:00:00Z"))
    reviews.append_review_log(ReviewLogEntry("a", 4, "2024-06-01T10:00:00Z"))
    reviews.put_card_state("a", "2024-05", {"stability": 1.5})

    assert reviews.review_months() == ["2024-05", "2024-06"]
    assert reviews.fsrs_months() == ["2024-05"]
    assert reviews.get_card_states("2024-05") == {"a": {"stability": 1.5}}


def test_sync_state_persists(kv: MemoryKeyValueStore) -> None:
    states = SyncStateStore(kv)
    state = SyncState(partition_versions={"2024-05-01": 3}, file_ids={"sync_metadata.json": "id-1"})
    state.record_deletion("a", "2024-05-01", 123)
    states.save(state)

    loaded = states.load()
    assert loaded == state
    assert loaded.pending == 1
