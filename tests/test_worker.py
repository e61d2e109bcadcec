from __future__ import annotations

import pytest

from vocab_sync.const import REMOTE_META_FILE, TOMBSTONE_TTL_MS
from vocab_sync.models import ReviewLogEntry
from vocab_sync.worker import VocabSyncError

from tests.fakes import make_entry

NOW = 1_717_000_000_000


@pytest.mark.asyncio
async def test_two_replicas_converge(blob, make_worker) -> None:
    first = make_worker()
    second = make_worker()
    first.add_entry(make_entry("a", "2024-05-01", timestamp=1))
    first.add_entry(make_entry("b", "2024-05-02", timestamp=1))

    pushed = await first.full_sync()
    assert pushed.pushed == 2
    assert first.state.pending == 0
    meta = blob.read(REMOTE_META_FILE)
    assert set(meta["partitionVersions"]) == {"2024-05-01", "2024-05-02"}
    assert blob.read("vocab_2024-05-01.json")["entries"][0]["id"] == "a"

    pulled = await second.full_sync()
    assert pulled.pulled == 2
    assert pulled.entries_changed == 2
    assert pulled.pushed == 0
    assert pulled.changed
    assert [entry.id for entry in second.store.export_all()] == ["b", "a"]
    assert second.state.partition_versions == first.state.partition_versions


@pytest.mark.asyncio
async def test_sync_without_changes_writes_nothing(blob, make_worker) -> None:
    worker = make_worker()
    worker.add_entry(make_entry("a"))
    await worker.full_sync()
    writes = blob.calls["create_file"] + blob.calls["update_file"]

    result = await worker.full_sync()

    assert not result.changed
    assert blob.calls["create_file"] + blob.calls["update_file"] == writes


@pytest.mark.asyncio
async def test_last_writer_wins_across_replicas(make_worker) -> None:
    first = make_worker()
    second = make_worker()
    first.add_entry(make_entry("a", timestamp=1, word="base"))
    await first.full_sync()
    await second.full_sync()

    first.update_entry(make_entry("a", timestamp=10, word="first"))
    second.update_entry(make_entry("a", timestamp=20, word="second"))
    await first.full_sync()
    await second.full_sync()
    await first.full_sync()

    assert first.store.get_entries("2024-05-01")[0].word == "second"
    assert second.store.get_entries("2024-05-01")[0].word == "second"


@pytest.mark.asyncio
async def test_deletion_propagates_through_tombstones(blob, make_worker) -> None:
    first = make_worker()
    second = make_worker()
    first.add_entry(make_entry("a", "2024-05-01"))
    first.add_entry(make_entry("b", "2024-05-02"))
    await first.full_sync()
    await second.full_sync()

    assert first.delete_entry("a", "2024-05-01")
    await first.full_sync()
    assert "a" in blob.read(REMOTE_META_FILE)["deletedEntries"]
    assert blob.read("vocab_2024-05-01.json")["entries"] == []

    result = await second.full_sync()

    assert result.entries_changed == 1
    assert second.store.get_index().dates == ["2024-05-02"]
    assert second.store.get_index().total_count == 1
    assert "a" in second.state.deleted_entries


@pytest.mark.asyncio
async def test_empty_partition_is_never_created_remotely(blob, make_worker) -> None:
    worker = make_worker()
    worker.add_entry(make_entry("a", "2024-05-01"))
    worker.delete_entry("a", "2024-05-01")

    await worker.full_sync()

    assert blob.id_for("vocab_2024-05-01.json") is None
    assert worker.state.pending == 0
    assert "a" in blob.read(REMOTE_META_FILE)["deletedEntries"]


@pytest.mark.asyncio
async def test_expired_tombstones_are_collected(blob, make_worker) -> None:
    worker = make_worker()
    worker.add_entry(make_entry("a", "2024-05-01"))
    worker.add_entry(make_entry("b", "2024-05-01"))
    worker.delete_entry("a", "2024-05-01", now=NOW - TOMBSTONE_TTL_MS - 1)

    await worker.full_sync(now=NOW)

    assert blob.read(REMOTE_META_FILE)["deletedEntries"] == {}
    assert worker.state.deleted_entries == {}
    assert worker.state.last_sync_timestamp == NOW


@pytest.mark.asyncio
async def test_failed_partition_stays_dirty(blob, make_worker) -> None:
    worker = make_worker()
    worker.add_entry(make_entry("a", "2024-05-01"))
    worker.add_entry(make_entry("b", "2024-05-02"))
    blob.fail_names.add("vocab_2024-05-02.json")

    result = await worker.full_sync()

    assert result.failed == ["vocab_2024-05-02.json"]
    assert result.pushed == 1
    assert worker.state.dirty_dates == {"2024-05-02"}
    assert set(blob.read(REMOTE_META_FILE)["partitionVersions"]) == {"2024-05-01"}

    blob.fail_names.clear()
    retry = await worker.full_sync()

    assert retry.failed == []
    assert worker.state.dirty_dates == set()
    assert set(blob.read(REMOTE_META_FILE)["partitionVersions"]) == {"2024-05-01", "2024-05-02"}


@pytest.mark.asyncio
async def test_lost_metadata_is_rebuilt_from_local_versions(blob, make_worker) -> None:
    worker = make_worker()
    worker.add_entry(make_entry("a", "2024-05-01"))
    await worker.full_sync()
    blob.put_raw(REMOTE_META_FILE, "not json")

    result = await worker.full_sync()

    assert result.pushed == 1
    assert set(blob.read(REMOTE_META_FILE)["partitionVersions"]) == {"2024-05-01"}


@pytest.mark.asyncio
async def test_reviews_and_scheduler_states_sync(blob, make_worker) -> None:
    first = make_worker()
    second = make_worker()
    first.add_entry(make_entry("a", "2024-05-01"))
    first.record_review(
        ReviewLogEntry("a", 3, "2024-06-02T10:00:00Z"),
        {"last_review": "2024-06-02T10:00:00Z", "stability": 2.0},
    )

    await first.full_sync()
    meta = blob.read(REMOTE_META_FILE)
    assert set(meta["fsrsPartitionVersions"]) == {"2024-05"}
    assert set(meta["reviewPartitionVersions"]) == {"2024-06"}

    result = await second.full_sync()
    assert result.fsrs_pulled == 1
    assert result.reviews_pulled == 1
    assert second.reviews.get_card_states("2024-05")["a"]["stability"] == 2.0

    second.record_review(
        ReviewLogEntry("a", 4, "2024-06-05T10:00:00Z"),
        {"last_review": "2024-06-05T10:00:00Z", "stability": 5.0},
    )
    await second.full_sync()
    await first.full_sync()

    assert [log.rating for log in first.reviews.get_review_logs("2024-06")] == [3, 4]
    assert first.reviews.get_card_states("2024-05")["a"]["stability"] == 5.0


@pytest.mark.asyncio
async def test_push_pending_skips_listing(blob, make_worker) -> None:
    worker = make_worker()
    worker.add_entry(make_entry("a", "2024-05-01"))

    result = await worker.push_pending()

    assert result.pushed == 1
    assert blob.calls["list_files"] == 0
    assert blob.read("vocab_2024-05-01.json")["entries"][0]["id"] == "a"
    assert worker.state.pending == 0


@pytest.mark.asyncio
async def test_push_pending_leaves_newer_remote_partition_dirty(make_worker) -> None:
    first = make_worker()
    second = make_worker()
    first.add_entry(make_entry("a", "2024-05-01"))
    await first.full_sync()

    second.add_entry(make_entry("b", "2024-05-01"))
    result = await second.push_pending()

    assert result.pushed == 0
    assert second.state.dirty_dates == {"2024-05-01"}

    await second.full_sync()
    await first.full_sync()
    assert {entry.id for entry in first.store.get_entries("2024-05-01")} == {"a", "b"}


@pytest.mark.asyncio
async def test_full_sync_requires_a_token(blob, make_worker) -> None:
    worker = make_worker(token=None)

    with pytest.raises(VocabSyncError) as err:
        await worker.full_sync()

    assert err.value.reason == "not_authenticated"
    assert sum(blob.calls.values()) == 0


def test_local_mutations_track_dirty_state(make_worker) -> None:
    worker = make_worker()
    worker.add_entry(make_entry("a", "2024-05-01"))
    worker.state.dirty_dates.clear()

    assert not worker.update_entry(make_entry("zzz", "2024-05-03"))
    assert not worker.delete_entry("zzz", "2024-05-03")
    assert worker.state.pending == 0
    assert worker.state.deleted_entries == {}

    assert worker.delete_entry("a", "2024-05-01", now=NOW)
    assert worker.state.deleted_entries == {"a": NOW}
    assert worker.state_store.load().dirty_dates == {"2024-05-01"}


@pytest.mark.asyncio
async def test_emptied_partition_missing_remotely_is_not_recreated(blob, make_worker) -> None:
    worker = make_worker()
    worker.add_entry(make_entry("a", "2024-05-01"))
    await worker.full_sync()
    blob.drop("vocab_2024-05-01.json")

    worker.delete_entry("a", "2024-05-01")
    result = await worker.full_sync()

    assert result.failed == []
    assert blob.id_for("vocab_2024-05-01.json") is None
    assert "vocab_2024-05-01.json" not in worker.state.file_ids
    assert worker.state.pending == 0
    assert "a" in blob.read(REMOTE_META_FILE)["deletedEntries"]


@pytest.mark.asyncio
async def test_push_pending_without_writes_leaves_metadata_alone(blob, make_worker) -> None:
    first = make_worker()
    second = make_worker()
    first.add_entry(make_entry("a", "2024-05-01"))
    await first.full_sync()
    second.add_entry(make_entry("b", "2024-05-01"))
    writes = blob.calls["create_file"] + blob.calls["update_file"]

    result = await second.push_pending()

    assert result.pushed == 0
    assert blob.calls["create_file"] + blob.calls["update_file"] == writes
