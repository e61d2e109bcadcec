from __future__ import annotations

from collections.abc import Callable

import pytest

from tests.fakes import FakeBlobStore
from vocab_sync.auth import StaticTokenProvider
from vocab_sync.kv import MemoryKeyValueStore
from vocab_sync.store import ReviewStore, SyncStateStore, VocabStore
from vocab_sync.worker import VocabSyncWorker


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def store(kv: MemoryKeyValueStore) -> VocabStore:
    return VocabStore(kv)


@pytest.fixture
def blob() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def make_worker(blob: FakeBlobStore) -> Callable[..., VocabSyncWorker]:
    """Build a replica with its own local storage sharing ``blob``."""

    def factory(token: str | None = "token", concurrency: int = 5) -> VocabSyncWorker:
        local = MemoryKeyValueStore()
        return VocabSyncWorker(
            VocabStore(local),
            ReviewStore(local),
            SyncStateStore(local),
            blob,
            StaticTokenProvider(token),
            concurrency=concurrency,
        )

    return factory
