"""Offline-first vocabulary replication over a shared blob store."""

from .auth import AccessToken, StaticTokenProvider, TokenProvider
from .blob_client import BlobDecodeError, BlobNotFoundError, BlobStore, BlobStoreClient, BlobStoreError
from .fanout import SettledResult, parallel_map
from .kv import KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore
from .manager import SyncConfig, VocabSyncManager
from .models import FsrsState, PartitionContent, ReviewLogEntry, ReviewLogState, SyncMeta, VocabEntry, VocabIndex
from .session import SyncContext, commit_sync_meta, create_sync_context, reconcile_sync_meta
from .store import ReviewStore, SyncState, SyncStateStore, VocabStore
from .worker import SyncResult, VocabSyncError, VocabSyncWorker

__all__ = [
    "AccessToken",
    "BlobDecodeError",
    "BlobNotFoundError",
    "BlobStore",
    "BlobStoreClient",
    "BlobStoreError",
    "FsrsState",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "PartitionContent",
    "ReviewLogEntry",
    "ReviewLogState",
    "ReviewStore",
    "SQLiteKeyValueStore",
    "SettledResult",
    "StaticTokenProvider",
    "SyncConfig",
    "SyncContext",
    "SyncMeta",
    "SyncResult",
    "SyncState",
    "SyncStateStore",
    "TokenProvider",
    "VocabEntry",
    "VocabIndex",
    "VocabStore",
    "VocabSyncError",
    "VocabSyncManager",
    "VocabSyncWorker",
    "commit_sync_meta",
    "create_sync_context",
    "parallel_map",
    "reconcile_sync_meta",
]
