from __future__ import annotations

DOMAIN = "vocab_sync"

# Remote blob names shared by every client; changing them breaks interoperability.
REMOTE_META_FILE = "sync_metadata.json"
REMOTE_INDEX_FILE = "vocab_index.json"  # reserved, not produced or consumed
REMOTE_PARTITION_TEMPLATE = "vocab_{date}.json"
REMOTE_FSRS_TEMPLATE = "fsrs_{month}.json"
REMOTE_REVIEWS_TEMPLATE = "reviews_{month}.json"

APP_DATA_SPACE = "appDataFolder"
DEFAULT_API_BASE_URL = "https://www.googleapis.com/drive/v3"
DEFAULT_UPLOAD_BASE_URL = "https://www.googleapis.com/upload/drive/v3"
LIST_PAGE_SIZE = 100

TOMBSTONE_TTL_MS = 30 * 24 * 60 * 60 * 1000
DEFAULT_CONCURRENCY = 5
DEFAULT_SYNC_INTERVAL = 300
MIN_SYNC_INTERVAL = 15
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_STORE_PATH = ".vocab_sync.db"

# Local key-value layout
KEY_INDEX = "vocab:index"
KEY_SEARCH = "vocab:search"
KEY_PARTITION_PREFIX = "vocab:partition:"
KEY_FSRS_PREFIX = "fsrs:"
KEY_REVIEWS_PREFIX = "reviews:"
KEY_SYNC_STATE = "sync:state"

CONF_STORE_PATH = "store_path"
CONF_API_BASE_URL = "api_base_url"
CONF_UPLOAD_BASE_URL = "upload_base_url"
CONF_CONCURRENCY = "concurrency"
CONF_INTERVAL = "interval"
CONF_REQUEST_TIMEOUT = "request_timeout"
CONF_ACCESS_TOKEN = "access_token"


def partition_blob_name(date: str) -> str:
    return REMOTE_PARTITION_TEMPLATE.format(date=date)


def fsrs_blob_name(month: str) -> str:
    return REMOTE_FSRS_TEMPLATE.format(month=month)


def reviews_blob_name(month: str) -> str:
    return REMOTE_REVIEWS_TEMPLATE.format(month=month)
