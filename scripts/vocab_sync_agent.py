"""Simple CLI entrypoint for the vocabulary sync agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from vocab_sync import SyncConfig, VocabSyncError, VocabSyncManager
from vocab_sync.const import (
    CONF_ACCESS_TOKEN,
    CONF_API_BASE_URL,
    CONF_CONCURRENCY,
    CONF_INTERVAL,
    CONF_REQUEST_TIMEOUT,
    CONF_STORE_PATH,
    CONF_UPLOAD_BASE_URL,
)

_LOGGER = logging.getLogger(__name__)

TOKEN_ENV = "VOCAB_SYNC_ACCESS_TOKEN"

_FLAG_OPTIONS = {
    "store_path": CONF_STORE_PATH,
    "api_base_url": CONF_API_BASE_URL,
    "upload_base_url": CONF_UPLOAD_BASE_URL,
    "concurrency": CONF_CONCURRENCY,
    "interval": CONF_INTERVAL,
    "request_timeout": CONF_REQUEST_TIMEOUT,
    "access_token": CONF_ACCESS_TOKEN,
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync a local vocabulary replica with the shared blob store")
    parser.add_argument("--config", type=Path, help="YAML file with agent options")
    parser.add_argument("--store-path", help="SQLite path for the local replica")
    parser.add_argument("--api-base-url", help="Blob store metadata API base URL")
    parser.add_argument("--upload-base-url", help="Blob store upload API base URL")
    parser.add_argument("--concurrency", type=int, help="Maximum parallel partition transfers")
    parser.add_argument("--interval", type=int, help="Seconds between sync passes")
    parser.add_argument("--request-timeout", type=float, help="Per-request timeout in seconds")
    parser.add_argument("--access-token", help=f"Bearer token (defaults to ${TOKEN_ENV})")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    return parser.parse_args(argv)


def load_options(args: argparse.Namespace) -> dict[str, Any]:
    """Merge the YAML config file, the token environment variable and CLI flags."""

    options: dict[str, Any] = {}
    if args.config:
        loaded = yaml.safe_load(args.config.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise VocabSyncError(f"{args.config} must contain a mapping", reason="invalid_config")
        options.update(loaded)
    token = os.environ.get(TOKEN_ENV)
    if token:
        options[CONF_ACCESS_TOKEN] = token
    for attr, key in _FLAG_OPTIONS.items():
        value = getattr(args, attr)
        if value is not None:
            options[key] = value
    return options


async def main_async(args: argparse.Namespace) -> int:
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))
    config = SyncConfig.from_options(load_options(args))
    manager = VocabSyncManager(config)
    try:
        if args.once:
            result = await manager.async_sync_now()
            print(json.dumps(result.to_dict(), indent=2))
            return 1 if result.failed else 0
        _LOGGER.info("Starting vocabulary sync loop every %s seconds", config.interval)
        await manager.run_forever()
    finally:
        await manager.async_stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(main_async(args))
    except VocabSyncError as err:
        _LOGGER.error("Sync failed (%s): %s", err.reason, err)
        return 2 if err.reason == "invalid_config" else 1
    except KeyboardInterrupt:  # pragma: no cover - manual interruption
        _LOGGER.info("Sync agent stopped")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
