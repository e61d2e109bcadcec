"""Async client for the application-private space of a Drive-style blob store."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout

from .const import (
    APP_DATA_SPACE,
    DEFAULT_API_BASE_URL,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_UPLOAD_BASE_URL,
    LIST_PAGE_SIZE,
)
from .models import BlobFile

_LOGGER = logging.getLogger(__name__)


class BlobStoreError(RuntimeError):
    """Raised on a non-2xx response or a network failure."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class BlobNotFoundError(BlobStoreError):
    """The requested object does not exist (HTTP 404)."""


class BlobDecodeError(BlobStoreError):
    """The object exists but its body is not valid JSON."""


class BlobStore(Protocol):
    """The five remote operations the sync core depends on."""

    async def list_files(self, token: str) -> list[BlobFile]: ...

    async def get_file(self, token: str, file_id: str) -> Any: ...

    async def create_file(self, token: str, name: str, content: Any) -> str: ...

    async def update_file(self, token: str, file_id: str, content: Any) -> None: ...

    async def find_file_by_name(self, token: str, name: str) -> str | None: ...


class BlobStoreClient:
    """Named-object CRUD scoped to the ``appDataFolder`` space.

    Objects outside that space are invisible to the client. Names are the
    caller's addressing key; ids are server-assigned and only cached as an
    optimisation. The client never retries.
    """

    def __init__(
        self,
        session: ClientSession | None = None,
        *,
        api_base_url: str = DEFAULT_API_BASE_URL,
        upload_base_url: str = DEFAULT_UPLOAD_BASE_URL,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self.api_base_url = api_base_url.rstrip("/")
        self.upload_base_url = upload_base_url.rstrip("/")
        self.timeout = ClientTimeout(total=timeout)

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession()
        return self._session

    async def async_close(self) -> None:
        if not self._owns_session or self._session is None:
            return
        if not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    def _headers(self, token: str, **extra: str) -> dict[str, str]:
        if not token:
            raise BlobStoreError("bearer token is required")
        return {"Authorization": f"Bearer {token}", **extra}

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        token: str,
        **kwargs: Any,
    ) -> str:
        headers = self._headers(token, **kwargs.pop("headers", {}))
        _LOGGER.debug("%s %s %s", operation, method, url)
        try:
            async with self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs) as resp:
                text = await resp.text()
                if resp.status == 404:
                    raise BlobNotFoundError(f"{operation} failed: 404", status=404)
                if resp.status >= 400:
                    raise BlobStoreError(f"{operation} failed: {resp.status} {text}", status=resp.status)
                return text
        except ClientError as err:
            raise BlobStoreError(f"{operation} request failed: {err}") from err
        except TimeoutError as err:
            raise BlobStoreError(f"{operation} timed out") from err

    @staticmethod
    def _decode(operation: str, text: str) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as err:
            raise BlobDecodeError(f"{operation} returned invalid JSON: {err}") from err

    # ------------------------------------------------------------------
    async def list_files(self, token: str) -> list[BlobFile]:
        """List every object in the private space, following pagination."""

        files: list[BlobFile] = []
        page_token: str | None = None
        while True:
            params = {
                "spaces": APP_DATA_SPACE,
                "fields": "nextPageToken,files(id,name,modifiedTime)",
                "pageSize": str(LIST_PAGE_SIZE),
            }
            if page_token:
                params["pageToken"] = page_token
            text = await self._request("list_files", "GET", f"{self.api_base_url}/files", token, params=params)
            payload = self._decode("list_files", text)
            for item in payload.get("files") or []:
                files.append(BlobFile.from_payload(item))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return files

    async def get_file(self, token: str, file_id: str) -> Any:
        text = await self._request(
            "get_file",
            "GET",
            f"{self.api_base_url}/files/{file_id}",
            token,
            params={"alt": "media"},
        )
        return self._decode("get_file", text)

    async def create_file(self, token: str, name: str, content: Any) -> str:
        """Create ``name`` in the private space and return its new id."""

        with aiohttp.MultipartWriter("related") as writer:
            writer.append_json({"name": name, "parents": [APP_DATA_SPACE]})
            writer.append_json(content)
        text = await self._request(
            "create_file",
            "POST",
            f"{self.upload_base_url}/files",
            token,
            params={"uploadType": "multipart"},
            data=writer,
        )
        payload = self._decode("create_file", text)
        file_id = payload.get("id") if isinstance(payload, dict) else None
        if not file_id:
            raise BlobStoreError("create_file response missing id")
        return str(file_id)

    async def update_file(self, token: str, file_id: str, content: Any) -> None:
        await self._request(
            "update_file",
            "PATCH",
            f"{self.upload_base_url}/files/{file_id}",
            token,
            params={"uploadType": "media"},
            data=json.dumps(content, ensure_ascii=False).encode("utf-8"),
            headers={"Content-Type": "application/json; charset=UTF-8"},
        )

    async def find_file_by_name(self, token: str, name: str) -> str | None:
        escaped = name.replace("\\", "\\\\").replace("'", "\\'")
        params = {
            "spaces": APP_DATA_SPACE,
            "q": f"name='{escaped}'",
            "fields": "files(id)",
            "pageSize": "1",
        }
        text = await self._request("find_file_by_name", "GET", f"{self.api_base_url}/files", token, params=params)
        files = self._decode("find_file_by_name", text).get("files") or []
        return str(files[0]["id"]) if files else None


__all__ = ["BlobDecodeError", "BlobNotFoundError", "BlobStore", "BlobStoreClient", "BlobStoreError"]
