"""Access-token handling for the blob store."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol


class AccessTokenError(RuntimeError):
    """Raised when a token payload is missing fields or carries a bad expiry."""


class TokenProvider(Protocol):
    """Supplies a usable bearer token, or ``None`` when signed out or expired."""

    async def get_valid_token(self) -> str | None: ...


@dataclass(slots=True)
class AccessToken:
    """Normalised OAuth-style access token."""

    access_token: str
    expires_at: datetime | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, now: datetime | None = None) -> AccessToken:
        """Create an :class:`AccessToken` from a token endpoint response.

        ``expires_in`` is a lifetime in seconds. ``expires_at`` may be an
        ISO-8601 string or a numeric epoch timestamp in seconds.
        """

        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise AccessTokenError("access_token missing from payload")

        now = now or datetime.now(tz=UTC)
        expires_at: datetime | None = None
        lifetime = payload.get("expires_in")
        expiry = payload.get("expires_at")
        if lifetime not in (None, ""):
            try:
                expires_at = now + timedelta(seconds=float(lifetime))
            except (TypeError, ValueError) as err:
                raise AccessTokenError(f"invalid expires_in: {lifetime}") from err
        elif isinstance(expiry, int | float):
            expires_at = datetime.fromtimestamp(float(expiry), tz=UTC)
        elif isinstance(expiry, str) and expiry.strip():
            try:
                parsed = datetime.fromisoformat(expiry.strip().replace("Z", "+00:00"))
            except ValueError as err:
                raise AccessTokenError(f"invalid expiry timestamp: {expiry}") from err
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            expires_at = parsed.astimezone(UTC)

        refresh = payload.get("refresh_token")
        scope = payload.get("scope")
        return cls(
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=str(refresh).strip() if refresh else None,
            token_type=str(payload.get("token_type") or "Bearer"),
            scope=str(scope) if scope else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "access_token": self.access_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "scope": self.scope,
        }
        return {key: value for key, value in payload.items() if value is not None}

    def is_expired(self, *, now: datetime | None = None, threshold_seconds: int = 0) -> bool:
        """Return ``True`` if the token has expired or expires within the threshold."""

        if self.expires_at is None:
            return False
        now = now or datetime.now(tz=UTC)
        return (self.expires_at - now).total_seconds() <= threshold_seconds


class StaticTokenProvider:
    """Hands out a fixed token until it expires.

    Nothing is refreshed here; callers that can refresh replace the token with
    :meth:`set_token`.
    """

    def __init__(self, token: AccessToken | str | None = None, *, threshold_seconds: int = 60) -> None:
        self.threshold_seconds = threshold_seconds
        self._token: AccessToken | None = None
        self.set_token(token)

    def set_token(self, token: AccessToken | str | None) -> None:
        if isinstance(token, str):
            token = AccessToken(access_token=token) if token.strip() else None
        self._token = token

    @property
    def token(self) -> AccessToken | None:
        return self._token

    @property
    def logged_in(self) -> bool:
        return self._token is not None

    def expired(self, *, now: datetime | None = None) -> bool:
        if self._token is None:
            return False
        return self._token.is_expired(now=now, threshold_seconds=self.threshold_seconds)

    async def get_valid_token(self) -> str | None:
        if self._token is None or self.expired():
            return None
        return self._token.access_token


__all__ = ["AccessToken", "AccessTokenError", "StaticTokenProvider", "TokenProvider"]
