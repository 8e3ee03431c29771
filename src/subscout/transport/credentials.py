"""Access-token handling for mail provider connections."""

from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

import httpx
from dotenv import dotenv_values

from ..core.config import ENV_PREFIX, OAuthSettings
from ..core.datetime_utils import utcnow
from ..core.interfaces import CredentialError, CredentialProvider, TransientFetchError
from ..core.models import Connection

LOGGER = logging.getLogger(__name__)

SECRET_PREFIX = f"{ENV_PREFIX}SECRET__"
_HANDLE_SANITIZER = re.compile(r"[^A-Z0-9]+")


class SecretStore(Protocol):
    """Lookup of refresh tokens by opaque auth handle."""

    def get_secret(self, handle: str) -> str | None:
        """Return the secret stored under ``handle`` if present."""
        raise NotImplementedError


def secret_env_key(handle: str) -> str:
    """Return the environment variable name holding ``handle``'s secret."""
    normalized = _HANDLE_SANITIZER.sub("_", handle.upper()).strip("_")
    return f"{SECRET_PREFIX}{normalized}"


class EnvSecretStore(SecretStore):
    """Read refresh tokens from ``SUBSCOUT_SECRET__<HANDLE>`` variables."""

    def __init__(
        self,
        env_file: Path | str | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        file_values: dict[str, str] = {}
        if env_file and Path(env_file).is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_file).items()
                if key.startswith(SECRET_PREFIX) and value
            }
        source = os.environ if environ is None else environ
        self._values = {
            **file_values,
            **{k: v for k, v in source.items() if k.startswith(SECRET_PREFIX)},
        }

    def get_secret(self, handle: str) -> str | None:
        return self._values.get(secret_env_key(handle))


@dataclass(slots=True)
class _CachedToken:
    access_token: str
    expires_at: datetime


class OAuthCredentialProvider(CredentialProvider):
    """Exchange stored refresh tokens for short-lived access tokens."""

    def __init__(
        self,
        settings: OAuthSettings,
        secrets: SecretStore,
        *,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self._secrets = secrets
        self._client = http_client or httpx.Client(timeout=settings.timeout_seconds)
        self._owns_client = http_client is None
        self._clock = clock
        self._tokens: dict[str, _CachedToken] = {}
        self._lock = threading.Lock()

    def get_access_token(
        self, connection: Connection, *, force_refresh: bool = False
    ) -> str:
        """Return a cached token or refresh it against the token endpoint."""
        handle = connection.auth_handle
        margin = timedelta(seconds=self._settings.expiry_margin_seconds)
        with self._lock:
            cached = self._tokens.get(handle)
            if (
                cached is not None
                and not force_refresh
                and cached.expires_at - margin > self._clock()
            ):
                return cached.access_token
            token = self._refresh(handle)
            self._tokens[handle] = token
            return token.access_token

    def forget(self, handle: str) -> None:
        """Drop the cached token for ``handle``."""
        with self._lock:
            self._tokens.pop(handle, None)

    def close(self) -> None:
        """Close the owned HTTP client."""
        if self._owns_client:
            self._client.close()

    def _refresh(self, handle: str) -> _CachedToken:
        refresh_token = self._secrets.get_secret(handle)
        if not refresh_token:
            raise CredentialError(f"No refresh token stored for handle '{handle}'")
        LOGGER.debug("Refreshing access token for handle %s", handle)
        try:
            response = self._client.post(
                self._settings.token_url,
                data={
                    "client_id": self._settings.client_id or "",
                    "client_secret": self._settings.client_secret or "",
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientFetchError(
                f"Token endpoint returned {response.status_code}"
            )
        if response.status_code != 200:
            LOGGER.warning(
                "Token refresh rejected for handle %s (HTTP %s)",
                handle,
                response.status_code,
            )
            raise CredentialError(
                f"Token refresh rejected with HTTP {response.status_code}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialError("Token endpoint returned invalid JSON") from exc
        access_token = payload.get("access_token")
        if not access_token:
            raise CredentialError("Token endpoint response missing access_token")
        expires_in = int(payload.get("expires_in", 3600))
        return _CachedToken(
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in),
        )


__all__ = [
    "EnvSecretStore",
    "OAuthCredentialProvider",
    "SecretStore",
    "secret_env_key",
]
