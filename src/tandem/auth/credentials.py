"""Credential refresh.

The turn controller holds the current ``Credentials`` and asks a
``CredentialProvider`` for a fresh pair when the model service rejects
the access token.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from tandem.config import AuthConfig
from tandem.exceptions import CredentialRefreshError, TransportError

logger = logging.getLogger(__name__)


@dataclass
class Credentials:
    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return "Credentials(access_token=***, refresh_token=***)"


class CredentialProvider(ABC):
    """Exchanges a refresh token for a new credential pair."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> Credentials:
        """Return fresh credentials.

        Raises ``CredentialRefreshError`` when the refresh token is no
        longer valid; the caller must not retry in that case.
        """
        ...


class HttpCredentialProvider(CredentialProvider):
    """Posts the refresh token as JSON to a configured endpoint.

    The endpoint answers with ``{"access_token": ..., "refresh_token": ...}``.
    401, 400 and 403 responses mean the refresh token is invalid.
    """

    def __init__(self, config: AuthConfig, client: httpx.AsyncClient | None = None):
        if not config.refresh_url:
            raise ValueError("auth.refresh_url is not configured")
        self._url = config.refresh_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds),
        )

    async def refresh(self, refresh_token: str) -> Credentials:
        if not refresh_token:
            raise CredentialRefreshError("No refresh token available")
        try:
            response = await self._client.post(
                self._url, json={"refresh_token": refresh_token},
            )
            response.raise_for_status()
        except httpx.ConnectError as e:
            raise TransportError(
                f"Cannot connect to auth server at {self._url}: {e}", original=e,
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(f"Credential refresh timed out: {e}", original=e) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (400, 401, 403):
                raise CredentialRefreshError(
                    f"Refresh token rejected (HTTP {status})"
                ) from e
            raise TransportError(
                f"Auth server returned HTTP {status}", original=e,
            ) from e

        try:
            data = response.json()
            credentials = Credentials(
                access_token=str(data["access_token"]),
                refresh_token=str(data.get("refresh_token") or refresh_token),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise CredentialRefreshError(f"Malformed refresh response: {e}") from e
        logger.debug("Refreshed credentials via %s", self._url)
        return credentials

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
