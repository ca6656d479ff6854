"""Clients for the progress API used by a listening session.

``HttpProgressClient`` talks to the server over HTTP exactly like the web
page does. ``LedgerProgressClient`` gives a session hosted inside the server
the same contract without a network hop.
"""
from __future__ import annotations

import logging
import time
from typing import Dict, Optional

import httpx

from .config import API_URL
from .ledger import LedgerUnavailableError, ProgressLedger

logger = logging.getLogger(__name__)

API_TIMEOUT = 10  # seconds


class ProgressClientError(Exception):
    """A progress write failed, or a read failed in an unexpected way."""


def _decode(resp: httpx.Response, action: str):
    """Response body as JSON; anything else (e.g. a proxy error page) is a client error."""
    try:
        return resp.json()
    except ValueError as e:
        raise ProgressClientError(f"Failed to {action}: response is not JSON") from e


class HttpProgressClient:
    """Async client for the practice API."""

    def __init__(self, base_url: str = API_URL, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=API_TIMEOUT)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpProgressClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def fetch_content(self) -> dict:
        resp = await self._client.get(f"{self.base_url}/api/content")
        if resp.status_code != 200:
            raise ProgressClientError(f"Failed to fetch content: {resp.status_code}")
        return _decode(resp, "fetch content")

    async def fetch_progress(self) -> Dict[str, int]:
        """Current counts. Unauthenticated or unreachable -> ``{}``."""
        try:
            resp = await self._client.get(
                f"{self.base_url}/api/progress",
                params={"_": int(time.time() * 1000)},
                headers={"Cache-Control": "no-cache", "Pragma": "no-cache"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Progress read failed, treating as empty: {e}")
            return {}

        if resp.status_code == 401:
            return {}
        if resp.status_code != 200:
            raise ProgressClientError(f"Failed to fetch progress: {resp.status_code}")
        progress = _decode(resp, "fetch progress")
        try:
            return {str(k): int(v) for k, v in progress.items()}
        except (AttributeError, TypeError, ValueError) as e:
            raise ProgressClientError(f"Failed to fetch progress: unexpected body {progress!r}") from e

    async def add_progress(self, practice_id: str) -> dict:
        try:
            resp = await self._client.post(
                f"{self.base_url}/api/progress",
                json={"practice_id": practice_id},
            )
        except httpx.HTTPError as e:
            raise ProgressClientError(f"Failed to add progress: {e}") from e

        if resp.status_code not in (200, 201):
            raise ProgressClientError(f"Failed to add progress: {resp.status_code}")
        return _decode(resp, "add progress")

    async def fetch_user(self) -> Optional[dict]:
        resp = await self._client.get(f"{self.base_url}/api/me")
        if resp.status_code == 401:
            return None
        if resp.status_code != 200:
            raise ProgressClientError("Failed to fetch user")
        return _decode(resp, "fetch user")

    async def logout(self) -> dict:
        resp = await self._client.post(f"{self.base_url}/auth/logout")
        if resp.status_code != 200:
            raise ProgressClientError(f"Failed to logout: {resp.status_code}")
        return _decode(resp, "logout")


class LedgerProgressClient:
    """Same contract as HttpProgressClient, backed directly by the ledger."""

    def __init__(self, ledger: ProgressLedger, user_id: int):
        self.ledger = ledger
        self.user_id = user_id

    async def fetch_progress(self) -> Dict[str, int]:
        try:
            return await self.ledger.aggregate(self.user_id)
        except LedgerUnavailableError as e:
            raise ProgressClientError(f"Failed to fetch progress: {e}") from e

    async def add_progress(self, practice_id: str) -> dict:
        try:
            event_id = await self.ledger.append(self.user_id, practice_id)
        except LedgerUnavailableError as e:
            raise ProgressClientError(f"Failed to add progress: {e}") from e
        return {"success": True, "id": event_id}
