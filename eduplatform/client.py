import logging
import time
from typing import Any

import requests

from .config import settings

logger = logging.getLogger(__name__)


class BooksClientError(Exception):
    pass


class BooksClient:
    """Client for the ``GET /api/books`` listing route.

    A timed-out request is retried once after ``retry_delay`` seconds. Calls
    made while a fetch is already running return ``None`` immediately.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        retry_delay: float | None = None,
        session: requests.Session | None = None,
        token: str | None = None,
    ) -> None:
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout = settings.fetch_timeout_seconds if timeout is None else timeout
        self.retry_delay = settings.fetch_retry_delay_seconds if retry_delay is None else retry_delay
        self.session = session or requests.Session()
        self.token = token
        self.fetching = False

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _get(self, params: dict[str, Any]) -> requests.Response:
        return self.session.get(
            f"{self.base_url}/api/books",
            params=params,
            headers=self._headers(),
            timeout=self.timeout,
        )

    def fetch_books(self, role: str | None = None, user_id: int | str | None = None) -> list[dict[str, Any]] | None:
        if self.fetching:
            logger.info("Books fetch already in progress, skipping")
            return None

        params = {key: value for key, value in (("role", role), ("userId", user_id)) if value is not None}
        self.fetching = True
        try:
            try:
                response = self._get(params)
            except requests.exceptions.Timeout:
                logger.warning(f"Books fetch timed out after {self.timeout}s, retrying in {self.retry_delay}s")
                time.sleep(self.retry_delay)
                try:
                    response = self._get(params)
                except requests.exceptions.RequestException as exc:
                    raise BooksClientError(f"Failed to fetch books: {exc}") from exc
            except requests.exceptions.RequestException as exc:
                raise BooksClientError(f"Failed to fetch books: {exc}") from exc

            try:
                payload = response.json()
            except ValueError as exc:
                raise BooksClientError(f"Unexpected response from books API ({response.status_code})") from exc
            if not isinstance(payload, dict):
                raise BooksClientError(f"Unexpected response from books API ({response.status_code})")
            if response.status_code >= 400:
                message = payload.get("error") or payload.get("detail")
                raise BooksClientError(str(message or f"Books API returned {response.status_code}"))
            return payload.get("data", [])
        finally:
            self.fetching = False
