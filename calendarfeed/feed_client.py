"""HTTP client for downloading raw ICS calendar feeds."""

import asyncio
import logging
import platform
from typing import Optional

import httpx

from . import __version__
from .feed_exceptions import (
    FeedError,
    FeedHttpStatusError,
    FeedTimeoutError,
    FeedTransportError,
)
from .feed_models import FeedAuth
from .http_client import (
    client_id_for,
    get_shared_client,
    record_client_error,
    record_client_success,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

_SCHEME_REWRITES = (
    ("webcal://", "http://"),
    ("webcals://", "https://"),
)


def normalize_feed_url(url: str) -> str:
    """Rewrite webcal URLs to the HTTP scheme they are served over."""
    for prefix, replacement in _SCHEME_REWRITES:
        if url.lower().startswith(prefix):
            return replacement + url[len(prefix) :]
    return url


def build_request_headers(auth: Optional[FeedAuth] = None) -> dict[str, str]:
    """Build the headers sent with every feed request.

    Args:
        auth: Optional authentication configuration

    Returns:
        Client identifier, cache-busting and authorization headers
    """
    headers = {
        "User-Agent": f"calendarfeed/{__version__} (Python {platform.python_version()})",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }
    if auth is not None:
        headers.update(auth.get_headers())
    return headers


class FeedClient:
    """Async client that fetches raw calendar text from a feed URL.

    No retries happen here; rescheduling is up to the caller.
    """

    def __init__(self, shared_client: Optional[httpx.AsyncClient] = None) -> None:
        """Initialize feed client.

        Args:
            shared_client: Optional client used for every request instead of the
                shared pool (tests and embedding hosts)
        """
        self._client = shared_client
        logger.debug("Feed client initialized (injected client: %s)", shared_client is not None)

    async def _get_client(self, self_signed_cert: bool) -> tuple[httpx.AsyncClient, Optional[str]]:
        if self._client is not None:
            return self._client, None
        client_id = client_id_for(self_signed_cert)
        client = await get_shared_client(client_id, verify=not self_signed_cert)
        return client, client_id

    async def fetch_raw(
        self,
        url: str,
        auth: Optional[FeedAuth] = None,
        self_signed_cert: bool = False,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> str:
        """Download the raw ICS text of a feed.

        Args:
            url: Feed URL; webcal:// is rewritten to http://
            auth: Optional basic or bearer authentication
            self_signed_cert: Skip certificate validation for this request only
            timeout: Deadline in seconds for the whole request

        Returns:
            Response body as text

        Raises:
            FeedHttpStatusError: Status code outside [200, 400)
            FeedTimeoutError: Request did not complete within ``timeout``
            FeedTransportError: DNS, connection or socket failure
        """
        request_url = normalize_feed_url(url)
        headers = build_request_headers(auth)
        client, client_id = await self._get_client(self_signed_cert)

        logger.debug("Fetching calendar from %s (timeout %.1fs)", request_url, timeout)
        try:
            response = await asyncio.wait_for(
                client.get(request_url, headers=headers, timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            await self._record_error(client_id)
            logger.error("Calendar fetch timeout after %.1fs: %s", timeout, request_url)
            raise FeedTimeoutError(f"Request timeout after {timeout}s", source_url=url) from e
        except httpx.TransportError as e:
            await self._record_error(client_id)
            logger.error("Calendar fetch failed for %s: %s", request_url, e)
            raise FeedTransportError(f"Network error: {e}", source_url=url) from e
        except httpx.HTTPError as e:
            await self._record_error(client_id)
            raise FeedError(f"Unexpected HTTP error: {e}", source_url=url) from e

        if client_id is not None:
            await record_client_success(client_id)

        if response.status_code < 200 or response.status_code >= 400:
            logger.warning(
                "Calendar fetch for %s failed with status %d", request_url, response.status_code
            )
            raise FeedHttpStatusError(
                f"Request failed with status code {response.status_code}",
                status_code=response.status_code,
                source_url=url,
            )

        content = response.text
        logger.debug("Fetched %d characters from %s", len(content), request_url)
        return content

    async def _record_error(self, client_id: Optional[str]) -> None:
        if client_id is not None:
            await record_client_error(client_id)
