"""Shared HTTP client pool for calendar feed requests.

Feeds that verify TLS certificates share one ``httpx.AsyncClient``; feeds that opt in
to self-signed certificates share a second client created with ``verify=False``.
Certificate validation is therefore disabled only for the requests of those sources.
"""

import asyncio
import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

SECURE_CLIENT_ID = "feed_secure"
INSECURE_CLIENT_ID = "feed_insecure"

# Global state for shared HTTP clients
_shared_clients: dict[str, httpx.AsyncClient] = {}
_client_health: dict[str, dict[str, float]] = {}
_client_lock = asyncio.Lock()

_DEFAULT_LIMITS = httpx.Limits(max_connections=10, max_keepalive_connections=4)

_DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=30.0, write=10.0, pool=30.0)

# Recreate a client after this many consecutive errors within the timeout window
HEALTH_ERROR_THRESHOLD = 3
HEALTH_TIMEOUT_SECONDS = 300


def client_id_for(self_signed_cert: bool) -> str:
    """Return the shared client id matching a source's TLS setting."""
    return INSECURE_CLIENT_ID if self_signed_cert else SECURE_CLIENT_ID


async def get_shared_client(
    client_id: str = SECURE_CLIENT_ID,
    verify: bool = True,
    timeout: Optional[httpx.Timeout] = None,
) -> httpx.AsyncClient:
    """Get or create a shared HTTP client with connection pooling.

    Args:
        client_id: Identifier for the client
        verify: Whether the client validates TLS certificates
        timeout: Custom timeout configuration

    Returns:
        Shared httpx.AsyncClient

    Raises:
        RuntimeError: If client creation fails
    """
    async with _client_lock:
        await _recreate_client_if_unhealthy(client_id)

        if client_id not in _shared_clients or _shared_clients[client_id].is_closed:
            try:
                _shared_clients[client_id] = httpx.AsyncClient(
                    limits=_DEFAULT_LIMITS,
                    timeout=timeout or _DEFAULT_TIMEOUT,
                    follow_redirects=True,
                    verify=verify,
                )
                _client_health[client_id] = {
                    "error_count": 0,
                    "last_error_time": 0,
                    "created_time": time.time(),
                }
                if verify:
                    logger.info("Created shared HTTP client '%s'", client_id)
                else:
                    logger.warning(
                        "Created shared HTTP client '%s' without certificate validation",
                        client_id,
                    )
            except Exception as e:
                logger.exception("Failed to create shared HTTP client '%s'", client_id)
                raise RuntimeError(f"Failed to create shared HTTP client: {e}") from e

        return _shared_clients[client_id]


async def close_all_clients() -> None:
    """Close all shared HTTP clients.

    Called on shutdown and between tests.
    """
    async with _client_lock:
        for client_id, client in _shared_clients.items():
            try:
                if not client.is_closed:
                    await client.aclose()
                    logger.debug("Closed shared HTTP client '%s'", client_id)
            except Exception as e:  # noqa: PERF203
                logger.warning("Error closing shared HTTP client '%s': %s", client_id, e)

        _shared_clients.clear()
        _client_health.clear()


async def record_client_error(client_id: str = SECURE_CLIENT_ID) -> None:
    """Record a transport error for health tracking."""
    async with _client_lock:
        health = _client_health.setdefault(
            client_id, {"error_count": 0, "last_error_time": 0, "created_time": time.time()}
        )
        health["error_count"] += 1
        health["last_error_time"] = time.time()
        logger.debug(
            "Recorded error for client '%s', total errors: %d", client_id, health["error_count"]
        )


async def record_client_success(client_id: str = SECURE_CLIENT_ID) -> None:
    """Reset the error count of a client after a successful request."""
    async with _client_lock:
        if client_id in _client_health:
            _client_health[client_id]["error_count"] = 0


def get_client_health(client_id: str) -> Optional[dict[str, float]]:
    """Return a copy of the health record for a client, if any."""
    health = _client_health.get(client_id)
    return dict(health) if health is not None else None


async def _recreate_client_if_unhealthy(client_id: str) -> None:
    """Drop a client that keeps failing so the next request gets a fresh pool."""
    health = _client_health.get(client_id)
    if health is None:
        return

    should_recreate = (
        health["error_count"] >= HEALTH_ERROR_THRESHOLD
        and (time.time() - health["last_error_time"]) < HEALTH_TIMEOUT_SECONDS
    )
    if should_recreate and client_id in _shared_clients:
        logger.warning(
            "Recreating unhealthy client '%s' after %d consecutive errors",
            client_id,
            health["error_count"],
        )
        try:
            old_client = _shared_clients[client_id]
            if not old_client.is_closed:
                await old_client.aclose()
        except Exception as e:
            logger.warning("Error closing unhealthy client '%s': %s", client_id, e)

        del _shared_clients[client_id]
        del _client_health[client_id]
