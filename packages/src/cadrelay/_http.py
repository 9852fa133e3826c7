"""Lazily created, shared ``httpx.AsyncClient`` handles.

Both outbound services (Graph and the IoT Hub service API) hold one
:class:`LazyClient`.  The underlying client is created on first use
inside a single ``asyncio.Lock`` section, so two concurrent first calls
still produce exactly one client, and is closed once at shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger(__name__)


@dataclass
class LazyClient:
    """Owner of one lazily created ``httpx.AsyncClient``.

    Args:
        factory: Builds the client; called at most once per open/close
            cycle.
        name: Label used in log lines.
    """

    factory: Callable[[], httpx.AsyncClient]
    name: str = "http"
    created: int = field(default=0, init=False)
    _client: httpx.AsyncClient | None = field(default=None, init=False, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    async def get(self) -> httpx.AsyncClient:
        """Return the shared client, creating it on first use."""
        if self._client is not None:
            return self._client
        async with self._lock:
            if self._client is None:
                self._client = self.factory()
                self.created += 1
                logger.debug("Created %s client", self.name)
        return self._client

    async def aclose(self) -> None:
        """Close the client if it was created.  Idempotent."""
        async with self._lock:
            client, self._client = self._client, None
        if client is not None:
            await client.aclose()
            logger.debug("Closed %s client", self.name)
