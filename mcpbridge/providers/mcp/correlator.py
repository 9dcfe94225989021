"""Correlation of responses to outstanding requests.

The pending map is the one structure touched from both the event loop
(callers registering requests) and reader threads (docker attach streams
run in worker threads), so every access goes through a lock and futures
are completed on their own loop with ``call_soon_threadsafe``.
"""

import asyncio
import logging
import threading
from typing import Dict

from .base import MCPDuplicateRequestIdError, MCPMessage

logger = logging.getLogger(__name__)


def _set_result(future: asyncio.Future, value: MCPMessage) -> None:
    if not future.done():
        future.set_result(value)


def _set_exception(future: asyncio.Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)


class RequestCorrelator:
    """Maps request ids to futures awaiting their response frame."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[int, asyncio.Future] = {}

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_pending(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._pending

    def start_operation(self, request_id: int, future: asyncio.Future) -> None:
        """Register a pending request.

        Raises:
            MCPDuplicateRequestIdError: If ``request_id`` is already pending
        """
        with self._lock:
            if request_id in self._pending:
                raise MCPDuplicateRequestIdError(request_id)
            self._pending[request_id] = future

    def resolve(self, request_id: int, response: MCPMessage) -> bool:
        """Complete the request waiting on ``request_id``.

        Responses for unknown ids (late, duplicate or out-of-band) are
        dropped and ``False`` is returned.
        """
        with self._lock:
            future = self._pending.pop(request_id, None)
        if future is None:
            logger.debug(f"Dropping response for unknown request id {request_id}")
            return False
        future.get_loop().call_soon_threadsafe(_set_result, future, response)
        return True

    def fail(self, request_id: int, exc: BaseException) -> bool:
        """Fail a single pending request."""
        with self._lock:
            future = self._pending.pop(request_id, None)
        if future is None:
            return False
        future.get_loop().call_soon_threadsafe(_set_exception, future, exc)
        return True

    def discard(self, request_id: int) -> None:
        """Forget a pending request without completing it."""
        with self._lock:
            self._pending.pop(request_id, None)

    def fail_all(self, exc: BaseException) -> int:
        """Fail every pending request with ``exc``.

        Returns:
            Number of requests that were failed
        """
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()

        for future in pending:
            loop = future.get_loop()
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(_set_exception, future, exc)

        if pending:
            logger.debug(f"Failed {len(pending)} pending request(s): {exc}")
        return len(pending)
