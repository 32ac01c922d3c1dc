from __future__ import annotations

import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from shared.envelope import RequestResponse
from shared.errors import RequestFailedError, RequestTimeoutError
from shared.log import get_logger

logger = get_logger(__name__)


@dataclass
class PendingRequest:
    request_id: str
    request_type: str
    timeout: Optional[float]
    deadline: Optional[float]
    future: "Future[RequestResponse]" = field(default_factory=Future)

    def expired(self, now: float) -> bool:
        return self.deadline is not None and now >= self.deadline


class PendingRequestTable:
    """
    Outstanding Requests keyed by requestId.

    Each entry owns the Future handed back to the caller. An entry leaves
    the table exactly once: resolved by its RequestResponse, expired past
    its deadline, cancelled, or failed when the session ends.

    Not thread safe on its own; the owning Connection serialises access.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._pending: Dict[str, PendingRequest] = {}

    def add(self, request_id: str, request_type: str, timeout: Optional[float] = None) -> PendingRequest:
        """
        Register a request about to be sent (or queued).

        Args:
            request_id: requestId placed in the envelope
            request_type: requestType, kept for logging and errors
            timeout: seconds until the request expires; None waits forever
        """
        if request_id in self._pending:
            raise ValueError(f"Duplicate requestId: {request_id}")
        deadline = self._clock() + timeout if timeout is not None else None
        entry = PendingRequest(request_id, request_type, timeout, deadline)
        # lets callers hand the future back to cancel_request()
        entry.future.request_id = request_id
        self._pending[request_id] = entry
        return entry

    def get(self, request_id: str) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    def resolve(self, response: RequestResponse) -> Optional[PendingRequest]:
        """
        Complete the request matching response.request_id.

        Returns:
            The resolved entry, or None if no such request is outstanding
        """
        entry = self._pending.pop(response.request_id, None)
        if entry is None:
            logger.debug("No pending request for response", extra={
                "request_type": response.request_type, "request_id": response.request_id,
            })
            return None
        if entry.future.done():
            return entry
        if response.ok:
            entry.future.set_result(response)
        else:
            entry.future.set_exception(RequestFailedError(response))
        return entry

    def cancel(self, request_id: str) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        entry.future.cancel()
        return True

    def prune_expired(self) -> int:
        """
        Fail every request whose deadline has passed, or whose future the
        caller already cancelled.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0
        for request_id, entry in list(self._pending.items()):
            if entry.future.cancelled():
                del self._pending[request_id]
                removed += 1
            elif entry.expired(now):
                del self._pending[request_id]
                if not entry.future.done():
                    entry.future.set_exception(
                        RequestTimeoutError(entry.request_type, request_id, entry.timeout or 0.0)
                    )
                logger.warning("Request timed out", extra={
                    "request_type": entry.request_type, "request_id": request_id,
                })
                removed += 1

        if removed > 0:
            logger.debug("Pruned %d expired requests", removed)

        return removed

    def fail_all(self, exc: BaseException) -> List[PendingRequest]:
        """Fail and drop every outstanding request with exc."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if not entry.future.done():
                entry.future.set_exception(exc)
        return entries

    def size(self) -> int:
        return len(self._pending)
