"""
Cooperative cancellation and stale-result detection.

A CancellationToken is passed down through every fetch. Long waits
(rate-limit spacing, retry backoff) wait on the token so a superseded
request stops promptly.

RequestTracker hands out monotonically increasing request ids per
logical scope (e.g. one map viewport). Starting a new request cancels
the previous token for that scope, and results are only applied when
their id is still the current one.
"""

import itertools
import logging
import threading
from typing import Dict, Optional, Tuple

from errors import CancellationSignal

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationSignal(self.reason or "cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep up to seconds; raise CancellationSignal if cancelled meanwhile."""
        if seconds > 0 and self._event.wait(seconds):
            raise CancellationSignal(self.reason or "cancelled")
        self.raise_if_cancelled()


def check_cancelled(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


class RequestTracker:
    """Latest-request-wins bookkeeping per scope."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._current: Dict[str, Tuple[int, CancellationToken]] = {}

    def begin(self, scope: str) -> Tuple[int, CancellationToken]:
        """Start a request in scope, superseding (and cancelling) the previous one."""
        token = CancellationToken()
        with self._lock:
            request_id = next(self._ids)
            previous = self._current.get(scope)
            self._current[scope] = (request_id, token)
        if previous is not None:
            previous[1].cancel(f"superseded by request {request_id}")
            logger.debug(
                "Request %d in %s superseded by %d", previous[0], scope, request_id
            )
        return request_id, token

    def is_current(self, scope: str, request_id: int) -> bool:
        with self._lock:
            entry = self._current.get(scope)
            return entry is not None and entry[0] == request_id

    def finish(self, scope: str, request_id: int) -> None:
        """Forget the scope if request_id is still its current request."""
        with self._lock:
            entry = self._current.get(scope)
            if entry is not None and entry[0] == request_id:
                del self._current[scope]
