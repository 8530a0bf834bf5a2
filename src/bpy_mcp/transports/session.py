from __future__ import annotations

import json
import threading
import time
from typing import Any, Optional, Set


def request_key(request_id: Any) -> str:
    # 1 and "1" are distinct ids.
    return json.dumps(request_id, sort_keys=True)


class TransportSession:
    """In-flight request ids for one stdio stream or one HTTP exchange."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._cond = threading.Condition()
        self._pending: Set[str] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def in_flight(self) -> int:
        with self._cond:
            return len(self._pending)

    def open(self, request_id: Any) -> bool:
        """Track a new request. False if the session is closed or the id is already in flight."""
        key = request_key(request_id)
        with self._cond:
            if self._closed or key in self._pending:
                return False
            self._pending.add(key)
            return True

    def finish(self, request_id: Any) -> bool:
        """Untrack a request. False if it had been abandoned by ``close``."""
        key = request_key(request_id)
        with self._cond:
            if key not in self._pending:
                return False
            self._pending.discard(key)
            self._cond.notify_all()
            return True

    def is_pending(self, request_id: Any) -> bool:
        with self._cond:
            return request_key(request_id) in self._pending

    def wait_idle(self, timeout: Optional[float]) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
            return True

    def close(self) -> Set[str]:
        """Refuse new requests and abandon the pending ones, returning their keys."""
        with self._cond:
            self._closed = True
            abandoned = set(self._pending)
            self._pending.clear()
            self._cond.notify_all()
            return abandoned
