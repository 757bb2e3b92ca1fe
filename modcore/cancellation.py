"""Cancellation token for scan and load passes.

Thread-safe flag shared between the caller and a running operation. Work
already done is never rolled back; the operation stops at the next
checkpoint and reports a cancelled status.
"""
from __future__ import annotations

from threading import RLock
from time import time

from modcore.exceptions import OperationCancelled


class CancellationToken:
    __slots__ = ("_cancelled", "_cancelled_at", "_reason", "_lock")

    def __init__(self) -> None:
        self._cancelled = False
        self._cancelled_at: float | None = None
        self._reason: str | None = None
        self._lock = RLock()

    def cancel(self, reason: str = "user") -> bool:  # noqa: D401
        """Request cancellation; returns False if already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._cancelled_at = time()
            self._reason = reason
            return True

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def reason(self) -> str | None:
        with self._lock:
            return self._reason

    def cancelled_at(self) -> float | None:  # noqa: D401
        with self._lock:
            return self._cancelled_at

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(f"operation cancelled ({self.reason})")


def is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.cancelled


__all__ = ["CancellationToken", "is_cancelled"]
