"""Cooperative cancellation for engine entry points.

Every entry point takes ``cancel: CancellationToken | None``. The token is
checked before any commit; a cancelled operation leaves no partial
accumulation or state change behind.
"""

from __future__ import annotations

import threading
import time

from dslctl.domain.errors import OperationCancelled


class CancellationToken:
    """Thread-safe cancel flag with an optional deadline."""

    def __init__(self, *, deadline: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = deadline

    @classmethod
    def with_timeout(cls, seconds: float) -> CancellationToken:
        """Token that reports cancelled once *seconds* have elapsed."""
        return cls(deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def raise_if_cancelled(self, operation: str) -> None:
        if self.cancelled:
            raise OperationCancelled(operation)


def check_cancelled(cancel: CancellationToken | None, operation: str) -> None:
    """No-op when *cancel* is None."""
    if cancel is not None:
        cancel.raise_if_cancelled(operation)
