"""Cooperative cancellation for refresh cycles.

The refresh scheduler hands a :class:`CancellationToken` to every stage of a
cycle (pull, embed, publish). Stages call :meth:`CancellationToken.raise_if_cancelled`
between units of work, so an aborted cycle unwinds before anything is
committed and the previously published generation keeps serving.
"""

from __future__ import annotations

import threading
from typing import Optional

__all__ = ("CancellationToken", "RefreshCancelled")


class RefreshCancelled(Exception):
    """Raised inside a refresh cycle once its token has been cancelled."""


class CancellationToken:
    """Thread-safe cancellation token for cooperative task cancellation.

    Examples:
        >>> token = CancellationToken()
        >>> token.is_cancelled()
        False
        >>> token.cancel("shutdown")
        >>> token.reason
        'shutdown'
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Signal that cancellation has been requested."""
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        """Return ``True`` once cancellation has been requested."""
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        """Reason supplied to the first :meth:`cancel` call, if any."""
        return self._reason

    def raise_if_cancelled(self) -> None:
        """Raise :class:`RefreshCancelled` when cancellation was requested."""
        if self._event.is_set():
            raise RefreshCancelled(self._reason or "refresh cycle cancelled")
