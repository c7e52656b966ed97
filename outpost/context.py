"""
Cancellation and deadline handle passed into every blocking call.

An :class:`ActionContext` is created once per action and threaded through
transports, retries, and status polling.  Waiting is done on the cancel
event so a cancelled action wakes up immediately instead of finishing its
sleep.
"""

from __future__ import annotations

import threading
import time
from typing import Optional

from outpost.errors import ActionCancelled


class ActionContext:
    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        parent: Optional["ActionContext"] = None,
    ) -> None:
        self._event = threading.Event()
        self._parent = parent
        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = (
                parent.deadline if deadline is None else min(deadline, parent.deadline)
            )
        self.deadline: Optional[float] = deadline

    def child(self, timeout: Optional[float] = None) -> "ActionContext":
        """Derive a context that is cancelled when this one is."""
        return ActionContext(timeout, parent=self)

    def cancel(self) -> None:
        self._event.set()

    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or ``None`` when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        if self._cancel_requested():
            raise ActionCancelled("action cancelled")
        if self.cancelled():
            raise ActionCancelled("action deadline exceeded")

    def _cancel_requested(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent._cancel_requested()

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` or until cancelled, then :meth:`check`."""
        self.check()
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        end = time.monotonic() + max(0.0, seconds)
        # Parent cancellation does not set our event, so wake up periodically.
        while True:
            left = end - time.monotonic()
            if left <= 0 or self._cancel_requested():
                break
            self._event.wait(min(left, 0.1) if self._parent is not None else left)
        self.check()

    def timeout_for(self, default: float) -> float:
        """Clamp ``default`` to the time remaining before the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return min(default, remaining)


def background() -> ActionContext:
    """Return a context with no deadline that is never cancelled."""
    return ActionContext()


__all__ = ["ActionContext", "background"]
