"""Cancellation and deadlines for a unit of work."""

from __future__ import annotations

import threading
import time

# Longest uninterrupted wait inside Context.sleep
_SLEEP_SLICE = 0.1


class Cancelled(Exception):
    """Raised when work is attempted on a cancelled or expired context."""


class Context:
    """A cancellation signal plus an optional deadline.

    Children created with :meth:`with_timeout` are cancelled together with
    their parent and never outlive its deadline.
    """

    def __init__(
        self,
        *,
        deadline: float | None = None,
        parent: Context | None = None,
        clock=time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._clock = clock
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    @classmethod
    def background(cls) -> Context:
        """A context that is never cancelled unless asked to."""
        return cls()

    def with_timeout(self, seconds: float | None) -> Context:
        deadline = None if seconds is None else self._clock() + seconds
        return Context(deadline=deadline, parent=self, clock=self._clock)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return self.deadline is not None and self._clock() >= self.deadline

    def remaining(self) -> float | None:
        """Seconds left before the deadline, ``None`` when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self._clock())

    def check(self) -> None:
        """Raise :class:`Cancelled` if the context is done."""
        if self.cancelled:
            raise Cancelled("operation cancelled or timed out")

    def sleep(self, seconds: float) -> None:
        """Sleep up to *seconds*, waking early on cancellation or the deadline.

        Only this context's own event can interrupt the wait, so it is cut
        into short slices to notice a cancelled parent as well.
        """
        end = self._clock() + seconds
        while not self.cancelled:
            left = end - self._clock()
            if left <= 0:
                break
            self._event.wait(min(left, _SLEEP_SLICE))
        self.check()
