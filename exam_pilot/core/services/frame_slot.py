"""Single-entry mailbox between frame delivery and the processing loop."""

from __future__ import annotations

from threading import Condition

from exam_pilot.core.models import Screenshot


class LatestFrameSlot:
    """Keeps at most one pending frame; a newer frame replaces an older one.

    The consumer calls :meth:`take` to claim the pending frame and
    :meth:`done` once it has finished with it, which lets
    :meth:`wait_until_idle` tell when the pipeline has drained.
    """

    def __init__(self) -> None:
        self._condition = Condition()
        self._pending: Screenshot | None = None
        self._busy = False
        self._closed = False
        self._dropped = 0

    def offer(self, frame: Screenshot) -> bool:
        """Store ``frame`` as the pending one. Returns True if it replaced another."""
        with self._condition:
            if self._closed:
                return False
            replaced = self._pending is not None
            if replaced:
                self._dropped += 1
            self._pending = frame
            self._condition.notify_all()
            return replaced

    def take(self, timeout: float | None = None) -> Screenshot | None:
        """Claim the pending frame, waiting for one. Returns None once closed or on timeout."""
        with self._condition:
            self._condition.wait_for(lambda: self._pending is not None or self._closed, timeout)
            if self._closed or self._pending is None:
                return None
            frame, self._pending = self._pending, None
            self._busy = True
            return frame

    def done(self) -> None:
        with self._condition:
            self._busy = False
            self._condition.notify_all()

    def clear(self) -> None:
        """Discard the pending frame without processing it."""
        with self._condition:
            if self._pending is not None:
                self._dropped += 1
            self._pending = None
            self._condition.notify_all()

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._pending = None
            self._condition.notify_all()

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: self._pending is None and not self._busy, timeout)

    @property
    def has_pending(self) -> bool:
        with self._condition:
            return self._pending is not None

    @property
    def is_busy(self) -> bool:
        with self._condition:
            return self._busy

    @property
    def dropped_count(self) -> int:
        with self._condition:
            return self._dropped

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed
