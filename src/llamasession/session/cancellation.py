"""Cancellation signal shared between the manager and the engine."""

from __future__ import annotations

import threading


class CancellationToken:
    """Thread-safe abort flag polled by the engine during generation.

    ``cancel()`` is idempotent. ``reset()`` re-arms a fired token so the
    next generation can run.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._fired = 0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def times_fired(self) -> int:
        """Number of cancel() calls that actually flipped the flag."""
        return self._fired

    def cancel(self) -> None:
        if not self._event.is_set():
            self._fired += 1
            self._event.set()

    def reset(self) -> None:
        self._event.clear()
