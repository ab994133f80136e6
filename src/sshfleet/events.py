"""Events produced by the core for renderers (console, dashboard, logs)."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable

from .errors import Cancelled


@dataclass(frozen=True)
class OutputEvent:
    """One line of command or shell output from a server."""

    server: str
    stream: str  # "stdout" or "stderr"
    text: str


@dataclass(frozen=True)
class ProgressEvent:
    """Progress of one transfer entry, emitted after each written chunk."""

    server: str
    entry: str
    entry_index: int
    total_entries: int
    bytes_done: int
    bytes_total: int


# Type aliases for event callbacks
OutputCallback = Callable[[OutputEvent], None]
ProgressCallback = Callable[[ProgressEvent], None]


class CancelToken:
    """Shared cooperative cancellation flag.

    Backed by a threading.Event so a signal handler or the dashboard thread
    can set it while workers poll it at their checkpoints.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        """Raise Cancelled if cancellation was requested."""
        if self._event.is_set():
            raise Cancelled("operation cancelled by operator")
