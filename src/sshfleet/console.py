"""Headless console rendering: colour-coded per-server output and progress."""

from __future__ import annotations

import sys
import time
from typing import Callable, Iterable, TextIO

from .events import OutputEvent, ProgressEvent

# ANSI colors for different servers
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"


def assign_colors(names: Iterable[str]) -> dict[str, str]:
    return {name: COLORS[i % len(COLORS)] for i, name in enumerate(names)}


def format_size(size: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


class ConsoleRenderer:
    """Prints events as ``[server] line``.

    Progress lines are rate limited to one per ``progress_interval`` seconds
    per server; the line completing an entry is always printed.
    """

    def __init__(
        self,
        server_names: Iterable[str],
        *,
        stream: TextIO | None = None,
        hide_output: bool = False,
        show_status: bool = True,
        progress_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.colors = assign_colors(server_names)
        self.stream = stream or sys.stdout
        self.hide_output = hide_output
        self.show_status = show_status
        self.progress_interval = progress_interval
        self._clock = clock
        self._last_progress: dict[str, float] = {}

    def prefix(self, server: str) -> str:
        color = self.colors.get(server, "")
        return f"{color}[{server}]{RESET}"

    def line(self, server: str, text: str) -> None:
        print(f"{self.prefix(server)} {text}", file=self.stream, flush=True)

    def on_output(self, event: OutputEvent) -> None:
        if self.hide_output:
            return
        text = event.text if event.stream == "stdout" else f"STDERR: {event.text}"
        self.line(event.server, text)

    def on_status(self, server: str, status) -> None:
        if self.show_status:
            self.line(server, f"Status: {status.value}")

    def on_progress(self, event: ProgressEvent) -> None:
        done = event.bytes_done >= event.bytes_total
        now = self._clock()
        last = self._last_progress.get(event.server)
        if not done and last is not None and now - last < self.progress_interval:
            return
        self._last_progress[event.server] = now

        percent = 100.0 if event.bytes_total == 0 else 100.0 * event.bytes_done / event.bytes_total
        entry = event.entry or "file"
        self.line(
            event.server,
            f"[{event.entry_index + 1}/{event.total_entries}] {entry} "
            f"{format_size(event.bytes_done)}/{format_size(event.bytes_total)} ({percent:.0f}%)",
        )
