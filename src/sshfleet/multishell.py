"""Interactive shells on several servers at once.

Operator input fans out to every open channel; channel output fans in to
one queue and is shown as ``[server] line``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import AsyncIterable, Awaitable, Callable, Iterable

from .config import ServerTarget
from .console import RESET, assign_colors
from .errors import classify
from .events import OutputCallback, OutputEvent
from .session import InteractiveChannel, Session

logger = logging.getLogger(__name__)

SessionFactory = Callable[[ServerTarget], Awaitable[Session]]


class MultiShell:
    """Owns one Session and one InteractiveChannel per server."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        concurrency: int = 8,
        on_output: OutputCallback | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.concurrency = concurrency
        self.on_output = on_output
        self.echo = echo or (lambda text: print(text, file=sys.stdout, flush=True))
        self.sessions: dict[str, Session] = {}
        self.channels: dict[str, InteractiveChannel] = {}
        self.failures: dict[str, str] = {}
        self.history: dict[str, list[str]] = {}
        self.colors: dict[str, str] = {}
        self.opened = 0
        self._pumps: dict[str, asyncio.Task] = {}
        self._output: asyncio.Queue[OutputEvent] = asyncio.Queue()
        self._all_closed = asyncio.Event()

    @property
    def active(self) -> list[str]:
        return [name for name, channel in self.channels.items() if not channel.closed]

    async def open_all(
        self, servers: Iterable[ServerTarget], command: str | None = None
    ) -> dict[str, InteractiveChannel]:
        """Open a shell on every server concurrently. Failures are recorded, never retried."""
        servers = list(servers)
        self.colors = assign_colors(server.name for server in servers)
        semaphore = asyncio.Semaphore(max(1, self.concurrency))

        async def open_one(target: ServerTarget) -> None:
            async with semaphore:
                session = None
                try:
                    session = await self.session_factory(target)
                    channel = await session.open_shell(command)
                except Exception as e:
                    if session is not None:
                        session.close()
                    self.failures[target.name] = f"{classify(e).value}: {e}"
                    logger.error("Failed to open shell on %s: %s", target.name, e)
                    return
            self.sessions[target.name] = session
            self.channels[target.name] = channel
            self.history.setdefault(target.name, [])
            self._pumps[target.name] = asyncio.create_task(self._pump(target.name, channel))
            logger.info("Shell open on %s", target.name)

        await asyncio.gather(*(open_one(server) for server in servers))
        self.opened = len(self.channels)
        if not self.channels:
            self._all_closed.set()
        return dict(self.channels)

    async def _pump(self, server: str, channel: InteractiveChannel) -> None:
        """Read a channel until it closes, queueing complete lines."""
        buffer = ""
        try:
            while True:
                data = await channel.read()
                if not data:
                    break
                buffer += data.decode("utf-8", errors="replace")
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    self._queue_line(server, line)
        except Exception as e:
            logger.warning("Shell on %s ended: %s", server, e)
        if buffer:
            self._queue_line(server, buffer)
        self._channel_finished(server)

    def _queue_line(self, server: str, line: str) -> None:
        line = line.rstrip("\r")
        if not line:
            return
        self.history[server].append(line)
        self._output.put_nowait(OutputEvent(server, "stdout", line))

    def _channel_finished(self, server: str) -> None:
        channel = self.channels.pop(server, None)
        if channel is not None:
            channel.close()
            logger.info("Channel '%s' closed", server)
        session = self.sessions.pop(server, None)
        if session is not None:
            session.close()
        if not self.channels:
            self._all_closed.set()

    def format_line(self, event: OutputEvent) -> str:
        # Prefix only when more than one shell actually opened
        if self.opened <= 1:
            return event.text
        color = self.colors.get(event.server, "")
        return f"{color}[{event.server}]{RESET} {event.text}"

    def _deliver(self, event: OutputEvent) -> None:
        if self.on_output is not None:
            self.on_output(event)
        else:
            self.echo(self.format_line(event))

    def flush_output(self) -> None:
        """Deliver every queued output line."""
        while not self._output.empty():
            self._deliver(self._output.get_nowait())

    async def _display(self) -> None:
        while True:
            self._deliver(await self._output.get())

    async def broadcast(self, data: bytes) -> None:
        """Send ``data`` verbatim to every active channel."""
        for server in self.active:
            await self.send(server, data)

    async def send(self, server: str, data: bytes) -> None:
        channel = self.channels.get(server)
        if channel is None or channel.closed:
            raise KeyError(f"No open shell on '{server}'")
        try:
            await channel.write(data)
        except Exception as e:
            logger.warning("Write to %s failed: %s", server, e)
            self.close(server)

    def close(self, server: str) -> None:
        """Tear down one server's channel and session."""
        pump = self._pumps.pop(server, None)
        if pump is not None:
            pump.cancel()
        self._channel_finished(server)

    def detach(self) -> None:
        """Tear down every channel and session."""
        for server in list(self.channels):
            self.close(server)
        self._all_closed.set()

    def show_history(self, server: str | None = None) -> None:
        if server is None:
            if not any(self.history.values()):
                self.echo("No command history available")
                return
            for name, lines in self.history.items():
                self._print_server_history(name, lines)
            return
        if server not in self.history:
            self.echo(f"Server '{server}' not found or no history available")
            return
        self._print_server_history(server, self.history[server])

    def _print_server_history(self, server: str, lines: list[str]) -> None:
        self.echo(f"== {server} ({len(lines)} lines) ==")
        for i, line in enumerate(lines, start=1):
            self.echo(f"{i:4} | {line}")

    async def handle_line(self, line: str) -> bool:
        """Act on one operator line. Returns False when the loop should end."""
        text = line.strip()
        if not text:
            return True

        if text.startswith("/history"):
            parts = text.split()
            self.show_history(parts[1] if len(parts) > 1 else None)
            return True
        if text.startswith("/close"):
            parts = text.split()
            if len(parts) != 2 or parts[1] not in self.channels:
                self.echo("Usage: /close <server> (open: " + ", ".join(self.active) + ")")
            else:
                self.close(parts[1])
            return True
        if text == "/detach":
            return False

        await self.broadcast(f"{text}\n".encode())
        return text != "exit"

    async def run_interactive(self, stdin_lines: AsyncIterable[str]) -> None:
        """Drive the operator loop until exit, /detach, EOF or every shell closed."""
        display = asyncio.create_task(self._display())
        lines = aiter(stdin_lines)
        try:
            while self.channels:
                next_line = asyncio.ensure_future(anext(lines))
                all_closed = asyncio.ensure_future(self._all_closed.wait())
                done, _ = await asyncio.wait(
                    {next_line, all_closed}, return_when=asyncio.FIRST_COMPLETED
                )
                all_closed.cancel()
                if next_line not in done:
                    next_line.cancel()
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await next_line
                    break
                try:
                    line = next_line.result()
                except StopAsyncIteration:
                    break
                if not await self.handle_line(line):
                    break
        finally:
            self.detach()
            display.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await display
            self.flush_output()


async def stdin_lines() -> AsyncIterable[str]:
    """Lines typed by the operator, read without blocking the event loop."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        yield line
