"""TUI dashboard for sshfleet runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

from rich.markup import escape
from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker

from .config import ServerTarget
from .console import format_size
from .events import CancelToken, OutputCallback, OutputEvent, ProgressCallback, ProgressEvent
from .executor import ServerStatus, StatusCallback, TaskResult

STATUS_ICONS = {
    ServerStatus.PENDING: ("…", "dim"),
    ServerStatus.CONNECTING: ("⇄", "yellow"),
    ServerStatus.RUNNING: ("▶", "yellow"),
    ServerStatus.RETRYING: ("↻", "orange1"),
    ServerStatus.SUCCESS: ("✔", "green"),
    ServerStatus.FAILED: ("✘", "red"),
    ServerStatus.CANCELLED: ("■", "magenta"),
}

FINISHED = (ServerStatus.SUCCESS, ServerStatus.FAILED, ServerStatus.CANCELLED)

# The job gets the dashboard's callbacks and returns the executor's results
Job = Callable[[OutputCallback, StatusCallback, ProgressCallback], Awaitable[dict[str, TaskResult]]]


class ServerPanel(Static):
    """A panel displaying status and output for a single server."""

    status: reactive[ServerStatus] = reactive(ServerStatus.PENDING)
    progress: reactive[str] = reactive("")

    def __init__(self, target: ServerTarget, **kwargs) -> None:
        super().__init__(**kwargs)
        self.target = target

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.target.name}")
        yield RichLog(
            id=f"log-{self.target.name}",
            highlight=True,
            markup=True,
            wrap=True,
            auto_scroll=True,
        )

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        header = f"[{color}]{icon}[/] [{color}][bold]{self.target.name}[/bold][/] [{color}]{self.target}[/]"
        if self.progress:
            header += f" [dim]{escape(self.progress)}[/]"
        return header

    def _refresh_header(self) -> None:
        if not self.is_mounted:
            return
        header = self.query_one(f"#header-{self.target.name}", Label)
        header.update(self._get_header())

    def watch_status(self, status: ServerStatus) -> None:
        self._refresh_header()

    def watch_progress(self, progress: str) -> None:
        self._refresh_header()

    def append_output(self, event: OutputEvent) -> None:
        log = self.query_one(f"#log-{self.target.name}", RichLog)
        text = escape(event.text)
        if event.stream == "stderr":
            log.write(f"[red]STDERR: {text}[/red]")
        elif text.startswith("$ "):
            log.write(f"[bold cyan]{text}[/bold cyan]")
        else:
            log.write(text)


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        return (
            f"Progress: {self.completed}/{self.total} servers done, {self.failed} failed"
            f" | {status} | Press 'q' to quit"
        )


@dataclass
class ServerOutput(Message):
    event: OutputEvent


@dataclass
class ServerStatusChange(Message):
    server: str
    status: ServerStatus


@dataclass
class ServerProgress(Message):
    event: ProgressEvent


class Dashboard(App):
    """One panel per server, fed by the executor's callbacks."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    ServerPanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    ServerPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    ServerPanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(
        self,
        servers: list[ServerTarget],
        job: Job,
        cancel: CancelToken,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.servers = servers
        self.job = job
        self.cancel = cancel
        self.panels: dict[str, ServerPanel] = {}
        self.results: dict[str, TaskResult] = {}
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        for target in self.servers:
            panel = ServerPanel(target, id=f"panel-{target.name}")
            self.panels[target.name] = panel
            yield panel

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.servers)

        # The job runs its own event loop in a worker thread
        self._worker = self.run_worker(self._run_job(), exclusive=True, thread=True)

    async def _run_job(self) -> None:
        self.results = await self.job(self._on_output, self._on_status, self._on_progress)

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        if event.worker == self._worker and event.state in (
            event.worker.state.SUCCESS,
            event.worker.state.ERROR,
        ):
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.running = False

    # Callbacks run on the worker thread; post_message hands them to the UI thread
    def _on_output(self, event: OutputEvent) -> None:
        self.post_message(ServerOutput(event))

    def _on_status(self, server: str, status: ServerStatus) -> None:
        self.post_message(ServerStatusChange(server, status))

    def _on_progress(self, event: ProgressEvent) -> None:
        self.post_message(ServerProgress(event))

    def on_server_output(self, message: ServerOutput) -> None:
        panel = self.panels.get(message.event.server)
        if panel is not None:
            panel.append_output(message.event)

    def on_server_progress(self, message: ServerProgress) -> None:
        event = message.event
        panel = self.panels.get(event.server)
        if panel is not None:
            panel.progress = (
                f"[{event.entry_index + 1}/{event.total_entries}] {event.entry} "
                f"{format_size(event.bytes_done)}/{format_size(event.bytes_total)}"
            )

    def on_server_status_change(self, message: ServerStatusChange) -> None:
        panel = self.panels.get(message.server)
        if panel is not None:
            panel.status = message.status

        if message.status in FINISHED:
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.completed += 1
            if message.status is not ServerStatus.SUCCESS:
                status_bar.failed += 1

    async def action_quit(self) -> None:
        # Let workers stop at their next checkpoint
        self.cancel.cancel()
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
