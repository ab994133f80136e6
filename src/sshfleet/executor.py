"""Bounded-concurrency task executor for sshfleet."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

from .config import ServerTarget
from .errors import Cancelled, ErrorKind, classify
from .events import CancelToken, OutputCallback, OutputEvent
from .retry import RetryPolicy, Sleep
from .session import Session

logger = logging.getLogger(__name__)


class ServerStatus(Enum):
    """Live status of a server's task."""

    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Outcome(Enum):
    """Final outcome recorded in a TaskResult."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class OperationKind(Enum):
    EXEC = "exec"
    SCRIPT_STEP = "script"
    TRANSFER_JOB = "transfer"
    FIREWALL_EDIT = "firewall"
    SHELL = "shell"


Operation = Callable[[Session], Awaitable[Any]]
SessionFactory = Callable[[ServerTarget], Awaitable[Session]]
StatusCallback = Callable[[str, ServerStatus], None]  # (server_name, status) -> None


@dataclass
class TaskSpec:
    """A unit of work: one operation against a set of servers."""

    servers: list[ServerTarget]
    operation: OperationKind
    op: Operation
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class TaskResult:
    """Per-server outcome of a run."""

    server: str
    outcome: Outcome
    attempts: int = 0
    duration: float = 0.0
    error_kind: ErrorKind | None = None
    message: str = ""
    detail: Any = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.SKIPPED)


@dataclass
class ServerState:
    """Runtime state for a server during a run."""

    target: ServerTarget
    status: ServerStatus = ServerStatus.PENDING
    output_lines: list[str] = field(default_factory=list)
    log_file: Path | None = None


def default_concurrency(server_count: int, thread_limit: int | None = None) -> int:
    """Worker count: one per server, capped by the thread limit or CPU count."""
    limit = thread_limit or os.cpu_count() or 4
    return max(1, min(server_count, limit))


class TaskExecutor:
    """Fans an operation out across servers with a fixed pool of workers.

    Every server yields exactly one TaskResult. Transient failures are
    retried per server according to the run's RetryPolicy; a failing server
    never stops the others. Work for the same server is serialized across
    overlapping runs on one executor.
    """

    def __init__(
        self,
        *,
        concurrency: int | None = None,
        thread_limit: int | None = None,
        known_hosts: str | None = None,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
        log_dir: Path | None = None,
        config_source: Path | None = None,
        session_factory: SessionFactory | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.concurrency = concurrency
        self.thread_limit = thread_limit
        self.known_hosts = known_hosts
        self.on_output = on_output
        self.on_status = on_status
        self.log_dir = log_dir
        self.config_source = config_source
        self.session_factory = session_factory or self._open_session
        self.states: dict[str, ServerState] = {}
        self._sleep = sleep
        self._server_locks: dict[str, asyncio.Lock] = {}
        self._run_log_dir: Path | None = None

    async def _open_session(self, target: ServerTarget) -> Session:
        return await Session.open(target, known_hosts=self.known_hosts, on_output=self._emit_output)

    def _setup_logging(self) -> None:
        """Set up a timestamped log directory for this run's output."""
        if self.log_dir is None:
            return
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._run_log_dir = self.log_dir / timestamp
        self._run_log_dir.mkdir(parents=True, exist_ok=True)

        # Copy the source config file to the log directory
        if self.config_source and self.config_source.exists():
            shutil.copy(self.config_source, self._run_log_dir / "config.yaml")

    def _emit_output(self, event: OutputEvent) -> None:
        """Record an output line for a server and forward it."""
        state = self.states.get(event.server)
        if state is not None:
            line = event.text if event.stream == "stdout" else f"STDERR: {event.text}"
            state.output_lines.append(line)

            # Write to log file
            if state.log_file:
                with open(state.log_file, "a") as f:
                    f.write(line + "\n")

        if self.on_output:
            self.on_output(event)

    def _emit_status(self, server: str, status: ServerStatus) -> None:
        if server in self.states:
            self.states[server].status = status
        if self.on_status:
            self.on_status(server, status)

    async def run_spec(self, spec: TaskSpec, cancel: CancelToken | None = None) -> dict[str, TaskResult]:
        return await self.run(spec.servers, spec.op, spec.retry, cancel=cancel, label=spec.operation.value)

    async def run(
        self,
        servers: Iterable[ServerTarget],
        op: Operation,
        retry: RetryPolicy | None = None,
        *,
        cancel: CancelToken | None = None,
        label: str = "task",
    ) -> dict[str, TaskResult]:
        """Run ``op`` on every server and return results keyed by server name."""
        retry = retry or RetryPolicy()
        cancel = cancel or CancelToken()

        # Duplicate names collapse to one task
        targets = list({target.name: target for target in servers}.values())
        if not targets:
            return {}

        self._setup_logging()
        for target in targets:
            log_file = self._run_log_dir / f"{target.name}.log" if self._run_log_dir else None
            self.states[target.name] = ServerState(target=target, log_file=log_file)
            self._emit_status(target.name, ServerStatus.PENDING)

        workers = self.concurrency or default_concurrency(len(targets), self.thread_limit)
        workers = min(workers, len(targets))
        logger.info("Starting %s with %d workers for %d servers", label, workers, len(targets))

        queue: asyncio.Queue[ServerTarget] = asyncio.Queue()
        for target in targets:
            queue.put_nowait(target)

        results: dict[str, TaskResult] = {}
        await asyncio.gather(
            *(self._worker(queue, op, retry, cancel, results) for _ in range(workers))
        )

        # Every server gets exactly one result, in input order
        return {target.name: results[target.name] for target in targets}

    async def _worker(
        self,
        queue: asyncio.Queue[ServerTarget],
        op: Operation,
        retry: RetryPolicy,
        cancel: CancelToken,
        results: dict[str, TaskResult],
    ) -> None:
        while True:
            try:
                target = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            if cancel.cancelled:
                results[target.name] = TaskResult(
                    target.name,
                    Outcome.CANCELLED,
                    error_kind=ErrorKind.CANCELLED,
                    message="not started",
                )
                self._emit_status(target.name, ServerStatus.CANCELLED)
                continue

            lock = self._server_locks.setdefault(target.name, asyncio.Lock())
            async with lock:
                results[target.name] = await self._run_server(target, op, retry, cancel)

    async def _run_server(
        self,
        target: ServerTarget,
        op: Operation,
        retry: RetryPolicy,
        cancel: CancelToken,
    ) -> TaskResult:
        started = time.monotonic()
        attempts = 0
        session: Session | None = None

        async def attempt() -> Any:
            nonlocal attempts, session
            attempts += 1
            if attempts > 1:
                self._emit_status(target.name, ServerStatus.RETRYING)
            cancel.check()

            if session is None or session.closed:
                self._emit_status(target.name, ServerStatus.CONNECTING)
                session = await self.session_factory(target)
            self._emit_status(target.name, ServerStatus.RUNNING)

            try:
                return await op(session)
            except Exception as e:
                # A dead connection must be reopened on the next attempt
                if classify(e) is ErrorKind.CONNECTION:
                    session.close()
                raise

        try:
            value = await retry.run(attempt, cancel=cancel, sleep=self._sleep, label=target.name)
        except Cancelled as e:
            self._emit_status(target.name, ServerStatus.CANCELLED)
            return TaskResult(
                target.name,
                Outcome.CANCELLED,
                attempts=attempts,
                duration=time.monotonic() - started,
                error_kind=ErrorKind.CANCELLED,
                message=str(e),
            )
        except Exception as e:
            kind = classify(e)
            self._emit_status(target.name, ServerStatus.FAILED)
            logger.error("%s failed on %s: %s", kind.value, target.name, e)
            return TaskResult(
                target.name,
                Outcome.FAILED,
                attempts=attempts,
                duration=time.monotonic() - started,
                error_kind=kind,
                message=str(e) or type(e).__name__,
                detail=getattr(e, "detail", None),
            )
        finally:
            if session is not None:
                session.close()

        self._emit_status(target.name, ServerStatus.SUCCESS)
        # e.g. a transfer whose every entry already existed
        skipped = getattr(value, "skipped", False) is True
        return TaskResult(
            target.name,
            Outcome.SKIPPED if skipped else Outcome.SUCCESS,
            attempts=attempts,
            duration=time.monotonic() - started,
            detail=value,
        )


def exit_code(results: dict[str, TaskResult]) -> int:
    """1 when any server failed or was cancelled, else 0."""
    return 0 if all(result.ok for result in results.values()) else 1


def summarize(results: dict[str, TaskResult]) -> str:
    """Human-readable summary table of a run."""
    lines = []
    width = max((len(name) for name in results), default=0)
    for name, result in results.items():
        line = f"{name:<{width}}  {result.outcome.value:<9}  attempts={result.attempts}  {result.duration:.1f}s"
        if result.error_kind is not None:
            line += f"  {result.error_kind.value}: {result.message}"
        lines.append(line)

    counts = {outcome: 0 for outcome in Outcome}
    for result in results.values():
        counts[result.outcome] += 1
    lines.append(
        f"{counts[Outcome.SUCCESS]} succeeded, {counts[Outcome.FAILED]} failed, "
        f"{counts[Outcome.SKIPPED]} skipped, {counts[Outcome.CANCELLED]} cancelled"
    )
    return "\n".join(lines)


__all__ = [
    "Operation",
    "OperationKind",
    "Outcome",
    "ServerState",
    "ServerStatus",
    "TaskExecutor",
    "TaskResult",
    "TaskSpec",
    "exit_code",
    "summarize",
]
