"""Tests for the task executor."""

import asyncio

import pytest

from conftest import FakeSession, target
from sshfleet.errors import AuthExhausted, CommandError, ErrorKind, SSHConnectionError
from sshfleet.events import CancelToken, OutputEvent
from sshfleet.executor import (
    OperationKind,
    Outcome,
    ServerStatus,
    TaskExecutor,
    TaskResult,
    TaskSpec,
    default_concurrency,
    exit_code,
    summarize,
)
from sshfleet.retry import RetryPolicy
from sshfleet.session import CommandResult


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class SessionFactory:
    """Hands out FakeSessions; ``failures`` lists exceptions to raise per server first."""

    def __init__(self, failures=None, responses=None):
        self.failures = {name: list(errors) for name, errors in (failures or {}).items()}
        self.responses = responses or {}
        self.opened: list[FakeSession] = []

    async def __call__(self, server):
        pending = self.failures.get(server.name)
        if pending:
            raise pending.pop(0)
        session = FakeSession(server.name, responses=self.responses.get(server.name))
        self.opened.append(session)
        return session


async def uptime(session):
    return await session.exec("uptime")


@pytest.mark.asyncio
async def test_transient_failure_retried_on_one_server():
    factory = SessionFactory(failures={"b": [SSHConnectionError("connection refused")]})
    sleep = FakeSleep()
    statuses = []
    executor = TaskExecutor(
        session_factory=factory, sleep=sleep, on_status=lambda name, status: statuses.append((name, status))
    )

    results = await executor.run([target("a"), target("b")], uptime, RetryPolicy(max_retry=2, base_delay=1.0))

    assert results["a"].outcome is Outcome.SUCCESS
    assert results["a"].attempts == 1
    assert results["b"].outcome is Outcome.SUCCESS
    assert results["b"].attempts == 2
    assert sleep.delays == [1.0]
    assert ("b", ServerStatus.RETRYING) in statuses
    assert isinstance(results["a"].detail, CommandResult)
    assert exit_code(results) == 0


@pytest.mark.asyncio
async def test_unreachable_server_fails_after_its_retries():
    factory = SessionFactory(failures={"b": [SSHConnectionError("connection refused")] * 2})
    executor = TaskExecutor(session_factory=factory, sleep=FakeSleep())

    results = await executor.run([target("a"), target("b")], uptime, RetryPolicy(max_retry=1))

    assert results["a"].outcome is Outcome.SUCCESS
    assert results["b"].outcome is Outcome.FAILED
    assert results["b"].error_kind is ErrorKind.CONNECTION
    assert results["b"].attempts == 2


@pytest.mark.asyncio
async def test_one_result_per_server_and_failures_stay_isolated():
    factory = SessionFactory(
        failures={"b": [AuthExhausted("no credential accepted")]},
        responses={"c": {"uptime": CommandResult("uptime", 1, "", "boom")}},
    )
    executor = TaskExecutor(session_factory=factory, sleep=FakeSleep())
    servers = [target("a"), target("b"), target("c"), target("a")]

    results = await executor.run(servers, uptime, RetryPolicy(max_retry=3))

    assert list(results) == ["a", "b", "c"]
    assert results["a"].ok
    assert results["b"].outcome is Outcome.FAILED
    assert results["b"].error_kind is ErrorKind.AUTH_EXHAUSTED
    assert results["b"].attempts == 1
    assert results["c"].error_kind is ErrorKind.COMMAND
    assert results["c"].attempts == 1
    assert exit_code(results) == 1


@pytest.mark.asyncio
async def test_retries_exhausted():
    factory = SessionFactory(failures={"a": [SSHConnectionError("refused")] * 3})
    sleep = FakeSleep()
    executor = TaskExecutor(session_factory=factory, sleep=sleep)

    results = await executor.run([target("a")], uptime, RetryPolicy(max_retry=2, base_delay=0.5))

    assert results["a"].outcome is Outcome.FAILED
    assert results["a"].error_kind is ErrorKind.CONNECTION
    assert results["a"].attempts == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_session_reused_across_retries_and_closed():
    calls = []

    async def flaky(session):
        calls.append(session)
        if len(calls) == 1:
            raise CommandError("transient command failure")
        return "done"

    factory = SessionFactory()
    executor = TaskExecutor(session_factory=factory, sleep=FakeSleep())
    policy = RetryPolicy(max_retry=1, transient=frozenset({ErrorKind.COMMAND}))

    results = await executor.run([target("a")], flaky, policy)

    assert results["a"].detail == "done"
    assert calls[0] is calls[1]
    assert len(factory.opened) == 1
    assert factory.opened[0].closed


@pytest.mark.asyncio
async def test_connection_error_reopens_session():
    calls = []

    async def drops_once(session):
        calls.append(session)
        if len(calls) == 1:
            raise SSHConnectionError("connection lost")
        return "ok"

    factory = SessionFactory()
    executor = TaskExecutor(session_factory=factory, sleep=FakeSleep())

    results = await executor.run([target("a")], drops_once, RetryPolicy(max_retry=1))

    assert results["a"].ok
    assert len(factory.opened) == 2
    assert all(session.closed for session in factory.opened)


@pytest.mark.asyncio
async def test_cancel_before_run_marks_everything_cancelled():
    cancel = CancelToken()
    cancel.cancel()
    factory = SessionFactory()
    executor = TaskExecutor(session_factory=factory)

    results = await executor.run([target("a"), target("b")], uptime, cancel=cancel)

    assert [r.outcome for r in results.values()] == [Outcome.CANCELLED, Outcome.CANCELLED]
    assert factory.opened == []
    assert exit_code(results) == 1


@pytest.mark.asyncio
async def test_cancel_stops_dispatch():
    cancel = CancelToken()

    async def cancel_after_first(session):
        cancel.cancel()
        return "ran"

    executor = TaskExecutor(concurrency=1, session_factory=SessionFactory())

    results = await executor.run([target("a"), target("b"), target("c")], cancel_after_first, cancel=cancel)

    assert results["a"].outcome is Outcome.SUCCESS
    assert results["b"].outcome is Outcome.CANCELLED
    assert results["c"].outcome is Outcome.CANCELLED
    assert results["b"].error_kind is ErrorKind.CANCELLED


@pytest.mark.asyncio
async def test_concurrency_bounded_by_worker_count():
    running = 0
    peak = 0

    async def slow(session):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    executor = TaskExecutor(concurrency=2, session_factory=SessionFactory())

    results = await executor.run([target(f"s{i}") for i in range(6)], slow)

    assert len(results) == 6
    assert peak == 2


@pytest.mark.asyncio
async def test_overlapping_runs_serialize_per_server():
    active: dict[str, int] = {}
    overlap = []

    async def exclusive(session):
        active[session.name] = active.get(session.name, 0) + 1
        if active[session.name] > 1:
            overlap.append(session.name)
        await asyncio.sleep(0.01)
        active[session.name] -= 1

    executor = TaskExecutor(session_factory=SessionFactory())

    await asyncio.gather(
        executor.run([target("a"), target("b")], exclusive),
        executor.run([target("a")], exclusive),
    )

    assert overlap == []


@pytest.mark.asyncio
async def test_run_spec():
    executor = TaskExecutor(session_factory=SessionFactory())
    spec = TaskSpec(servers=[target("a")], operation=OperationKind.EXEC, op=uptime)

    results = await executor.run_spec(spec)

    assert results["a"].ok


@pytest.mark.asyncio
async def test_output_written_to_per_server_log(tmp_path):
    async def factory(server):
        return FakeSession(server.name)

    async def talk(session):
        executor._emit_output(OutputEvent(session.name, "stdout", "hello"))
        executor._emit_output(OutputEvent(session.name, "stderr", "oops"))

    seen = []
    executor = TaskExecutor(session_factory=factory, log_dir=tmp_path / "logs", on_output=seen.append)

    await executor.run([target("web1")], talk)

    [run_dir] = (tmp_path / "logs").iterdir()
    assert (run_dir / "web1.log").read_text() == "hello\nSTDERR: oops\n"
    assert executor.states["web1"].output_lines == ["hello", "STDERR: oops"]
    assert len(seen) == 2


def test_default_concurrency():
    assert default_concurrency(3, thread_limit=8) == 3
    assert default_concurrency(50, thread_limit=8) == 8
    assert default_concurrency(0, thread_limit=8) == 1


def test_summarize():
    results = {
        "web1": TaskResult("web1", Outcome.SUCCESS, attempts=1),
        "db": TaskResult("db", Outcome.FAILED, attempts=3, error_kind=ErrorKind.CONNECTION, message="refused"),
    }
    text = summarize(results)
    assert "ConnectionError: refused" in text
    assert text.splitlines()[-1] == "1 succeeded, 1 failed, 0 skipped, 0 cancelled"
