"""Tests for command execution on a Session with a mocked connection."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from sshfleet.config import ServerTarget
from sshfleet.errors import CommandError, SSHConnectionError
from sshfleet.session import Session, sudo_wrap


def _process(stdout=(), stderr=(), exit_status=0):
    proc = MagicMock()
    proc.stdout.readline = AsyncMock(side_effect=[f"{line}\n" for line in stdout] + [""])
    proc.stderr.readline = AsyncMock(side_effect=[f"{line}\n" for line in stderr] + [""])
    proc.wait = AsyncMock(return_value=MagicMock(exit_status=exit_status))
    return proc


def _connection(*procs):
    conn = MagicMock()
    contexts = []
    for proc in procs:
        cm = MagicMock()
        cm.__aenter__ = AsyncMock(return_value=proc)
        cm.__aexit__ = AsyncMock(return_value=False)
        contexts.append(cm)
    conn.create_process = MagicMock(side_effect=contexts)
    return conn


def test_sudo_wrap_quotes_command():
    assert sudo_wrap("echo 'hi'", nopasswd=True) == "sudo -n sh -c 'echo '\"'\"'hi'\"'\"''"
    assert sudo_wrap("ls", nopasswd=False) == "sudo -S -p '' sh -c ls"


@pytest.mark.asyncio
async def test_exec_streams_output_lines():
    events = []
    conn = _connection(_process(stdout=["one", "two"], stderr=["warn"]))
    session = Session(ServerTarget("web1", "h", user="root"), conn, on_output=events.append)

    result = await session.exec("uptime")

    assert result.exit_status == 0
    assert result.stdout == "one\ntwo"
    assert result.stderr == "warn"
    assert [(e.stream, e.text) for e in events] == [("stdout", "one"), ("stdout", "two"), ("stderr", "warn")]
    assert all(e.server == "web1" for e in events)


@pytest.mark.asyncio
async def test_exec_applies_work_dir():
    conn = _connection(_process())
    session = Session(ServerTarget("web1", "h", work_dir="/srv/app"), conn)

    await session.exec("make")

    assert conn.create_process.call_args.args[0] == "cd /srv/app && make"


@pytest.mark.asyncio
async def test_nonzero_exit_raises_unless_unchecked():
    conn = _connection(_process(stdout=["boom"], exit_status=2), _process(exit_status=2))
    session = Session(ServerTarget("web1", "h"), conn)

    with pytest.raises(CommandError) as excinfo:
        await session.exec("false")
    assert excinfo.value.result.exit_status == 2
    assert excinfo.value.result.output == "boom"

    result = await session.exec("false", check=False)
    assert result.exit_status == 2


@pytest.mark.asyncio
async def test_sudo_as_root_is_not_wrapped():
    conn = _connection(_process())
    session = Session(ServerTarget("web1", "h", user="root"), conn)

    await session.exec("apt update", sudo=True)

    assert conn.create_process.call_args.args[0] == "apt update"


@pytest.mark.asyncio
async def test_sudo_password_written_to_stdin():
    probe = _process(exit_status=1)
    command = _process()
    conn = _connection(probe, command)
    session = Session(ServerTarget("web1", "h", user="deploy", password="pw"), conn)

    await session.exec("systemctl restart nginx", sudo=True)

    sent = conn.create_process.call_args_list
    assert sent[0].args[0] == "sudo -n true"
    assert sent[1].args[0] == "sudo -S -p '' sh -c 'systemctl restart nginx'"
    command.stdin.write.assert_called_once_with("pw\n")
    assert session.capabilities.sudo_nopasswd is False


@pytest.mark.asyncio
async def test_sudo_without_password_fails():
    conn = _connection(_process(exit_status=1))
    session = Session(ServerTarget("web1", "h", user="deploy"), conn)

    with pytest.raises(CommandError, match="requires a password"):
        await session.exec("id", sudo=True)


@pytest.mark.asyncio
async def test_connection_loss_during_exec_is_transient():
    conn = MagicMock()
    conn.create_process = MagicMock(side_effect=ConnectionResetError(104, "Connection reset by peer"))
    session = Session(ServerTarget("web1", "h"), conn)

    with pytest.raises(SSHConnectionError):
        await session.exec("uptime")


def test_close_is_idempotent():
    conn = MagicMock()
    session = Session(ServerTarget("web1", "h"), conn)
    session.close()
    session.close()
    conn.close.assert_called_once()
    assert session.closed
