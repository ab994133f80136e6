"""Shared fakes: sessions whose "remote" filesystem is a local temp directory."""

import asyncio
from pathlib import Path

import pytest

from sshfleet.config import ServerTarget
from sshfleet.errors import CommandError, SSHConnectionError
from sshfleet.session import CommandResult
from sshfleet.transfer import LocalFiles


class FakeChannel:
    """Stands in for InteractiveChannel; tests push remote output with feed()."""

    def __init__(self, server: str):
        self.server = server
        self.written: list[bytes] = []
        self.closed = False
        self.exit_status = None
        self._incoming: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._incoming.put_nowait(data)

    async def write(self, data: bytes) -> None:
        self.written.append(data)

    def write_eof(self) -> None:
        pass

    async def read(self, size: int = 4096) -> bytes:
        data = await self._incoming.get()
        if not data:
            self.closed = True
        return data

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """A Session double.

    ``responses`` maps a command to a CommandResult, an exception, or a list
    of those consumed one per call. ``drop_after`` makes the next remote write
    raise SSHConnectionError once that many bytes were written.
    """

    def __init__(self, name: str = "web1", *, responses=None, drop_after=None):
        self.name = name
        self.target = ServerTarget(name=name, host=f"{name}.example.com")
        self.responses = dict(responses or {})
        self.commands: list[tuple[str, bool]] = []
        self.drop_after = drop_after
        self.reads = 0
        self.writes = 0
        self.channel = FakeChannel(name)
        self._closed = False
        self._files = LocalFiles()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def exec(self, command: str, sudo: bool = False, check: bool = True) -> CommandResult:
        self.commands.append((command, sudo))
        response = self.responses.get(command)
        if isinstance(response, list):
            response = response.pop(0) if response else None
        if isinstance(response, Exception):
            raise response
        result = response or CommandResult(command, 0, "", "")
        if check and result.exit_status != 0:
            raise CommandError(f"'{command}' exited with status {result.exit_status}", result=result)
        return result

    async def open_shell(self, command=None, term_type=None, term_size=None) -> FakeChannel:
        return self.channel

    async def stat_remote(self, path: str):
        return await self._files.stat(path)

    async def list_remote(self, path: str):
        return await self._files.list(path)

    async def makedirs_remote(self, path: str) -> None:
        await self._files.makedirs(path)

    async def read_remote_range(self, path: str, offset: int = 0, chunk_size: int = 65536):
        self.reads += 1
        async for chunk in self._files.read_range(path, offset, chunk_size):
            yield chunk

    async def write_remote_at(self, path: str, offset: int, chunks) -> int:
        self.writes += 1
        drop_after, self.drop_after = self.drop_after, None
        written = 0
        with open(path, "wb" if offset == 0 else "r+b") as f:
            f.seek(offset)
            async for chunk in chunks:
                f.write(chunk)
                written += len(chunk)
                if drop_after is not None and written >= drop_after:
                    raise SSHConnectionError("connection reset by peer")
        return written


@pytest.fixture
def remote_root(tmp_path: Path) -> Path:
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture
def local_root(tmp_path: Path) -> Path:
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


def target(name: str) -> ServerTarget:
    return ServerTarget(name=name, host=f"{name}.example.com")
