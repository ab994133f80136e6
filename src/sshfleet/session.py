"""SSH session: one authenticated connection to one server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import shutil
import stat
import sys
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator

import asyncssh

from .auth import credential_chain
from .config import ServerTarget
from .errors import (
    AuthExhausted,
    CommandError,
    ErrorKind,
    SSHConnectionError,
    classify,
)
from .events import OutputCallback, OutputEvent

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class CommandResult:
    """Outcome of one remote command."""

    command: str
    exit_status: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        """stdout and stderr joined, for error messages."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass
class SessionCapabilities:
    """What the session negotiated with the server."""

    is_root: bool
    sudo_nopasswd: bool | None = None  # None until probed


@dataclass(frozen=True)
class FileStat:
    size: int
    is_dir: bool


def sudo_wrap(command: str, *, nopasswd: bool) -> str:
    """Wrap ``command`` for privilege elevation through ``sh -c``."""
    quoted = shlex.quote(command)
    if nopasswd:
        return f"sudo -n sh -c {quoted}"
    return f"sudo -S -p '' sh -c {quoted}"


class InteractiveChannel:
    """A pseudo-terminal channel streaming raw bytes both ways."""

    def __init__(self, server: str, process: asyncssh.SSHClientProcess) -> None:
        self.server = server
        self._process = process
        self._closed = False

    async def write(self, data: bytes) -> None:
        self._process.stdin.write(data)
        await self._process.stdin.drain()

    def write_eof(self) -> None:
        self._process.stdin.write_eof()

    async def read(self, size: int = 4096) -> bytes:
        """Read the next bytes from the remote side; b"" once it closed."""
        data = await self._process.stdout.read(size)
        if not data:
            self._closed = True
        return data

    def resize(self, cols: int, rows: int) -> None:
        self._process.change_terminal_size(cols, rows)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._process.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exit_status(self) -> int | None:
        return self._process.exit_status


class Session:
    """An authenticated connection exposing exec, file ranges and shells."""

    def __init__(
        self,
        target: ServerTarget,
        conn: asyncssh.SSHClientConnection,
        *,
        on_output: OutputCallback | None = None,
        elevation_password: str | None = None,
    ) -> None:
        self.target = target
        self.capabilities = SessionCapabilities(is_root=target.user == "root")
        self.on_output = on_output
        self._conn = conn
        self._elevation_password = elevation_password
        self._sftp: asyncssh.SFTPClient | None = None
        self._closed = False

    @classmethod
    async def open(
        cls,
        target: ServerTarget,
        *,
        known_hosts: str | None = None,
        on_output: OutputCallback | None = None,
        elevation_password: str | None = None,
    ) -> "Session":
        """Connect to ``target`` trying each configured credential in order."""
        credentials = credential_chain(target)
        if not credentials:
            raise AuthExhausted(f"{target.name}: no ssh_key or password configured")

        failures: list[str] = []
        for credential in credentials:
            try:
                options = credential.connect_options()
            except (OSError, asyncssh.KeyImportError) as e:
                failures.append(f"{credential.describe()}: {e}")
                continue

            logger.info("Connecting to %s (%s) with %s", target.name, target, credential.describe())
            try:
                conn = await asyncssh.connect(
                    target.host,
                    port=target.port,
                    username=target.user,
                    known_hosts=known_hosts,
                    connect_timeout=target.timeout,
                    **options,
                )
            except asyncssh.PermissionDenied as e:
                logger.debug("%s rejected %s: %s", target.name, credential.describe(), e)
                failures.append(f"{credential.describe()}: {e.reason}")
                continue
            except (asyncssh.Error, OSError) as e:
                if classify(e) is ErrorKind.CONNECTION:
                    raise SSHConnectionError(f"{target.name}: {e}") from e
                raise

            logger.info("Connected to %s", target.name)
            return cls(
                target,
                conn,
                on_output=on_output,
                elevation_password=elevation_password,
            )

        raise AuthExhausted(f"{target.name}: authentication failed ({'; '.join(failures)})")

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def name(self) -> str:
        return self.target.name

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the transport. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._sftp is not None:
            self._sftp.exit()
            self._sftp = None
        self._conn.close()
        logger.debug("Closed session to %s", self.name)

    # Command execution ---------------------------------------------------
    async def exec(self, command: str, sudo: bool = False, check: bool = True) -> CommandResult:
        """Run ``command`` and return its result.

        Raises CommandError on a non-zero exit unless ``check`` is False.
        """
        full_command = command
        if self.target.work_dir:
            full_command = f"cd {shlex.quote(self.target.work_dir)} && {command}"

        stdin_data = None
        if sudo and not self.capabilities.is_root:
            secret = await self._sudo_secret()
            full_command = sudo_wrap(full_command, nopasswd=secret is None)
            if secret is not None:
                stdin_data = secret + "\n"

        logger.info("Executing '%s' on %s%s", command, self.name, " (sudo)" if sudo else "")
        result = await self._run(full_command, stdin_data)
        result.command = command

        if check and result.exit_status != 0:
            raise CommandError(
                f"'{command}' exited with status {result.exit_status} on {self.name}",
                result=result,
            )
        return result

    async def _sudo_secret(self) -> str | None:
        """Return the password sudo needs, or None when it needs none."""
        if self.capabilities.sudo_nopasswd is None:
            probe = await self._run("sudo -n true", None, emit=False)
            self.capabilities.sudo_nopasswd = probe.exit_status == 0
            logger.debug(
                "sudo on %s %s a password",
                self.name,
                "does not need" if self.capabilities.sudo_nopasswd else "needs",
            )
        if self.capabilities.sudo_nopasswd:
            return None

        secret = self._elevation_password or self.target.password
        if not secret:
            raise CommandError(f"sudo on {self.name} requires a password and none is configured")
        return secret

    async def _run(self, command: str, stdin_data: str | None, emit: bool = True) -> CommandResult:
        try:
            async with self._conn.create_process(
                command, encoding="utf-8", errors="replace"
            ) as proc:
                if stdin_data:
                    proc.stdin.write(stdin_data)
                proc.stdin.write_eof()

                stdout, stderr = await asyncio.gather(
                    self._read_stream(proc.stdout, "stdout", emit),
                    self._read_stream(proc.stderr, "stderr", emit),
                )
                completed = await proc.wait()
        except (asyncssh.Error, OSError) as e:
            if classify(e) is ErrorKind.CONNECTION:
                raise SSHConnectionError(f"{self.name}: {e}") from e
            raise

        # exit_status is None when the command was killed by a signal
        exit_status = completed.exit_status if completed.exit_status is not None else -1
        return CommandResult(command, exit_status, stdout, stderr)

    async def _read_stream(self, stream: asyncssh.SSHReader, name: str, emit: bool) -> str:
        lines = []
        while True:
            line = await stream.readline()
            if not line:
                break
            line = line.rstrip("\r\n")
            lines.append(line)
            if emit and self.on_output:
                self.on_output(OutputEvent(self.name, name, line))
        return "\n".join(lines)

    # Interactive shells ---------------------------------------------------
    async def open_shell(
        self,
        command: str | None = None,
        term_type: str | None = None,
        term_size: tuple[int, int] | None = None,
    ) -> InteractiveChannel:
        """Open a pseudo-terminal running ``command`` (login shell when None)."""
        cols, rows = term_size or shutil.get_terminal_size()
        process = await self._conn.create_process(
            command,
            term_type=term_type or os.environ.get("TERM", "xterm"),
            term_size=(cols, rows),
            encoding=None,
            stderr=asyncssh.STDOUT,
        )
        logger.info("Opened shell on %s", self.name)
        return InteractiveChannel(self.name, process)

    async def interactive(self, command: str | None = None) -> int:
        """Hand the local terminal to a remote shell until it exits."""
        import termios
        import tty

        channel = await self.open_shell(command)
        loop = asyncio.get_running_loop()
        fd = sys.stdin.fileno()
        saved = termios.tcgetattr(fd)
        inbox: asyncio.Queue[bytes] = asyncio.Queue()

        async def forward_input() -> None:
            while True:
                data = await inbox.get()
                if not data:
                    channel.write_eof()
                    return
                await channel.write(data)

        tty.setraw(fd)
        loop.add_reader(fd, lambda: inbox.put_nowait(os.read(fd, 1024)))
        forward = asyncio.create_task(forward_input())
        try:
            while True:
                data = await channel.read()
                if not data:
                    break
                sys.stdout.buffer.write(data)
                sys.stdout.buffer.flush()
        finally:
            forward.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await forward
            loop.remove_reader(fd)
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
            channel.close()

        return channel.exit_status or 0

    # Remote file primitives ---------------------------------------------
    async def _sftp_client(self) -> asyncssh.SFTPClient:
        if self._sftp is None:
            self._sftp = await self._conn.start_sftp_client()
        return self._sftp

    async def stat_remote(self, path: str) -> FileStat | None:
        sftp = await self._sftp_client()
        try:
            attrs = await sftp.stat(path)
        except asyncssh.SFTPNoSuchFile:
            return None
        return FileStat(size=attrs.size or 0, is_dir=stat.S_ISDIR(attrs.permissions or 0))

    async def list_remote(self, path: str) -> list[tuple[str, FileStat]]:
        """Directory entries with their type; symlinks and specials are left out."""
        sftp = await self._sftp_client()
        entries = []
        for name in await sftp.readdir(path):
            if name.filename in (".", ".."):
                continue
            mode = name.attrs.permissions or 0
            if stat.S_ISDIR(mode) or stat.S_ISREG(mode):
                entries.append(
                    (name.filename, FileStat(size=name.attrs.size or 0, is_dir=stat.S_ISDIR(mode)))
                )
            else:
                logger.debug("Skipping non-regular entry %s/%s on %s", path, name.filename, self.name)
        return entries

    async def makedirs_remote(self, path: str) -> None:
        sftp = await self._sftp_client()
        await sftp.makedirs(path, exist_ok=True)

    async def read_remote_range(
        self, path: str, offset: int = 0, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        """Yield the remote file's bytes from ``offset`` in chunks."""
        sftp = await self._sftp_client()
        async with sftp.open(path, "rb") as f:
            position = offset
            while True:
                data = await f.read(chunk_size, position)
                if not data:
                    break
                position += len(data)
                yield data

    async def write_remote_at(self, path: str, offset: int, chunks: AsyncIterable[bytes]) -> int:
        """Write ``chunks`` into the remote file starting at ``offset``.

        Offset 0 truncates the file first. Returns the number of bytes written.
        """
        sftp = await self._sftp_client()
        mode = "wb" if offset == 0 else "r+b"
        position = offset
        async with sftp.open(path, mode) as f:
            async for chunk in chunks:
                await f.write(chunk, position)
                position += len(chunk)
        return position - offset
