"""Resumable upload/download of files and directory trees over a Session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import posixpath
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterable, AsyncIterator, Protocol

from .errors import Cancelled, ErrorKind, PathMismatch, classify
from .events import CancelToken, ProgressCallback, ProgressEvent
from .retry import RetryPolicy, Sleep
from .session import DEFAULT_CHUNK_SIZE, FileStat, Session

logger = logging.getLogger(__name__)


class Direction(Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class PathKind(Enum):
    FILE = "file"
    DIRECTORY = "directory"


class EntryStatus(Enum):
    COPIED = "copied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class TransferEntry:
    """One file of a plan; ``relpath`` is "" for a single-file plan."""

    relpath: str
    size: int


@dataclass
class TransferPlan:
    """Validated source/destination pair and the files it implies."""

    direction: Direction
    kind: PathKind
    source: str
    destination: str
    entries: list[TransferEntry] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(entry.size for entry in self.entries)


@dataclass
class TransferOptions:
    force: bool = False
    resume: bool = False
    hide_progress: bool = False
    max_retry: int = 0
    chunk_size: int = DEFAULT_CHUNK_SIZE
    backoff_base: float = 1.0


@dataclass
class EntryOutcome:
    relpath: str
    status: EntryStatus
    bytes_copied: int = 0
    offset: int = 0
    attempts: int = 1
    error_kind: ErrorKind | None = None
    message: str = ""


@dataclass
class TransferResult:
    """Per-entry outcomes of one executed plan."""

    server: str
    plan: TransferPlan
    outcomes: list[EntryOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(outcome.status is not EntryStatus.FAILED for outcome in self.outcomes)

    @property
    def skipped(self) -> bool:
        """True when every entry was skipped and nothing was copied."""
        return bool(self.outcomes) and all(o.status is EntryStatus.SKIPPED for o in self.outcomes)

    @property
    def bytes_copied(self) -> int:
        return sum(outcome.bytes_copied for outcome in self.outcomes)

    def count(self, status: EntryStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    def summary(self) -> str:
        return (
            f"{self.count(EntryStatus.COPIED)} copied, "
            f"{self.count(EntryStatus.SKIPPED)} skipped, "
            f"{self.count(EntryStatus.FAILED)} failed "
            f"({self.bytes_copied} bytes)"
        )


class FileEndpoint(Protocol):
    """One side of a transfer: the local filesystem or a remote server."""

    def join(self, root: str, relpath: str) -> str: ...

    async def stat(self, path: str) -> FileStat | None: ...

    async def list(self, path: str) -> list[tuple[str, FileStat]]: ...

    async def makedirs(self, path: str) -> None: ...

    def read_range(self, path: str, offset: int, chunk_size: int) -> AsyncIterator[bytes]: ...

    async def write_at(self, path: str, offset: int, chunks: AsyncIterable[bytes]) -> int: ...


class LocalFiles:
    """Local filesystem counterpart of the Session's remote file primitives."""

    def join(self, root: str, relpath: str) -> str:
        if not relpath:
            return root
        return os.path.join(root, *relpath.split("/"))

    async def stat(self, path: str) -> FileStat | None:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        return FileStat(size=st.st_size, is_dir=os.path.isdir(path))

    async def list(self, path: str) -> list[tuple[str, FileStat]]:
        entries = []
        with os.scandir(path) as it:
            for entry in it:
                if entry.is_dir(follow_symlinks=False):
                    entries.append((entry.name, FileStat(size=0, is_dir=True)))
                elif entry.is_file(follow_symlinks=False):
                    size = entry.stat(follow_symlinks=False).st_size
                    entries.append((entry.name, FileStat(size=size, is_dir=False)))
                else:
                    logger.debug("Skipping non-regular entry %s", entry.path)
        return entries

    async def makedirs(self, path: str) -> None:
        os.makedirs(path, exist_ok=True)

    async def read_range(
        self, path: str, offset: int = 0, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        with open(path, "rb") as f:
            f.seek(offset)
            while True:
                data = f.read(chunk_size)
                if not data:
                    break
                yield data

    async def write_at(self, path: str, offset: int, chunks: AsyncIterable[bytes]) -> int:
        mode = "wb" if offset == 0 else "r+b"
        written = 0
        with open(path, mode) as f:
            f.seek(offset)
            async for chunk in chunks:
                f.write(chunk)
                written += len(chunk)
        return written


class RemoteFiles:
    """Adapts a Session's file primitives to the FileEndpoint shape."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def join(self, root: str, relpath: str) -> str:
        if not relpath:
            return root
        return posixpath.join(root, relpath)

    async def stat(self, path: str) -> FileStat | None:
        return await self.session.stat_remote(path)

    async def list(self, path: str) -> list[tuple[str, FileStat]]:
        return await self.session.list_remote(path)

    async def makedirs(self, path: str) -> None:
        await self.session.makedirs_remote(path)

    def read_range(
        self, path: str, offset: int = 0, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> AsyncIterator[bytes]:
        return self.session.read_remote_range(path, offset, chunk_size)

    async def write_at(self, path: str, offset: int, chunks: AsyncIterable[bytes]) -> int:
        return await self.session.write_remote_at(path, offset, chunks)


def _local_looks_like_dir(path: str) -> bool:
    return path.endswith(("/", os.sep)) or os.path.isdir(path)


def _remote_looks_like_dir(path: str) -> bool:
    return path.endswith("/")


def classify_paths(local: str, remote: str, direction: Direction) -> PathKind:
    """Check the path rules without touching the network.

    Both sides must look like directories (trailing separator, or an
    existing local directory) or both like files.
    """
    if direction is Direction.UPLOAD and not os.path.exists(local):
        raise PathMismatch(f"Local path '{local}' does not exist")

    local_is_dir = _local_looks_like_dir(local)
    remote_is_dir = _remote_looks_like_dir(remote)
    if local_is_dir != remote_is_dir:
        local_kind = "directory" if local_is_dir else "file"
        remote_kind = "directory" if remote_is_dir else "file"
        raise PathMismatch(
            f"Cannot transfer between local {local_kind} '{local}' and remote {remote_kind} "
            f"'{remote}': use a trailing '/' on both sides for directories"
        )
    return PathKind.DIRECTORY if local_is_dir else PathKind.FILE


def endpoints(session: Session, direction: Direction) -> tuple[FileEndpoint, FileEndpoint]:
    """Return (source, destination) endpoints for ``direction``."""
    local, remote = LocalFiles(), RemoteFiles(session)
    if direction is Direction.UPLOAD:
        return local, remote
    return remote, local


async def plan(session: Session, local: str, remote: str, direction: Direction) -> TransferPlan:
    """Validate paths against both sides and enumerate what to copy."""
    kind = classify_paths(local, remote, direction)
    source_fs, destination_fs = endpoints(session, direction)
    source, destination = (local, remote) if direction is Direction.UPLOAD else (remote, local)
    want_dir = kind is PathKind.DIRECTORY

    source_stat = await source_fs.stat(source)
    if source_stat is None:
        raise PathMismatch(f"Source '{source}' does not exist")
    if source_stat.is_dir != want_dir:
        raise PathMismatch(f"Source '{source}' is not a {kind.value}")

    destination_stat = await destination_fs.stat(destination)
    if destination_stat is not None and destination_stat.is_dir != want_dir:
        raise PathMismatch(f"Destination '{destination}' exists and is not a {kind.value}")

    result = TransferPlan(direction=direction, kind=kind, source=source, destination=destination)
    if not want_dir:
        result.entries.append(TransferEntry("", source_stat.size))
        return result

    async def visit(relpath: str) -> None:
        listing = await source_fs.list(source_fs.join(source, relpath))
        for name, st in sorted(listing, key=lambda item: item[0]):
            child = f"{relpath}/{name}" if relpath else name
            if st.is_dir:
                result.directories.append(child)
                await visit(child)
            else:
                result.entries.append(TransferEntry(child, st.size))

    await visit("")
    return result


class TransferEngine:
    """Executes TransferPlans over one Session."""

    def __init__(
        self,
        session: Session,
        options: TransferOptions | None = None,
        *,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session = session
        self.options = options or TransferOptions()
        self.on_progress = on_progress
        self.cancel = cancel
        self._sleep = sleep
        self._retry = RetryPolicy(
            max_retry=self.options.max_retry,
            base_delay=self.options.backoff_base,
        )

    async def execute(self, transfer_plan: TransferPlan) -> TransferResult:
        source_fs, destination_fs = endpoints(self.session, transfer_plan.direction)
        result = TransferResult(server=self.session.name, plan=transfer_plan)

        if transfer_plan.kind is PathKind.DIRECTORY:
            await destination_fs.makedirs(transfer_plan.destination)
            for relpath in transfer_plan.directories:
                await destination_fs.makedirs(destination_fs.join(transfer_plan.destination, relpath))

        total = len(transfer_plan.entries)
        for index, entry in enumerate(transfer_plan.entries):
            if self.cancel is not None:
                self.cancel.check()
            outcome = await self._transfer_entry(
                transfer_plan, entry, index, total, source_fs, destination_fs
            )
            result.outcomes.append(outcome)

        logger.info(
            "%s %s -> %s on %s: %s",
            transfer_plan.direction.value.capitalize(),
            transfer_plan.source,
            transfer_plan.destination,
            self.session.name,
            result.summary(),
        )
        return result

    async def _transfer_entry(
        self,
        transfer_plan: TransferPlan,
        entry: TransferEntry,
        index: int,
        total: int,
        source_fs: FileEndpoint,
        destination_fs: FileEndpoint,
    ) -> EntryOutcome:
        source = source_fs.join(transfer_plan.source, entry.relpath)
        destination = destination_fs.join(transfer_plan.destination, entry.relpath)
        attempts = 0
        started = False

        async def attempt() -> EntryOutcome:
            nonlocal attempts, started
            attempts += 1
            decision = await self._start_offset(destination_fs, destination, entry, continuing=started)
            if isinstance(decision, EntryOutcome):
                return decision

            offset = decision
            started = True
            async with contextlib.aclosing(
                source_fs.read_range(source, offset, self.options.chunk_size)
            ) as chunks:
                async with contextlib.aclosing(
                    self._track(chunks, entry, source, index, total, offset)
                ) as tracked:
                    written = await destination_fs.write_at(destination, offset, tracked)
            return EntryOutcome(entry.relpath, EntryStatus.COPIED, bytes_copied=written, offset=offset)

        try:
            outcome = await self._retry.run(
                attempt,
                cancel=self.cancel,
                sleep=self._sleep,
                label=f"Transfer of '{source}' on {self.session.name}",
            )
        except Cancelled:
            raise
        except Exception as e:
            logger.error("Transfer of '%s' on %s failed: %s", source, self.session.name, e)
            return EntryOutcome(
                entry.relpath,
                EntryStatus.FAILED,
                attempts=attempts,
                error_kind=classify(e),
                message=str(e),
            )

        outcome.attempts = attempts
        return outcome

    async def _start_offset(
        self,
        destination_fs: FileEndpoint,
        destination: str,
        entry: TransferEntry,
        continuing: bool,
    ) -> int | EntryOutcome:
        """Decide where copying starts.

        Returns the byte offset, or a SKIPPED outcome when nothing is to be
        copied. ``continuing`` means an earlier attempt of this entry already
        wrote part of the destination.
        """
        existing = await destination_fs.stat(destination)
        if existing is None:
            return 0
        if existing.is_dir:
            raise PathMismatch(f"Destination '{destination}' is a directory")
        if self.options.force:
            return 0
        if self.options.resume or continuing:
            if existing.size >= entry.size:
                return EntryOutcome(
                    entry.relpath, EntryStatus.SKIPPED, message=f"'{destination}' is up to date"
                )
            return existing.size
        return EntryOutcome(
            entry.relpath,
            EntryStatus.SKIPPED,
            error_kind=ErrorKind.ALREADY_EXISTS,
            message=f"'{destination}' already exists",
        )

    async def _track(
        self,
        chunks: AsyncIterator[bytes],
        entry: TransferEntry,
        source: str,
        index: int,
        total: int,
        offset: int,
    ) -> AsyncIterator[bytes]:
        """Pass chunks through; report progress and honour cancellation after each write."""
        done = offset
        name = entry.relpath or os.path.basename(source.rstrip("/"))
        async for chunk in chunks:
            yield chunk
            done += len(chunk)
            if self.on_progress is not None and not self.options.hide_progress:
                self.on_progress(
                    ProgressEvent(self.session.name, name, index, total, done, entry.size)
                )
            if self.cancel is not None:
                self.cancel.check()


async def transfer(
    session: Session,
    local: str,
    remote: str,
    direction: Direction,
    options: TransferOptions | None = None,
    *,
    on_progress: ProgressCallback | None = None,
    cancel: CancelToken | None = None,
) -> TransferResult:
    """Plan and execute one transfer."""
    transfer_plan = await plan(session, local, remote, direction)
    engine = TransferEngine(session, options, on_progress=on_progress, cancel=cancel)
    return await engine.execute(transfer_plan)


def add_server_name(local_path: str, server: str) -> str:
    """Suffix a local path with the server name so downloads don't collide."""
    trailing = local_path.endswith(("/", os.sep))
    stripped = local_path.rstrip("/" + os.sep)
    head, tail = os.path.split(stripped)
    if trailing:
        tail = f"{tail}_{server}"
        return os.path.join(head, tail) + os.sep
    stem, ext = os.path.splitext(tail)
    return os.path.join(head, f"{stem}_{server}{ext}")
