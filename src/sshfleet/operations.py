"""Operations the executor dispatches per server.

Each builder returns a coroutine function taking a Session. Results are
returned as the TaskResult detail; failures raise so the executor can
classify and, for transient kinds, retry them.
"""

from __future__ import annotations

from dataclasses import replace

from .errors import ActionsFailed, Cancelled, ErrorKind, SSHConnectionError, TransferFailed
from .events import CancelToken, ProgressCallback
from .executor import Operation, OperationKind
from .firewall import FirewallEdit, UfwBackend
from .script import ActionResult, ActionState, ScriptDef, ScriptRunner
from .session import CommandResult, Session
from .transfer import (
    Direction,
    EntryStatus,
    TransferOptions,
    TransferResult,
    add_server_name,
    transfer,
)


def exec_op(command: str, *, sudo: bool = False) -> tuple[OperationKind, Operation]:
    async def run(session: Session) -> CommandResult:
        return await session.exec(command, sudo=sudo)

    return OperationKind.EXEC, run


def script_op(
    script: ScriptDef,
    actions: list[str],
    *,
    on_progress: ProgressCallback | None = None,
    cancel: CancelToken | None = None,
    hide_progress: bool = False,
) -> tuple[OperationKind, Operation]:
    """Run the named actions; unknown names fail here, before any connection.

    When the executor retries a server, actions that already completed there
    are not run again.
    """
    script.validate_actions(actions)
    completed: dict[str, dict[str, ActionResult]] = {}

    async def run(session: Session) -> list[ActionResult]:
        done = completed.setdefault(session.name, {})
        remaining = [name for name in actions if name not in done]
        fresh: dict[str, ActionResult] = {}
        if remaining:
            runner = ScriptRunner(script, on_progress=on_progress, cancel=cancel, hide_progress=hide_progress)
            for result in await runner.run(session, remaining):
                fresh[result.name] = result
                if result.ok:
                    done[result.name] = result
        results = [done.get(name) or fresh[name] for name in actions]

        if any(r.state is ActionState.CANCELLED for r in results):
            raise Cancelled(f"script cancelled on {session.name}", detail=results)

        failed = [r for r in results if not r.ok]
        if any(r.error_kind is ErrorKind.CONNECTION for r in failed):
            raise SSHConnectionError(f"connection lost on {session.name}: {failed[0].message}", detail=results)
        if failed:
            names = ", ".join(f"{r.name} ({r.state.value})" for r in failed)
            raise ActionsFailed(f"actions failed: {names}", detail=results)
        return results

    return OperationKind.SCRIPT_STEP, run


def transfer_op(
    direction: Direction,
    local: str,
    remote: str,
    options: TransferOptions | None = None,
    *,
    suffix_server: bool = False,
    on_progress: ProgressCallback | None = None,
    cancel: CancelToken | None = None,
) -> tuple[OperationKind, Operation]:
    """Upload or download one path.

    With ``suffix_server`` a download lands in ``<local>_<server>`` so several
    servers can download into the same place. When the executor retries a
    server, the new attempt resumes what the failed one wrote unless
    ``force`` is set.
    """
    options = options or TransferOptions()
    attempted: set[str] = set()

    async def run(session: Session) -> TransferResult:
        local_path = local
        if suffix_server and direction is Direction.DOWNLOAD:
            local_path = add_server_name(local, session.name)
        attempt_options = options
        if session.name in attempted and not options.force:
            attempt_options = replace(options, resume=True)
        attempted.add(session.name)

        result = await transfer(
            session, local_path, remote, direction, attempt_options, on_progress=on_progress, cancel=cancel
        )
        if not result.ok:
            failed = next(o for o in result.outcomes if o.status is EntryStatus.FAILED)
            kind = failed.error_kind or ErrorKind.UNKNOWN
            raise TransferFailed(f"{result.summary()} on {session.name}", kind=kind, detail=result)
        return result

    return OperationKind.TRANSFER_JOB, run


def firewall_op(edit: FirewallEdit) -> tuple[OperationKind, Operation]:
    async def run(session: Session) -> list:
        return await edit.run(UfwBackend(session))

    return OperationKind.FIREWALL_EDIT, run
