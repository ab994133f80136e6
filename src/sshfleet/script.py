"""Scripts: named actions made of ordered command/upload/download steps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Union

import yaml

from .errors import Cancelled, CommandError, ErrorKind, ScriptError, TransferFailed, classify
from .events import CancelToken, ProgressCallback
from .session import Session
from .transfer import Direction, EntryStatus, TransferOptions, transfer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandStep:
    commands: list[str]
    sudo: bool = False

    def describe(self) -> str:
        return f"command ({len(self.commands)} command(s){', sudo' if self.sudo else ''})"


@dataclass(frozen=True)
class UploadStep:
    local: str
    remote: str
    force: bool = False
    resume: bool = False
    max_retry: int = 0

    def describe(self) -> str:
        return f"upload {self.local} -> {self.remote}"


@dataclass(frozen=True)
class DownloadStep:
    local: str
    remote: str
    force: bool = False
    resume: bool = False
    max_retry: int = 0

    def describe(self) -> str:
        return f"download {self.remote} -> {self.local}"


Step = Union[CommandStep, UploadStep, DownloadStep]


@dataclass
class ScriptAction:
    name: str
    description: str = ""
    steps: list[Step] = field(default_factory=list)


@dataclass
class ScriptDef:
    """A loaded script; actions keep the order they were declared in."""

    name: str
    description: str
    actions: dict[str, ScriptAction]
    source_path: Path | None = None

    def validate_actions(self, names: list[str]) -> None:
        if not names:
            raise ScriptError("No actions specified")
        for name in names:
            if name not in self.actions:
                raise ScriptError(f"Action '{name}' not found in script '{self.name}'")


class ActionState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ActionResult:
    name: str
    state: ActionState = ActionState.PENDING
    steps_completed: int = 0
    message: str = ""
    error_kind: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.state is ActionState.COMPLETED


def truncate_lines(text: str, max_lines: int = 3) -> str:
    """Keep the first ``max_lines`` lines of ``text``."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    return "\n".join(lines[:max_lines]) + f"\n... (truncated {len(lines) - max_lines} more lines)"


def load_script(path: str | Path) -> ScriptDef:
    """Load a script definition from a YAML file."""
    path = Path(path).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"Script file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    script = parse_script(raw)
    script.source_path = path
    return script


def parse_script(raw: dict[str, Any]) -> ScriptDef:
    if not isinstance(raw, dict):
        raise ScriptError("Script must be a mapping with 'info' and 'script' sections")

    info = raw.get("info") or {}
    name = info.get("name")
    if not name:
        raise ScriptError("Script must have 'info.name'")

    actions_raw = raw.get("script") or {}
    if not isinstance(actions_raw, dict):
        raise ScriptError("'script' must map action names to actions")

    actions = {
        str(action_name): _parse_action(str(action_name), action_raw or {})
        for action_name, action_raw in actions_raw.items()
    }
    return ScriptDef(name=str(name), description=info.get("desc", ""), actions=actions)


def _parse_action(name: str, raw: dict[str, Any]) -> ScriptAction:
    description = raw.get("desc", "")

    # Flat form: sudo/commands directly on the action
    if "steps" not in raw:
        commands = raw.get("commands")
        if not commands:
            raise ScriptError(f"Action '{name}' has neither 'steps' nor 'commands'")
        step = CommandStep(commands=[str(c) for c in commands], sudo=bool(raw.get("sudo", False)))
        return ScriptAction(name, description, [step])

    steps = [_parse_step(name, i, step_raw) for i, step_raw in enumerate(raw["steps"] or [])]
    if not steps:
        raise ScriptError(f"Action '{name}' has no steps")
    return ScriptAction(name, description, steps)


def _parse_step(action: str, index: int, raw: dict[str, Any]) -> Step:
    where = f"Action '{action}' step {index + 1}"
    step_type = raw.get("type")

    if step_type == "command":
        commands = raw.get("commands")
        if not commands:
            raise ScriptError(f"{where}: command step needs 'commands'")
        return CommandStep(commands=[str(c) for c in commands], sudo=bool(raw.get("sudo", False)))

    if step_type in ("upload", "download"):
        local, remote = raw.get("local"), raw.get("remote")
        if not local or not remote:
            raise ScriptError(f"{where}: {step_type} step needs 'local' and 'remote'")
        step_class = UploadStep if step_type == "upload" else DownloadStep
        return step_class(
            local=str(local),
            remote=str(remote),
            force=bool(raw.get("force", False)),
            resume=bool(raw.get("resume", False)),
            max_retry=int(raw.get("max_retry", 0)),
        )

    raise ScriptError(f"{where}: unknown step type '{step_type}'")


def list_actions(script: ScriptDef) -> list[tuple[str, str]]:
    """Action names and descriptions, in declaration order."""
    return [(name, action.description) for name, action in script.actions.items()]


class ScriptRunner:
    """Runs a script's actions against one session.

    Each action goes PENDING -> RUNNING -> COMPLETED or FAILED. Steps run in
    order and the first failing step ends its action; the remaining
    requested actions still run.
    """

    def __init__(
        self,
        script: ScriptDef,
        *,
        on_progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
        hide_progress: bool = False,
    ) -> None:
        self.script = script
        self.on_progress = on_progress
        self.cancel = cancel
        self.hide_progress = hide_progress

    async def run(self, session: Session, action_names: list[str]) -> list[ActionResult]:
        self.script.validate_actions(action_names)
        results = [ActionResult(name) for name in action_names]
        for result in results:
            await self._run_action(session, self.script.actions[result.name], result)
        return results

    async def _run_action(self, session: Session, action: ScriptAction, result: ActionResult) -> None:
        result.state = ActionState.RUNNING
        logger.info("Running action '%s' on %s", action.name, session.name)

        for index, step in enumerate(action.steps):
            if self.cancel is not None and self.cancel.cancelled:
                result.state = ActionState.CANCELLED
                result.message = f"cancelled before step {index + 1}"
                return
            try:
                await self._run_step(session, step)
            except Cancelled as e:
                result.state = ActionState.CANCELLED
                result.message = str(e)
                return
            except Exception as e:
                result.state = ActionState.FAILED
                result.error_kind = classify(e)
                result.message = f"step {index + 1} ({step.describe()}): {self._describe_error(e)}"
                logger.error("Action '%s' failed on %s: %s", action.name, session.name, result.message)
                return
            result.steps_completed = index + 1

        result.state = ActionState.COMPLETED

    async def _run_step(self, session: Session, step: Step) -> None:
        if isinstance(step, CommandStep):
            for command in step.commands:
                if self.cancel is not None:
                    self.cancel.check()
                await session.exec(command, sudo=step.sudo)
            return

        direction = Direction.UPLOAD if isinstance(step, UploadStep) else Direction.DOWNLOAD
        options = TransferOptions(
            force=step.force,
            resume=step.resume,
            max_retry=step.max_retry,
            hide_progress=self.hide_progress,
        )
        outcome = await transfer(
            session,
            step.local,
            step.remote,
            direction,
            options,
            on_progress=self.on_progress,
            cancel=self.cancel,
        )
        if not outcome.ok:
            failed = next(o for o in outcome.outcomes if o.status is EntryStatus.FAILED)
            raise TransferFailed(
                f"transfer failed: {failed.message}", kind=failed.error_kind or ErrorKind.UNKNOWN, detail=outcome
            )

    @staticmethod
    def _describe_error(exc: Exception) -> str:
        if isinstance(exc, CommandError) and exc.result is not None:
            output = truncate_lines(exc.result.output.strip())
            return f"{exc} - {output}" if output else str(exc)
        return str(exc)
