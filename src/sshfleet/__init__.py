"""sshfleet: Run commands, scripts, transfers and firewall edits on many SSH servers."""

from .config import Config, Defaults, ServerTarget, load_config
from .errors import ErrorKind, FleetError
from .events import CancelToken, OutputEvent, ProgressEvent
from .executor import Outcome, ServerStatus, TaskExecutor, TaskResult, TaskSpec
from .retry import RetryPolicy
from .session import Session

__all__ = [
    "CancelToken",
    "Config",
    "Defaults",
    "ErrorKind",
    "FleetError",
    "OutputEvent",
    "Outcome",
    "ProgressEvent",
    "RetryPolicy",
    "ServerStatus",
    "ServerTarget",
    "Session",
    "TaskExecutor",
    "TaskResult",
    "TaskSpec",
    "load_config",
]
