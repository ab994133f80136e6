#!/usr/bin/env python3
"""Main entry point for sshfleet."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Callable

from .config import Config, ServerTarget, load_config
from .console import ConsoleRenderer
from .errors import ConfigError, FleetError
from .events import CancelToken, ProgressCallback
from .executor import Operation, OperationKind, TaskExecutor, TaskResult, exit_code, summarize
from .firewall import EditKind, FirewallEdit, FirewallRule, RuleAction, edit_from_config
from .multishell import MultiShell, stdin_lines
from .operations import exec_op, firewall_op, script_op, transfer_op
from .retry import RetryPolicy
from .script import ActionResult, list_actions, load_script
from .session import Session
from .transfer import Direction, TransferOptions, TransferResult, classify_paths

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Builds the operation once the progress sink (console or dashboard) is known
OpFactory = Callable[[ProgressCallback | None], tuple[OperationKind, Operation]]


def _comma_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshfleet",
        description="Run commands, scripts, transfers and firewall edits on many SSH servers",
    )
    parser.add_argument(
        "-c", "--config", type=Path, default=Path("config.yaml"), help="Path to YAML configuration file"
    )
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Diagnostic log level (default: warning)",
    )

    # Options shared by every command that targets servers
    targeting = argparse.ArgumentParser(add_help=False)
    targeting.add_argument("-s", "--server", type=_comma_list, default=[], help="Comma-separated server names")
    targeting.add_argument("--all-servers", action="store_true", help="Target every configured server")
    targeting.add_argument("-t", "--threads", type=int, help="Maximum concurrent servers")
    targeting.add_argument("--max-retry", type=int, help="Retries for transient failures")
    targeting.add_argument("--dashboard", action="store_true", help="Run with the TUI dashboard")
    targeting.add_argument("--no-logs", action="store_true", help="Disable logging output to files")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("servers", help="List configured servers")

    exec_parser = commands.add_parser("exec", parents=[targeting], help="Run a command")
    exec_parser.add_argument("cmd", nargs="+", help="Command to run")
    exec_parser.add_argument("--sudo", action="store_true", help="Run with sudo")
    exec_parser.add_argument("--hide-output", action="store_true", help="Do not print command output")

    shell_parser = commands.add_parser("shell", parents=[targeting], help="Open interactive shells")
    shell_parser.add_argument("cmd", nargs="*", help="Command to run instead of a login shell")

    script_parser = commands.add_parser("script", help="Run or inspect a script")
    script_commands = script_parser.add_subparsers(dest="script_command", required=True)
    script_list = script_commands.add_parser("list", help="List a script's actions")
    script_list.add_argument("path", type=Path)
    script_run = script_commands.add_parser("run", parents=[targeting], help="Run script actions")
    script_run.add_argument("path", type=Path)
    script_run.add_argument("--action", type=_comma_list, required=True, help="Comma-separated action names")
    script_run.add_argument("--hide-progress", action="store_true", help="Do not print transfer progress")

    transfer_parser = commands.add_parser("transfer", parents=[targeting], help="Upload or download files")
    transfer_parser.add_argument("direction", choices=[d.value for d in Direction])
    transfer_parser.add_argument("--local", required=True, help="Local path")
    transfer_parser.add_argument("--remote", required=True, help="Remote path (end directories with '/')")
    transfer_parser.add_argument("--force", action="store_true", help="Overwrite existing files")
    transfer_parser.add_argument("--resume", action="store_true", help="Continue partial files")
    transfer_parser.add_argument("--hide-progress", action="store_true", help="Do not print progress")

    firewall_parser = commands.add_parser("firewall", parents=[targeting], help="Edit firewall rules")
    firewall_parser.add_argument("--status", action="store_true", help="Show firewall rules")
    firewall_parser.add_argument(
        "--apply-config", action="store_true", help="Apply the ports and policy from the config's firewall section"
    )
    firewall_parser.add_argument("--allow-port", type=_comma_list, default=[], help="Ports to allow, e.g. 80/tcp")
    firewall_parser.add_argument("--deny-port", type=_comma_list, default=[], help="Ports to deny")
    firewall_parser.add_argument("--delete-allow-port", type=_comma_list, default=[], help="Allow rules to delete")
    firewall_parser.add_argument("--delete-deny-port", type=_comma_list, default=[], help="Deny rules to delete")
    firewall_parser.add_argument("--save", action="store_true", help="Persist the rules")

    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT, stream=sys.stderr)
    if level != "debug":
        logging.getLogger("asyncssh").setLevel(logging.WARNING)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    # Script listing needs no configuration
    if args.command == "script" and args.script_command == "list":
        return _list_script(args.path)

    # Load configuration
    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    if args.command == "servers":
        return _list_servers(config)

    try:
        servers = config.select(args.server, args.all_servers)
        if args.command == "shell":
            return asyncio.run(_run_shell(config, servers, " ".join(args.cmd) or None))
        make_op = _build_operation(args, config, servers)
    except FleetError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if config.known_hosts is None:
        logger.warning("Host key checking is disabled (known_hosts is not set)")

    max_retry = args.max_retry if args.max_retry is not None else config.executor.max_retry
    retry = RetryPolicy(
        max_retry=max_retry,
        base_delay=config.executor.backoff_base,
        max_delay=config.executor.backoff_cap,
    )
    enable_logging = not args.no_logs

    if args.dashboard:
        results = _run_dashboard(config, servers, make_op, retry, args.threads, enable_logging)
    else:
        results = _run_headless(config, servers, make_op, retry, args, enable_logging)

    _report(results)
    return exit_code(results) if results else 1


def _list_servers(config: Config) -> int:
    width = max(len(name) for name in config.servers)
    for name, target in config.servers.items():
        print(f"{name:<{width}}  {target}")
    return 0


def _list_script(path: Path) -> int:
    try:
        script = load_script(path)
    except (FileNotFoundError, ConfigError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"{script.name}: {script.description}" if script.description else script.name)
    for name, description in list_actions(script):
        print(f"  {name:<20} {description}")
    return 0


def _build_operation(args: argparse.Namespace, config: Config, servers: list[ServerTarget]) -> OpFactory:
    """Validate everything that can be checked locally and return an op factory."""
    if args.command == "exec":
        command = " ".join(args.cmd)
        return lambda on_progress: exec_op(command, sudo=args.sudo)

    if args.command == "script":
        script = load_script(args.path)
        script.validate_actions(args.action)
        return lambda on_progress: script_op(
            script, args.action, on_progress=on_progress, cancel=_cancel, hide_progress=args.hide_progress
        )

    if args.command == "transfer":
        direction = Direction(args.direction)
        # Rejects file/directory mismatches before any connection
        classify_paths(args.local, args.remote, direction)
        options = TransferOptions(
            force=args.force,
            resume=args.resume,
            hide_progress=args.hide_progress,
            max_retry=args.max_retry if args.max_retry is not None else config.executor.max_retry,
            chunk_size=config.executor.chunk_size,
            backoff_base=config.executor.backoff_base,
        )
        return lambda on_progress: transfer_op(
            direction,
            args.local,
            args.remote,
            options,
            suffix_server=len(servers) > 1,
            on_progress=on_progress,
            cancel=_cancel,
        )

    if args.command == "firewall":
        edit = _firewall_edit(args, config)
        return lambda on_progress: firewall_op(edit)

    raise ConfigError(f"Unknown command '{args.command}'")


def _firewall_edit(args: argparse.Namespace, config: Config | None = None) -> FirewallEdit:
    if args.status:
        return FirewallEdit(EditKind.STATUS)
    if args.apply_config:
        if config is None or config.firewall is None:
            raise ConfigError("--apply-config needs a firewall section in the config")
        return edit_from_config(config.firewall, save=args.save)

    # One kind of change per run, in this order of precedence
    changes = [
        (EditKind.APPLY, RuleAction.ALLOW, args.allow_port),
        (EditKind.APPLY, RuleAction.DENY, args.deny_port),
        (EditKind.REMOVE, RuleAction.ALLOW, args.delete_allow_port),
        (EditKind.REMOVE, RuleAction.DENY, args.delete_deny_port),
    ]
    for kind, action, specs in changes:
        if specs:
            rules = [FirewallRule.parse(action, spec) for spec in specs]
            return FirewallEdit(kind, rules, save=args.save)

    raise ConfigError(
        "No firewall action specified. Use --status, --apply-config, --allow-port, --deny-port, "
        "--delete-allow-port, or --delete-deny-port"
    )


# Shared by the SIGINT handler, the dashboard and the operations
_cancel = CancelToken()


def _executor(config: Config, threads: int | None, enable_logging: bool, **callbacks) -> TaskExecutor:
    return TaskExecutor(
        thread_limit=threads or config.executor.threads,
        known_hosts=config.known_hosts,
        log_dir=config.log_dir if enable_logging else None,
        config_source=config.source_path,
        **callbacks,
    )


def _run_headless(
    config: Config,
    servers: list[ServerTarget],
    make_op: OpFactory,
    retry: RetryPolicy,
    args: argparse.Namespace,
    enable_logging: bool,
) -> dict[str, TaskResult]:
    """Run the executor without TUI dashboard."""
    renderer = ConsoleRenderer(
        (server.name for server in servers),
        hide_output=getattr(args, "hide_output", False),
    )
    executor = _executor(
        config,
        args.threads,
        enable_logging,
        on_output=renderer.on_output,
        on_status=renderer.on_status,
    )
    kind, op = make_op(renderer.on_progress)

    async def run() -> dict[str, TaskResult]:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, _interrupt)
        try:
            return await executor.run(servers, op, retry, cancel=_cancel, label=kind.value)
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    return asyncio.run(run())


def _interrupt() -> None:
    if _cancel.cancelled:
        raise KeyboardInterrupt
    print("\nCancelling; press Ctrl-C again to abort immediately", file=sys.stderr)
    _cancel.cancel()


def _run_dashboard(
    config: Config,
    servers: list[ServerTarget],
    make_op: OpFactory,
    retry: RetryPolicy,
    threads: int | None,
    enable_logging: bool,
) -> dict[str, TaskResult]:
    from .dashboard import Dashboard

    async def job(on_output, on_status, on_progress) -> dict[str, TaskResult]:
        executor = _executor(config, threads, enable_logging, on_output=on_output, on_status=on_status)
        kind, op = make_op(on_progress)
        return await executor.run(servers, op, retry, cancel=_cancel, label=kind.value)

    app = Dashboard(servers, job, _cancel)
    app.run()
    return app.results


async def _run_shell(config: Config, servers: list[ServerTarget], command: str | None) -> int:
    async def open_session(target: ServerTarget) -> Session:
        return await Session.open(target, known_hosts=config.known_hosts)

    if len(servers) == 1:
        async with await open_session(servers[0]) as session:
            return await session.interactive(command)

    shell = MultiShell(open_session, concurrency=config.executor.threads or 8)
    await shell.open_all(servers, command)
    for server, message in shell.failures.items():
        print(f"Failed to open shell on {server}: {message}", file=sys.stderr)
    if not shell.channels:
        return 1

    print(
        f"Connected to {len(shell.channels)} servers. "
        "Input goes to every shell; /history [server], /close <server>, /detach, exit",
        file=sys.stderr,
    )
    await shell.run_interactive(stdin_lines())
    return 1 if shell.failures else 0


def _report(results: dict[str, TaskResult]) -> None:
    """Print per-server details and the summary table."""
    if not results:
        print("\nRun was cancelled before any server finished", file=sys.stderr)
        return

    print()
    for name, result in results.items():
        detail = result.detail
        if isinstance(detail, TransferResult):
            print(f"[{name}] {detail.summary()}")
        elif isinstance(detail, list):
            for item in detail:
                if isinstance(item, FirewallRule):
                    print(f"[{name}] {item}")
                elif isinstance(item, ActionResult):
                    line = f"[{name}] {item.name}: {item.state.value}"
                    print(f"{line} - {item.message}" if item.message else line)

    print()
    print(summarize(results))

    failed = [name for name, result in results.items() if not result.ok]
    if failed:
        print(f"\nFailed servers: {', '.join(failed)}", file=sys.stderr)


if __name__ == "__main__":
    sys.exit(main())
