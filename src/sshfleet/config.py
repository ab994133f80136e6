"""Configuration loader for sshfleet."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

PORT_SPEC = re.compile(r"^(\d{1,5})(?::(\d{1,5}))?(?:/(tcp|udp))?$")


@dataclass
class Defaults:
    """Default values that can be overridden per server."""

    user: str = "root"
    port: int = 22
    ssh_key: Path | None = None
    password: str | None = None
    use_password: bool = False
    timeout: int = 30
    work_dir: str | None = None


@dataclass(frozen=True)
class ServerTarget:
    """Connection details for a single server."""

    name: str
    host: str
    port: int = 22
    user: str = "root"
    ssh_key: Path | None = None
    password: str | None = None
    use_password: bool = False
    timeout: int = 30
    work_dir: str | None = None

    def __str__(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"


@dataclass
class ExecutorSettings:
    """Worker pool and retry settings."""

    threads: int | None = None
    max_retry: int = 0
    backoff_base: float = 1.0
    backoff_cap: float | None = None
    chunk_size: int = 64 * 1024


@dataclass
class FirewallConfig:
    """Firewall section; either a policy with allow_ports or explicit allow/deny lists."""

    policy: str | None = None
    allow_ports: list[str] = field(default_factory=list)
    deny_ports: list[str] = field(default_factory=list)


@dataclass
class Config:
    """Main configuration for a run."""

    servers: dict[str, ServerTarget]
    defaults: Defaults = field(default_factory=Defaults)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    firewall: FirewallConfig | None = None
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    known_hosts: str | None = None
    source_path: Path | None = None  # Path to the original config file

    def select(self, names: list[str] | None = None, all_servers: bool = False) -> list[ServerTarget]:
        """Resolve a server selection to targets, preserving order."""
        if all_servers:
            return list(self.servers.values())
        if not names:
            raise ConfigError(
                "No servers specified. Use --server to pick servers or --all-servers"
            )
        targets = []
        for name in dict.fromkeys(names):
            if name not in self.servers:
                raise ConfigError(f"Server '{name}' not found in config")
            targets.append(self.servers[name])
        return targets


def load_config(config_path: str | Path) -> Config:
    """Load and validate configuration from a YAML file."""
    config_path = Path(config_path).expanduser().resolve()

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must contain a mapping: {config_path}")

    config = parse_config(raw)
    config.source_path = config_path
    return config


def _expand_key(value: Any) -> Path | None:
    if value is None:
        return None
    return Path(str(value)).expanduser()


def _parse_defaults(raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    defaults_raw = raw.get("defaults") or {}
    return Defaults(
        user=defaults_raw.get("user", "root"),
        port=int(defaults_raw.get("port", 22)),
        ssh_key=_expand_key(defaults_raw.get("ssh_key")),
        password=defaults_raw.get("password"),
        use_password=bool(defaults_raw.get("use_password", False)),
        timeout=int(defaults_raw.get("timeout", 30)),
        work_dir=defaults_raw.get("work_dir"),
    )


def _parse_executor(raw: dict[str, Any]) -> ExecutorSettings:
    executor_raw = raw.get("executor") or {}
    threads = executor_raw.get("threads")
    cap = executor_raw.get("backoff_cap")
    settings = ExecutorSettings(
        threads=int(threads) if threads is not None else None,
        max_retry=int(executor_raw.get("max_retry", 0)),
        backoff_base=float(executor_raw.get("backoff_base", 1.0)),
        backoff_cap=float(cap) if cap is not None else None,
        chunk_size=int(executor_raw.get("chunk_size", 64 * 1024)),
    )
    if settings.threads is not None and settings.threads <= 0:
        raise ConfigError("executor.threads must be positive")
    if settings.max_retry < 0:
        raise ConfigError("executor.max_retry must not be negative")
    if settings.chunk_size <= 0:
        raise ConfigError("executor.chunk_size must be positive")
    return settings


def _parse_firewall(raw: dict[str, Any]) -> FirewallConfig | None:
    firewall_raw = raw.get("firewall")
    if firewall_raw is None:
        return None

    policy = firewall_raw.get("policy")
    if policy is not None and policy not in ("whitelist", "blacklist"):
        raise ConfigError(f"firewall.policy must be whitelist or blacklist, got '{policy}'")

    allow_ports = [str(p) for p in firewall_raw.get("allow_ports") or []]
    deny_ports = [str(p) for p in firewall_raw.get("deny_ports") or []]
    for spec in allow_ports + deny_ports:
        if not PORT_SPEC.match(spec):
            raise ConfigError(f"Invalid port spec '{spec}'")

    conflicts = set(allow_ports) & set(deny_ports)
    if conflicts:
        raise ConfigError(f"Ports both allowed and denied: {sorted(conflicts)}")

    return FirewallConfig(policy=policy, allow_ports=allow_ports, deny_ports=deny_ports)


def parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw YAML data into Config object."""
    defaults = _parse_defaults(raw)

    log_dir = Path(raw.get("log_dir", "logs")).expanduser().resolve()

    servers_raw = raw.get("servers") or []
    if not servers_raw:
        raise ConfigError("No servers defined in configuration")

    servers: dict[str, ServerTarget] = {}
    for server_raw in servers_raw:
        target = _parse_server(server_raw, defaults)
        if target.name in servers:
            raise ConfigError(f"Duplicate server name '{target.name}'")
        servers[target.name] = target

    return Config(
        servers=servers,
        defaults=defaults,
        executor=_parse_executor(raw),
        firewall=_parse_firewall(raw),
        log_dir=log_dir,
        known_hosts=raw.get("known_hosts"),
    )


def _parse_server(server_raw: dict[str, Any], defaults: Defaults) -> ServerTarget:
    """Parse a single server entry."""
    name = server_raw.get("name")
    if not name:
        raise ConfigError("Server must have a 'name' field")

    host = server_raw.get("host")
    if not host:
        raise ConfigError(f"Server '{name}' must have a 'host' field")

    # All these options inherit from defaults if not specified per-server
    ssh_key = defaults.ssh_key
    if "ssh_key" in server_raw:
        ssh_key = _expand_key(server_raw["ssh_key"])

    port = int(server_raw.get("port", defaults.port))
    if not 0 < port < 65536:
        raise ConfigError(f"Server '{name}' has invalid port {port}")

    return ServerTarget(
        name=str(name),
        host=str(host),
        port=port,
        user=server_raw.get("user", defaults.user),
        ssh_key=ssh_key,
        password=server_raw.get("password", defaults.password),
        use_password=bool(server_raw.get("use_password", defaults.use_password)),
        timeout=int(server_raw.get("timeout", defaults.timeout)),
        work_dir=server_raw.get("work_dir", defaults.work_dir),
    )
