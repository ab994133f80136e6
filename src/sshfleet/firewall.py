"""Firewall rule editing through a pluggable backend (ufw for now)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .config import PORT_SPEC, FirewallConfig
from .errors import CommandError, ConfigError
from .session import Session

logger = logging.getLogger(__name__)

# Default for incoming traffic under each config policy
DEFAULT_INCOMING = {"whitelist": "deny", "blacklist": "allow"}


class RuleAction(Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class FirewallRule:
    """A port rule such as ``allow 80/tcp`` or ``deny 6000:6007/udp``."""

    action: RuleAction
    port: str
    proto: str | None = None

    @classmethod
    def parse(cls, action: RuleAction, spec: str) -> "FirewallRule":
        match = PORT_SPEC.match(spec.strip())
        if not match:
            raise ConfigError(f"Invalid port spec '{spec}'")
        start, end, proto = match.groups()
        for port in (start, end):
            if port is not None and not 0 < int(port) <= 65535:
                raise ConfigError(f"Port out of range in '{spec}'")
        port = f"{start}:{end}" if end else start
        return cls(action, port, proto)

    @property
    def spec(self) -> str:
        return f"{self.port}/{self.proto}" if self.proto else self.port

    def __str__(self) -> str:
        return f"{self.action.value} {self.spec}"


class FirewallBackend(Protocol):
    async def apply(self, rule: FirewallRule) -> None: ...

    async def remove(self, rule: FirewallRule) -> None: ...

    async def status(self) -> list[FirewallRule]: ...

    async def save(self) -> None: ...

    async def set_default_policy(self, policy: str) -> None: ...


class UfwBackend:
    """Translates rules to ``ufw`` commands run with sudo.

    Every change is verified by reading ``ufw status`` back.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    async def status_text(self) -> str:
        result = await self.session.exec("ufw status", sudo=True)
        return result.stdout

    async def status(self) -> list[FirewallRule]:
        return parse_ufw_status(await self.status_text())

    async def apply(self, rule: FirewallRule) -> None:
        logger.info("Applying '%s' on %s", rule, self.session.name)
        await self.session.exec(f"ufw {rule.action.value} {rule.spec}", sudo=True)
        if rule not in await self.status():
            raise CommandError(f"Rule '{rule}' is not active on {self.session.name} after ufw {rule.action.value}")

    async def remove(self, rule: FirewallRule) -> None:
        logger.info("Removing '%s' on %s", rule, self.session.name)
        await self.session.exec(f"ufw delete {rule.action.value} {rule.spec}", sudo=True)
        if rule in await self.status():
            raise CommandError(f"Rule '{rule}' is still active on {self.session.name} after ufw delete")

    async def set_default_policy(self, policy: str) -> None:
        """Whitelist denies unmatched incoming traffic; blacklist allows it."""
        incoming = DEFAULT_INCOMING[policy]
        logger.info("Setting default incoming policy to %s on %s", incoming, self.session.name)
        await self.session.exec(f"ufw default {incoming} incoming", sudo=True)

    async def save(self) -> None:
        # ufw persists rules itself; reloading proves the stored set loads cleanly
        logger.info("Reloading ufw rules on %s", self.session.name)
        await self.session.exec("ufw reload", sudo=True)


def parse_ufw_status(output: str) -> list[FirewallRule]:
    """Extract port rules from ``ufw status`` output.

    Lines look like ``22/tcp                     ALLOW       Anywhere``.
    IPv6 duplicates (``22/tcp (v6)``) collapse into the same rule.
    """
    rules: list[FirewallRule] = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        if "ALLOW" in parts:
            action = RuleAction.ALLOW
        elif "DENY" in parts:
            action = RuleAction.DENY
        else:
            continue
        try:
            rule = FirewallRule.parse(action, parts[0])
        except ConfigError:
            # Application profiles such as "OpenSSH"
            continue
        if rule not in rules:
            rules.append(rule)
    return rules


class EditKind(Enum):
    APPLY = "apply"
    REMOVE = "remove"
    STATUS = "status"


@dataclass
class FirewallEdit:
    kind: EditKind
    rules: list[FirewallRule] = field(default_factory=list)
    save: bool = False
    policy: str | None = None  # whitelist or blacklist, applied after the rules

    async def run(self, backend: FirewallBackend) -> list[FirewallRule]:
        """Perform the edit and return the rules active afterwards."""
        if self.kind is EditKind.APPLY:
            for rule in self.rules:
                await backend.apply(rule)
            if self.policy is not None:
                await backend.set_default_policy(self.policy)
        elif self.kind is EditKind.REMOVE:
            for rule in self.rules:
                await backend.remove(rule)

        if self.save and self.kind is not EditKind.STATUS:
            await backend.save()
        return await backend.status()


def rules_from_config(config: FirewallConfig) -> list[FirewallRule]:
    """Rules described by the config's firewall section, allows first."""
    rules = [FirewallRule.parse(RuleAction.ALLOW, spec) for spec in config.allow_ports]
    rules += [FirewallRule.parse(RuleAction.DENY, spec) for spec in config.deny_ports]
    return rules


def edit_from_config(config: FirewallConfig, *, save: bool = False) -> FirewallEdit:
    """The edit that brings a server in line with the config's firewall section."""
    rules = rules_from_config(config)
    if not rules and config.policy is None:
        raise ConfigError("firewall section lists no ports and no policy")
    return FirewallEdit(EditKind.APPLY, rules, save=save, policy=config.policy)
