"""Credential strategies tried in order when opening a session."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import asyncssh

from .config import ServerTarget


@dataclass(frozen=True)
class KeyCredential:
    """Public key authentication with a private key file."""

    path: Path

    def describe(self) -> str:
        return f"key {self.path}"

    def connect_options(self) -> dict[str, Any]:
        # Raises OSError or asyncssh.KeyImportError for an unusable key
        key = asyncssh.read_private_key(str(self.path))
        return {
            "client_keys": [key],
            "password": None,
            "agent_path": None,
            "preferred_auth": "publickey",
        }


@dataclass(frozen=True)
class PasswordCredential:
    """Password (or keyboard-interactive) authentication."""

    password: str

    def describe(self) -> str:
        return "password"

    def connect_options(self) -> dict[str, Any]:
        return {
            "client_keys": None,
            "password": self.password,
            "agent_path": None,
            "preferred_auth": "password,keyboard-interactive",
        }


Credential = Union[KeyCredential, PasswordCredential]


def credential_chain(target: ServerTarget) -> list[Credential]:
    """Build the ordered list of credentials to try for ``target``.

    Key first when a key is configured; ``use_password`` moves the password
    to the front. Whichever is not first follows when it is available.
    """
    key = KeyCredential(target.ssh_key) if target.ssh_key else None
    password = PasswordCredential(target.password) if target.password else None

    ordered = [password, key] if target.use_password else [key, password]
    return [cred for cred in ordered if cred is not None]
