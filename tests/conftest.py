"""Shared fixtures and fakes for clrun tests."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from clrun.config import Defaults, Host
from clrun.credentials import CredentialError, Credentials
from clrun.executor import ExecutionError


@pytest.fixture
def defaults(tmp_path: Path) -> Defaults:
    """Defaults rooted in a throwaway home directory."""
    return Defaults(user="tester", home=tmp_path / "home")


def make_host(name: str, port: int = 22) -> Host:
    return Host(user="tester", hostname=name, port=port, ssh_key=Path("/keys/id_rsa"))


class FakeProvider:
    """Returns a placeholder key; fails for hosts listed in ``failing``."""

    thread_safe = False

    def __init__(self, failing: set[str] | None = None):
        self.failing = failing or set()
        self.resolved: list[Host] = []

    def resolve(self, host: Host) -> Credentials:
        self.resolved.append(host)
        if host.hostname in self.failing:
            raise CredentialError(host, f"no identity at {host.ssh_key}")
        return Credentials(ssh_key=object())


class FakeClient:
    """Scripted execution client keyed by hostname.

    ``outputs`` maps a hostname to the stdout it returns, ``failing`` to
    hosts that raise ExecutionError, and ``blocked`` to hosts that never
    finish on their own.
    """

    def __init__(
        self,
        outputs: dict[str, bytes] | None = None,
        failing: set[str] | None = None,
        blocked: set[str] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.outputs = outputs or {}
        self.failing = failing or set()
        self.blocked = blocked or set()
        self.delays = delays or {}
        self.commands: list[tuple[Host, str]] = []
        self.cancelled: list[Host] = []

    async def execute(self, host: Host, credentials: Credentials, command: str):
        self.commands.append((host, command))
        try:
            if host.hostname in self.blocked:
                await asyncio.Event().wait()
            await asyncio.sleep(self.delays.get(host.hostname, 0))
        except asyncio.CancelledError:
            self.cancelled.append(host)
            raise

        if host.hostname in self.failing:
            raise ExecutionError(host, "Connection refused")
        return self.outputs.get(host.hostname, f"{host.hostname}\n".encode()), b""
