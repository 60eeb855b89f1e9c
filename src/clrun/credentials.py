"""Per-host identity and host key trust resolution."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import asyncssh

from .config import Host

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Identity or trust material for a host could not be resolved."""

    def __init__(self, host: Host, cause: Exception | str):
        self.host = host
        self.cause = cause
        super().__init__(str(cause))


@dataclass(frozen=True)
class Credentials:
    """What the transport needs to authenticate a host."""

    ssh_key: asyncssh.SSHKey
    known_hosts: asyncssh.SSHKnownHosts | None = None


class CredentialProvider(Protocol):
    """Resolves credentials for a host.

    ``resolve`` may block. Providers whose backing store cannot take
    concurrent lookups leave ``thread_safe`` False.
    """

    thread_safe: bool

    def resolve(self, host: Host) -> Credentials: ...


class KeyFileProvider:
    """Loads identity files from disk and host keys from known_hosts.

    Parsed keys are cached per path, so a cluster sharing one identity
    reads it once.
    """

    thread_safe = False

    def __init__(
        self,
        known_hosts_path: str | None = None,
        home: Path | None = None,
    ):
        """Initialize the provider.

        Args:
            known_hosts_path: Path to a known_hosts file, ``"none"`` to
                disable host key verification, or None for the default
                ``~/.ssh/known_hosts`` when it exists
            home: Home directory used for the default path

        Raises:
            FileNotFoundError: If an explicit known_hosts path is missing
        """
        self._home = home or Path.home()
        self._known_hosts_path = self._resolve_known_hosts(known_hosts_path)
        self._known_hosts: asyncssh.SSHKnownHosts | None = None
        self._keys: dict[Path, asyncssh.SSHKey] = {}

    def _resolve_known_hosts(self, value: str | None) -> Path | None:
        if value and value.lower() == "none":
            logger.critical(
                "SSH host key verification disabled, "
                "connections are open to man-in-the-middle attacks"
            )
            return None

        if value:
            path = Path(os.path.expanduser(value))
            if not path.exists():
                raise FileNotFoundError(f"known_hosts file not found: {path}")
            return path

        default = self._home / ".ssh" / "known_hosts"
        if not default.exists():
            logger.warning(
                "known_hosts not found at %s, host key verification disabled",
                default,
            )
            return None
        return default

    @property
    def verifies_host_keys(self) -> bool:
        return self._known_hosts_path is not None

    def resolve(self, host: Host) -> Credentials:
        try:
            key = self._keys.get(host.ssh_key)
            if key is None:
                logger.debug("Reading identity %s for %s", host.ssh_key, host)
                key = asyncssh.read_private_key(host.ssh_key)
                self._keys[host.ssh_key] = key

            if self._known_hosts is None and self._known_hosts_path is not None:
                self._known_hosts = asyncssh.read_known_hosts(
                    str(self._known_hosts_path)
                )
        except (OSError, ValueError, asyncssh.Error) as e:
            raise CredentialError(host, e) from e

        return Credentials(ssh_key=key, known_hosts=self._known_hosts)


class CriticalSection:
    """Async front for a provider that serializes its lookups.

    Each lookup runs in a worker thread. Unless the provider declares
    itself thread-safe, lookups hold a lock so at most one touches the
    backing store at a time.
    """

    def __init__(self, provider: CredentialProvider):
        self.provider = provider
        self._lock: asyncio.Lock | None = None
        if not getattr(provider, "thread_safe", False):
            self._lock = asyncio.Lock()

    async def resolve(self, host: Host) -> Credentials:
        if self._lock is None:
            return await asyncio.to_thread(self.provider.resolve, host)

        async with self._lock:
            return await asyncio.to_thread(self.provider.resolve, host)
