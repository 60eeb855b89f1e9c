"""Cluster definition loader for clrun."""

from __future__ import annotations

import getpass
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CLFILE = "ClFile"
DEFAULT_PORT = 22

_YAML_SUFFIXES = {".yaml", ".yml"}
_WHITESPACE = re.compile(r"\s+")
_HEADER = re.compile(r"[\w.-]*:")


class MalformedDefinition(ValueError):
    """The cluster definition cannot be parsed."""

    def __init__(self, message: str, line_number: int | None = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class UnknownCluster(KeyError):
    """The requested cluster has no entry in the definition."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"unknown cluster: {self.name}"


@dataclass(frozen=True)
class Defaults:
    """Values a host line falls back to when it does not override them."""

    user: str
    home: Path
    port: int = DEFAULT_PORT
    ssh_key: Path | None = None

    def __post_init__(self) -> None:
        if self.ssh_key is None:
            object.__setattr__(self, "ssh_key", self.home / ".ssh" / "id_rsa")

    @classmethod
    def from_environment(cls) -> Defaults:
        return cls(user=getpass.getuser(), home=Path.home())

    def expand(self, path: str) -> Path:
        """Replace a leading ``~`` with the configured home directory."""
        if path.startswith("~"):
            return Path(str(self.home) + path[1:])
        return Path(path)


@dataclass(frozen=True)
class Host:
    """A single target host, fully resolved."""

    user: str
    hostname: str
    port: int
    ssh_key: Path

    @property
    def address(self) -> str:
        if ":" in self.hostname:
            return f"[{self.hostname}]:{self.port}"
        return f"{self.hostname}:{self.port}"

    def __str__(self) -> str:
        return f"{self.user}@{self.address}"


@dataclass(frozen=True)
class Clusters:
    """Read-only mapping of cluster name to its hosts."""

    _clusters: Mapping[str, tuple[Host, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    source_path: Path | None = None

    def __contains__(self, name: object) -> bool:
        return name in self._clusters

    def __iter__(self):
        return iter(self._clusters)

    def __len__(self) -> int:
        return len(self._clusters)

    def hosts(self, name: str) -> tuple[Host, ...]:
        try:
            return self._clusters[name]
        except KeyError:
            raise UnknownCluster(name) from None

    def items(self):
        return self._clusters.items()


def _freeze(
    clusters: dict[str, list[Host]], source_path: Path | None = None
) -> Clusters:
    frozen = {name: tuple(hosts) for name, hosts in clusters.items()}
    return Clusters(MappingProxyType(frozen), source_path)


def load_clusters(path: str | Path, defaults: Defaults) -> Clusters:
    """Load cluster definitions from a ClFile or a YAML file."""
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Cluster definition not found: {path}")

    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise MalformedDefinition(f"not valid UTF-8: {e}") from e

    if path.suffix.lower() in _YAML_SUFFIXES:
        clusters = parse_yaml_clusters(text, defaults)
    else:
        clusters = parse_clusters(text, defaults)

    logger.debug("Loaded %d clusters from %s", len(clusters), path)
    return Clusters(clusters._clusters, path.resolve())


def parse_clusters(source: str | Iterable[str], defaults: Defaults) -> Clusters:
    """Parse the indentation-insensitive ClFile format.

    A line ending in ``:`` opens a section; each following non-blank,
    non-comment line is a host in that section::

        prod:
            web0.example.com
            deploy@web1.example.com:2222 ~/.ssh/deploy_key
    """
    lines = source.splitlines() if isinstance(source, str) else source

    clusters: dict[str, list[Host]] = {}
    current: str | None = None

    for line_number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        if _HEADER.fullmatch(line):
            current = line[:-1]
            if not current:
                raise MalformedDefinition("empty cluster name", line_number)
            clusters.setdefault(current, [])
            continue

        if current is None:
            raise MalformedDefinition(
                f"host {line!r} appears before any cluster header", line_number
            )

        clusters[current].append(parse_host_line(line, defaults, line_number))

    for name, hosts in clusters.items():
        if not hosts:
            logger.warning("Cluster '%s' has no hosts", name)

    return _freeze(clusters)


def parse_host_line(
    line: str, defaults: Defaults, line_number: int | None = None
) -> Host:
    """Parse ``[user@]host[:port] [identity-file]`` into a Host."""
    tokens = _WHITESPACE.split(line.strip())
    if len(tokens) > 2:
        raise MalformedDefinition(
            f"expected at most 2 fields, got {len(tokens)}: {line!r}", line_number
        )

    ssh_key = defaults.ssh_key
    if len(tokens) == 2:
        ssh_key = defaults.expand(tokens[1])

    user, hostname, port = _split_host_spec(tokens[0], defaults, line_number)
    return Host(user=user, hostname=hostname, port=port, ssh_key=ssh_key)


def _split_host_spec(
    spec: str, defaults: Defaults, line_number: int | None
) -> tuple[str, str, int]:
    user = defaults.user
    if "@" in spec:
        user, spec = spec.split("@", 1)
        if not user:
            raise MalformedDefinition(f"empty user in {spec!r}", line_number)

    hostname, port = _split_host_port(spec, line_number)
    if port is None:
        port = defaults.port
    if not hostname:
        raise MalformedDefinition("empty hostname", line_number)

    return user, hostname, port


def _split_host_port(spec: str, line_number: int | None) -> tuple[str, int | None]:
    """Split ``host[:port]``; IPv6 literals may be bracketed or bare."""
    if spec.startswith("["):
        end = spec.find("]")
        if end == -1:
            raise MalformedDefinition(f"unterminated '[' in {spec!r}", line_number)
        hostname, rest = spec[1:end], spec[end + 1 :]
        if not rest:
            return hostname, None
        if not rest.startswith(":"):
            raise MalformedDefinition(f"unexpected {rest!r} after ']'", line_number)
        return hostname, _parse_port(rest[1:], line_number)

    # More than one colon without brackets is a bare IPv6 address.
    if spec.count(":") != 1:
        return spec, None

    hostname, port = spec.split(":")
    return hostname, _parse_port(port, line_number)


def _parse_port(value: str, line_number: int | None) -> int:
    if not (value.isascii() and value.isdigit()) or not 0 < int(value) < 65536:
        raise MalformedDefinition(f"invalid port {value!r}", line_number)
    return int(value)


def parse_yaml_clusters(text: str, defaults: Defaults) -> Clusters:
    """Parse a YAML mapping of cluster name to a list of hosts.

    Entries are either host-line strings or mappings with ``host`` and
    optional ``user``, ``port`` and ``ssh_key`` keys.
    """
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedDefinition(f"invalid YAML: {e}") from e

    if raw is None:
        return _freeze({})
    if not isinstance(raw, dict):
        raise MalformedDefinition("top level must be a mapping of clusters")

    clusters: dict[str, list[Host]] = {}
    for name, entries in raw.items():
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise MalformedDefinition(f"cluster '{name}' must be a list of hosts")
        clusters[str(name)] = [_parse_yaml_host(entry, name, defaults) for entry in entries]

    return _freeze(clusters)


def _parse_yaml_host(entry: Any, cluster: str, defaults: Defaults) -> Host:
    if isinstance(entry, str):
        return parse_host_line(entry, defaults)

    if not isinstance(entry, dict):
        raise MalformedDefinition(f"cluster '{cluster}': invalid host entry {entry!r}")

    spec = entry.get("host")
    if not spec:
        raise MalformedDefinition(f"cluster '{cluster}': host entry needs a 'host' field")

    # Inline user/port in the host field are honored, explicit keys win.
    user, hostname, port = _split_host_spec(str(spec), defaults, None)
    user = entry.get("user", user)
    if not isinstance(user, str) or not user:
        raise MalformedDefinition(f"cluster '{cluster}': invalid user {user!r}")

    port = entry.get("port", port)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise MalformedDefinition(f"cluster '{cluster}': invalid port {port!r}")

    ssh_key = defaults.ssh_key
    if "ssh_key" in entry:
        value = entry["ssh_key"]
        if not isinstance(value, str) or not value:
            raise MalformedDefinition(f"cluster '{cluster}': invalid ssh_key {value!r}")
        ssh_key = defaults.expand(value)

    return Host(user=user, hostname=hostname, port=port, ssh_key=ssh_key)
