"""clrun: Run a command on every host of a cluster concurrently."""

from .cancellation import Cancellation
from .config import Clusters, Defaults, Host, MalformedDefinition, UnknownCluster, load_clusters, parse_clusters
from .credentials import CredentialError, Credentials, CriticalSection, KeyFileProvider
from .executor import ExecutionError, Executor, Failure, HostStatus, SSHClient, Success
from .output import Aggregator, Outcome, StreamRenderer

__all__ = [
    "Cancellation",
    "Clusters",
    "Defaults",
    "Host",
    "MalformedDefinition",
    "UnknownCluster",
    "load_clusters",
    "parse_clusters",
    "CredentialError",
    "Credentials",
    "CriticalSection",
    "KeyFileProvider",
    "ExecutionError",
    "Executor",
    "Failure",
    "HostStatus",
    "SSHClient",
    "Success",
    "Aggregator",
    "Outcome",
    "StreamRenderer",
]
