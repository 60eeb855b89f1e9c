"""SSH execution engine for clrun."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Protocol, Union

import asyncssh

from .config import Host
from .credentials import CredentialError, CredentialProvider, Credentials, CriticalSection

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 60


class HostStatus(Enum):
    """Status of a host's task."""

    PENDING = "pending"
    RESOLVING = "resolving"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionError(Exception):
    """Transport, authentication or session failure for a host."""

    def __init__(self, host: Host, cause: Exception | str):
        self.host = host
        self.cause = cause
        super().__init__(str(cause) or type(cause).__name__)


@dataclass(frozen=True)
class Success:
    """The command ran; its exit status is whatever the output says."""

    host: Host
    stdout: bytes
    stderr: bytes = b""


@dataclass(frozen=True)
class Failure:
    """The command could not be run on the host."""

    host: Host
    error: Exception


TaskResult = Union[Success, Failure]

# Type alias for status callback
StatusCallback = Callable[[Host, HostStatus], None]  # (host, status) -> None


class ExecutionClient(Protocol):
    async def execute(
        self, host: Host, credentials: Credentials, command: str
    ) -> tuple[bytes, bytes]: ...


class SSHClient:
    """Runs one command per connection over asyncssh."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        merge_stderr: bool = True,
    ):
        self.connect_timeout = connect_timeout
        self.merge_stderr = merge_stderr

    async def execute(
        self, host: Host, credentials: Credentials, command: str
    ) -> tuple[bytes, bytes]:
        """Run ``command`` and return its captured (stdout, stderr).

        A non-zero remote exit status is returned like any other output.
        """
        # Merging on the channel keeps stdout and stderr in the order
        # the remote process wrote them.
        stderr = asyncssh.STDOUT if self.merge_stderr else asyncssh.PIPE

        try:
            async with asyncssh.connect(
                host.hostname,
                port=host.port,
                username=host.user,
                client_keys=[credentials.ssh_key],
                known_hosts=credentials.known_hosts,
                connect_timeout=self.connect_timeout,
            ) as conn:
                result = await conn.run(
                    command, check=False, encoding=None, stderr=stderr
                )
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise ExecutionError(host, e) from e

        if result.exit_status:
            logger.debug("%s exited with status %s", host, result.exit_status)

        return _as_bytes(result.stdout), _as_bytes(result.stderr)


def _as_bytes(data: bytes | str | None) -> bytes:
    if data is None:
        return b""
    if isinstance(data, str):
        return data.encode()
    return data


class Executor:
    """Dispatches one task per host."""

    def __init__(
        self,
        provider: CredentialProvider,
        client: ExecutionClient,
        on_status: StatusCallback | None = None,
    ):
        self.credentials = CriticalSection(provider)
        self.client = client
        self.on_status = on_status

    def _emit_status(self, host: Host, status: HostStatus) -> None:
        """Emit status change for a host."""
        logger.debug("%s: %s", host, status.value)
        if self.on_status:
            self.on_status(host, status)

    def launch(self, hosts: Iterable[Host], command: str) -> ResultStream:
        """Start a task for every host and return the stream of their results.

        Must be called with a running event loop.
        """
        tasks: dict[asyncio.Task, Host] = {}
        for host in hosts:
            self._emit_status(host, HostStatus.PENDING)
            task = asyncio.create_task(
                self._run_host(host, command), name=f"clrun:{host.address}"
            )
            tasks[task] = host
        return ResultStream(tasks)

    async def _run_host(self, host: Host, command: str) -> TaskResult:
        """Resolve credentials for a host and run the command there.

        Anything other than a credential or execution error propagates to
        the ResultStream, which reports it as the host's failure.
        """
        try:
            return await self._attempt(host, command)
        except Exception:
            self._emit_status(host, HostStatus.FAILED)
            raise

    async def _attempt(self, host: Host, command: str) -> TaskResult:
        self._emit_status(host, HostStatus.RESOLVING)
        try:
            credentials = await self.credentials.resolve(host)
        except CredentialError as e:
            self._emit_status(host, HostStatus.FAILED)
            return Failure(host, e)

        self._emit_status(host, HostStatus.RUNNING)
        try:
            stdout, stderr = await self.client.execute(host, credentials, command)
        except ExecutionError as e:
            self._emit_status(host, HostStatus.FAILED)
            return Failure(host, e)

        self._emit_status(host, HostStatus.SUCCESS)
        return Success(host, stdout, stderr)


class ResultStream:
    """Results of a batch of host tasks, in completion order.

    Finished tasks land in an unbounded queue, so a task never waits on
    a reader. Use as an async context manager: leaving it cancels and
    joins every task that has not finished.
    """

    def __init__(self, tasks: dict[asyncio.Task, Host]):
        self._tasks = tasks
        self._done: asyncio.Queue[asyncio.Task] = asyncio.Queue()
        self.total = len(tasks)
        self.received = 0
        for task in tasks:
            task.add_done_callback(self._done.put_nowait)

    @property
    def pending(self) -> int:
        return self.total - self.received

    @property
    def exhausted(self) -> bool:
        return self.received >= self.total

    async def next(self) -> TaskResult:
        """Wait for the next finished task and return its result."""
        task = await self._done.get()
        self.received += 1

        host = self._tasks[task]
        if task.cancelled():
            return Failure(host, ExecutionError(host, "task cancelled"))

        error = task.exception()
        if error is not None:
            logger.error("Task for %s raised %r", host, error)
            return Failure(host, error)

        return task.result()

    async def aclose(self) -> None:
        running = [task for task in self._tasks if not task.done()]
        if not running:
            return

        logger.debug("Abandoning %d running tasks", len(running))
        for task in running:
            task.cancel()
        await asyncio.gather(*running, return_exceptions=True)

    async def __aenter__(self) -> ResultStream:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
