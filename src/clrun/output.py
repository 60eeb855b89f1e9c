"""Aggregation of host results into terminal output and an exit code."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Protocol, TextIO

from .cancellation import Cancellation
from .config import Host
from .executor import Failure, ResultStream, Success

logger = logging.getLogger(__name__)

INDENT = b"  "

# ANSI colors for different hosts
COLORS = [
    "\033[36m",  # Cyan
    "\033[33m",  # Yellow
    "\033[35m",  # Magenta
    "\033[32m",  # Green
    "\033[34m",  # Blue
    "\033[91m",  # Light Red
    "\033[96m",  # Light Cyan
    "\033[93m",  # Light Yellow
]
RESET = "\033[0m"


@dataclass
class Outcome:
    """Process-level result of a run."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: bool = False
    signum: int | None = None

    @property
    def exit_code(self) -> int:
        if self.cancelled and self.signum is not None:
            return 128 + self.signum
        return 1 if self.failed else 0


class Renderer(Protocol):
    def host_succeeded(self, result: Success) -> None: ...

    def host_failed(self, result: Failure) -> None: ...

    def cancelled(self, outcome: Outcome, pending: int) -> None: ...


class Aggregator:
    """Drains a ResultStream into renderers until it is exhausted or cancelled."""

    def __init__(self, *renderers: Renderer, cancellation: Cancellation):
        self.renderers = renderers
        self.cancellation = cancellation

    async def drain(self, stream: ResultStream) -> Outcome:
        outcome = Outcome(total=stream.total)
        waiter = asyncio.ensure_future(self.cancellation.wait())

        try:
            while not stream.exhausted and not self.cancellation.cancelled:
                getter = asyncio.ensure_future(stream.next())
                done, _ = await asyncio.wait(
                    {getter, waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    self._record(getter.result(), outcome)
                    continue

                getter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await getter
        finally:
            waiter.cancel()

        if self.cancellation.cancelled and not stream.exhausted:
            outcome.cancelled = True
            outcome.signum = self.cancellation.signum
            for renderer in self.renderers:
                renderer.cancelled(outcome, stream.pending)

        return outcome

    def _record(self, result: Success | Failure, outcome: Outcome) -> None:
        if isinstance(result, Failure):
            outcome.failed += 1
            for renderer in self.renderers:
                renderer.host_failed(result)
        else:
            outcome.succeeded += 1
            for renderer in self.renderers:
                renderer.host_succeeded(result)


def indent_lines(data: bytes, prefix: bytes = INDENT) -> bytes:
    """Prefix every line of ``data``, ending it with a newline."""
    if not data:
        return b""
    return b"".join(prefix + line for line in data.splitlines(keepends=True)) + (
        b"" if data.endswith(b"\n") else b"\n"
    )


class StreamRenderer:
    """Writes results to the terminal.

    Headers and errors go to ``stderr``; a host's captured output goes to
    ``stdout`` in a single write, indented, so hosts never interleave.
    """

    def __init__(
        self,
        prog: str,
        stdout: BinaryIO | None = None,
        stderr: TextIO | None = None,
        color: bool = False,
    ):
        self.prog = prog
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.stderr = stderr if stderr is not None else sys.stderr
        self.color = color
        self._host_colors: dict[Host, str] = {}

    def _colorize(self, host: Host, text: str) -> str:
        if not self.color:
            return text
        color = self._host_colors.setdefault(
            host, COLORS[len(self._host_colors) % len(COLORS)]
        )
        return f"{color}{text}{RESET}"

    def host_succeeded(self, result: Success) -> None:
        self.stderr.write(self._colorize(result.host, f"Host: {result.host.address}") + "\n")
        self.stderr.flush()

        self.stdout.write(indent_lines(result.stdout))
        self.stdout.flush()

        if result.stderr:
            self.stderr.write(indent_lines(result.stderr).decode(errors="replace"))
            self.stderr.flush()

    def host_failed(self, result: Failure) -> None:
        self.stderr.write(f"{self.prog}: {result.host.address}: {result.error}\n")
        self.stderr.flush()

    def cancelled(self, outcome: Outcome, pending: int) -> None:
        name = Cancellation.describe(outcome.signum)
        self.stderr.write(
            f"{self.prog}: interrupted by {name}, {pending} host(s) did not report\n"
        )
        self.stderr.flush()


class RunLog:
    """Writes each host's result to ``<log_dir>/<timestamp>/<user>@<address>.log``."""

    def __init__(self, log_dir: Path, source_path: Path | None = None):
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = Path(log_dir).expanduser() / timestamp
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self._used: set[Path] = set()

        # Copy the cluster definition next to the logs
        if source_path and source_path.exists():
            shutil.copy(source_path, self.run_dir / source_path.name)

        logger.info("Writing host logs to %s", self.run_dir)

    def log_file(self, host: Host) -> Path:
        """Pick an unused ``<user>@<address>.log`` name for a host.

        A host listed twice gets ``.1.log``, ``.2.log`` and so on.
        """
        name = str(host).replace("/", "_").replace(":", "_")
        path = self.run_dir / f"{name}.log"
        suffix = 0
        while path in self._used:
            suffix += 1
            path = self.run_dir / f"{name}.{suffix}.log"
        self._used.add(path)
        return path

    def host_succeeded(self, result: Success) -> None:
        with open(self.log_file(result.host), "wb") as f:
            f.write(result.stdout)
            if result.stderr:
                f.write(result.stderr)

    def host_failed(self, result: Failure) -> None:
        with open(self.log_file(result.host), "w") as f:
            f.write(f"ERROR: {result.error}\n")

    def cancelled(self, outcome: Outcome, pending: int) -> None:
        with open(self.run_dir / "CANCELLED", "w") as f:
            f.write(f"{Cancellation.describe(outcome.signum)}: {pending} host(s) did not report\n")
