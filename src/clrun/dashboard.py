"""TUI Dashboard for clrun."""

from __future__ import annotations

import signal
from typing import Sequence

from textual.app import App, ComposeResult
from textual.containers import ScrollableContainer
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker

from .cancellation import Cancellation
from .config import Host
from .credentials import CredentialProvider
from .executor import ExecutionClient, Executor, Failure, HostStatus, Success
from .output import Aggregator, Outcome, Renderer

STATUS_ICONS = {
    HostStatus.PENDING: ("·", "dim"),
    HostStatus.RESOLVING: ("…", "yellow"),
    HostStatus.RUNNING: ("▶", "yellow"),
    HostStatus.SUCCESS: ("✔", "green"),
    HostStatus.FAILED: ("✘", "red"),
}


class HostPanel(Static):
    """A panel displaying the captured output of a single host."""

    status: reactive[HostStatus] = reactive(HostStatus.PENDING)

    def __init__(self, host: Host, **kwargs) -> None:
        super().__init__(**kwargs)
        self.host = host

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), classes="header")
        yield RichLog(highlight=False, markup=False, wrap=True, auto_scroll=True)

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        return f"[{color}]{icon}[/] [{color}][bold]{self.host.address}[/bold][/] [{color}]{self.host.user}[/]"

    def watch_status(self, status: HostStatus) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        self.query_one(".header", Label).update(self._get_header())

    def show_output(self, text: str) -> None:
        self.query_one(RichLog).write(text)


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    state: reactive[str] = reactive("Running...")

    def render(self) -> str:
        return (
            f"Progress: {self.completed}/{self.total} hosts complete, "
            f"{self.failed} failed | {self.state} | Press 'q' to quit"
        )


class HostOutput(Message):
    """Captured output, or the error, of a finished host."""

    def __init__(self, host: Host, text: str, failed: bool = False) -> None:
        super().__init__()
        self.host = host
        self.text = text
        self.failed = failed


class HostStatusChange(Message):
    """Message for host status change."""

    def __init__(self, host: Host, status: HostStatus) -> None:
        super().__init__()
        self.host = host
        self.status = status


class Dashboard(App):
    """Shows one panel per host, filled in as each host finishes."""

    CSS = """
    #host-container {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
        height: 1fr;
    }

    HostPanel {
        border: solid $primary;
        height: auto;
        min-height: 8;
    }

    HostPanel Label {
        padding: 0 1;
        background: $surface;
    }

    HostPanel RichLog {
        height: auto;
        max-height: 20;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(
        self,
        cluster_name: str,
        hosts: Sequence[Host],
        remote_command: str,
        provider: CredentialProvider,
        client: ExecutionClient,
        renderers: Sequence[Renderer] = (),
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.cluster_name = cluster_name
        self.target_hosts = tuple(hosts)
        self.remote_command = remote_command
        self.executor = Executor(provider, client, on_status=self._on_status)
        self.renderers = tuple(renderers)
        self.cancellation = Cancellation()
        self.outcome = Outcome(total=len(self.target_hosts))
        self.panels: dict[Host, HostPanel] = {}
        self._worker: Worker | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with ScrollableContainer(id="host-container"):
            for i, host in enumerate(self.target_hosts):
                if host in self.panels:
                    continue
                self.panels[host] = HostPanel(host, id=f"host-{i}")
                yield self.panels[host]
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        self.title = f"{self.cluster_name}: {self.remote_command}"
        self.query_one(StatusBar).total = len(self.target_hosts)
        self._worker = self.run_worker(self._run_execution(), exclusive=True)

    async def _run_execution(self) -> None:
        """Run every host and collect results until done or cancelled."""
        aggregator = Aggregator(self, *self.renderers, cancellation=self.cancellation)
        async with self.executor.launch(self.target_hosts, self.remote_command) as stream:
            self.outcome = await aggregator.drain(stream)

        status_bar = self.query_one(StatusBar)
        status_bar.state = "Interrupted" if self.outcome.cancelled else "Complete"

    def _on_status(self, host: Host, status: HostStatus) -> None:
        self.post_message(HostStatusChange(host, status))

    def host_succeeded(self, result: Success) -> None:
        text = (result.stdout + result.stderr).decode(errors="replace")
        self.post_message(HostOutput(result.host, text))

    def host_failed(self, result: Failure) -> None:
        self.post_message(HostOutput(result.host, f"ERROR: {result.error}", failed=True))

    def cancelled(self, outcome: Outcome, pending: int) -> None:
        self.query_one(StatusBar).state = f"Interrupted, {pending} host(s) did not report"

    def on_host_output(self, message: HostOutput) -> None:
        """Handle HostOutput message in main thread."""
        panel = self.panels.get(message.host)
        if panel is not None:
            panel.show_output(message.text)

        status_bar = self.query_one(StatusBar)
        status_bar.completed += 1
        if message.failed:
            status_bar.failed += 1

    def on_host_status_change(self, message: HostStatusChange) -> None:
        """Handle HostStatusChange message in main thread."""
        panel = self.panels.get(message.host)
        if panel is not None:
            panel.status = message.status

    async def action_quit(self) -> None:
        """Stop waiting on hosts and quit."""
        if self._worker and self._worker.is_running:
            self.cancellation.cancel(signal.SIGINT)
            await self._worker.wait()
        self.exit()
