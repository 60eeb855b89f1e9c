#!/usr/bin/env python3
"""Main entry point for clrun."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .cancellation import Cancellation
from .config import DEFAULT_CLFILE, Clusters, Defaults, Host, MalformedDefinition, UnknownCluster, load_clusters
from .credentials import KeyFileProvider
from .executor import DEFAULT_CONNECT_TIMEOUT, Executor, SSHClient
from .output import Aggregator, Outcome, RunLog, StreamRenderer

PROG = "cl"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Run a command on every host of a cluster concurrently",
    )
    parser.add_argument("cluster", help="Name of the cluster to run on")
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Command to run; arguments are joined with single spaces",
    )
    parser.add_argument(
        "-f",
        "--file",
        type=Path,
        default=Path(DEFAULT_CLFILE),
        help=f"Cluster definition file (default: ./{DEFAULT_CLFILE})",
    )
    parser.add_argument(
        "--known-hosts",
        help="known_hosts file, or 'none' to skip host key verification",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_CONNECT_TIMEOUT,
        help=f"Connect timeout in seconds (default: {DEFAULT_CONNECT_TIMEOUT})",
    )
    parser.add_argument(
        "--separate-stderr",
        action="store_true",
        help="Capture remote stderr apart from stdout",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        help="Write per-host logs under this directory",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored host headers",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.error("a command is required")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s: %(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    defaults = Defaults.from_environment()

    # Load cluster definitions
    try:
        clusters = load_clusters(args.file, defaults)
        hosts = clusters.hosts(args.cluster)
    except FileNotFoundError as e:
        print(f"{PROG}: {e}", file=sys.stderr)
        return 1
    except MalformedDefinition as e:
        print(f"{PROG}: {args.file}: {e}", file=sys.stderr)
        return 1
    except UnknownCluster as e:
        print(f"{PROG}: {e}", file=sys.stderr)
        return 1

    try:
        provider = KeyFileProvider(args.known_hosts, home=defaults.home)
    except FileNotFoundError as e:
        print(f"{PROG}: {e}", file=sys.stderr)
        return 1

    client = SSHClient(connect_timeout=args.timeout, merge_stderr=not args.separate_stderr)
    command = " ".join(args.command)

    if args.dashboard:
        return _run_dashboard(args, clusters, hosts, command, provider, client)

    color = not args.no_color and sys.stderr.isatty()
    renderers = [StreamRenderer(PROG, color=color)]
    if args.log_dir:
        renderers.append(RunLog(args.log_dir, clusters.source_path))

    outcome = asyncio.run(run(hosts, command, Executor(provider, client), renderers))
    return outcome.exit_code


async def run(
    hosts: tuple[Host, ...],
    command: str,
    executor: Executor,
    renderers: list,
    cancellation: Cancellation | None = None,
) -> Outcome:
    """Run ``command`` on ``hosts`` and render results as they complete."""
    cancellation = cancellation or Cancellation()
    cancellation.install()
    try:
        async with executor.launch(hosts, command) as stream:
            return await Aggregator(*renderers, cancellation=cancellation).drain(stream)
    finally:
        cancellation.uninstall()


def _run_dashboard(args, clusters: Clusters, hosts, command, provider, client) -> int:
    """Run with the textual dashboard."""
    from .dashboard import Dashboard

    renderers = []
    if args.log_dir:
        renderers.append(RunLog(args.log_dir, clusters.source_path))

    app = Dashboard(args.cluster, hosts, command, provider, client, renderers=renderers)
    app.run()

    outcome = app.outcome
    if outcome.failed:
        print(f"\n{PROG}: {outcome.failed} of {outcome.total} hosts failed", file=sys.stderr)
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
