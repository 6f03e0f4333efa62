from __future__ import annotations

import argparse
from functools import partial
import logging
from pathlib import Path
import re
import signal
import sys

from prwatch.config import ConfigError, WatchConfig, parse_pr_reference, resolve_config
from prwatch.github_gateway import GitHubGateway, PullRequestNotFoundError
from prwatch.mcp_server import run_mcp_server
from prwatch.models import (
    NewIssuesEvent,
    NotificationEvent,
    PollSnapshot,
    PullRequestRef,
    QueueTransitionEvent,
    ReadyToMergeEvent,
)
from prwatch.notifier import DesktopNotifier, copy_to_clipboard
from prwatch.observability import configure_logging, log_event
from prwatch.rendering import generate_fix_prompt, render_issue_detail, render_snapshot
from prwatch.watch_tui import run_watch_tui
from prwatch.watcher import PollLoop, PullRequestWatcher


LOGGER = logging.getLogger("prwatch.cli")
_ISSUE_ID_PATTERN = re.compile(r"^(review|issue|ci|status)-\d+$")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prwatch")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser(
        "watch", help="Watch a pull request for new review comments and CI failures"
    )
    watch_parser.add_argument(
        "pr_ref",
        nargs="?",
        default=None,
        help="https://github.com/OWNER/REPO/pull/N or OWNER/REPO#N (defaults to $PR_URL)",
    )
    watch_parser.add_argument("--config", type=Path, default=None)
    watch_parser.add_argument(
        "--once", action="store_true", help="Poll once, print the result and exit"
    )
    watch_parser.add_argument(
        "--no-tui", action="store_true", help="Print plain-text updates instead of the TUI"
    )
    _add_verbose_argument(watch_parser)

    detail_parser = subparsers.add_parser(
        "detail", help="Print the full record of one active issue"
    )
    detail_parser.add_argument("issue_id", help="review-N, issue-N, ci-N or status-N")
    detail_parser.add_argument(
        "pr_ref", help="https://github.com/OWNER/REPO/pull/N or OWNER/REPO#N"
    )
    detail_parser.add_argument("--config", type=Path, default=None)
    _add_verbose_argument(detail_parser)

    mcp_parser = subparsers.add_parser("mcp", help="Serve the watcher as MCP tools over stdio")
    mcp_parser.add_argument("--config", type=Path, default=None)
    _add_verbose_argument(mcp_parser)

    return parser


def main() -> None:
    args = build_parser().parse_args()
    try:
        config = resolve_config(args.config)
        pr = None if args.command == "mcp" else parse_pr_reference(args.pr_ref)
    except ConfigError as exc:
        raise SystemExit(f"prwatch: {exc}") from exc

    use_tui = args.command == "watch" and not args.no_tui and not args.once
    if use_tui:
        configure_logging(args.verbose or "low", state_dir=config.state_dir, stream=False)
    else:
        configure_logging(
            args.verbose,
            state_dir=config.state_dir if args.verbose else None,
        )

    if args.command == "mcp":
        run_mcp_server(config)
        return
    assert pr is not None
    try:
        if args.command == "watch":
            _cmd_watch(config, pr, once=bool(args.once), use_tui=use_tui)
            return
        if args.command == "detail":
            _cmd_detail(config, pr, issue_id=str(args.issue_id))
            return
    except PullRequestNotFoundError as exc:
        raise SystemExit(f"prwatch: {exc}") from exc

    raise RuntimeError(f"Unknown command: {args.command}")


def _add_verbose_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging (default mode: high)",
    )


def _cmd_watch(config: WatchConfig, pr: PullRequestRef, *, once: bool, use_tui: bool) -> None:
    gateway = GitHubGateway(pr)
    notifier = DesktopNotifier(enabled=config.desktop_notifications)
    if use_tui:
        run_watch_tui(
            pr=pr,
            source=gateway,
            poll_interval_seconds=config.poll_interval_seconds,
            classifier=config.classifier(),
            review_bots=config.review_bots,
            notifier=notifier,
        )
        return

    watcher = PullRequestWatcher(
        gateway,
        classifier=config.classifier(),
        review_bots=config.review_bots,
        on_poll_result=partial(_print_snapshot, pr),
        on_notify=partial(_announce, pr, notifier),
    )
    loop = PollLoop(watcher, interval_seconds=config.poll_interval_seconds)
    log_event(
        LOGGER,
        "watch_started",
        pr=str(pr),
        mode="once" if once else "headless",
        poll_interval_seconds=config.poll_interval_seconds,
    )
    if not once and hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, lambda _signum, _frame: loop.request_refresh())
    try:
        loop.run(once=once)
    except KeyboardInterrupt:
        loop.stop()


def _cmd_detail(config: WatchConfig, pr: PullRequestRef, *, issue_id: str) -> None:
    normalized = issue_id.strip()
    if _ISSUE_ID_PATTERN.match(normalized) is None:
        raise SystemExit(
            "prwatch: invalid issue id; expected review-<N>, issue-<N>, ci-<N> or status-<N>"
        )
    watcher = PullRequestWatcher(
        GitHubGateway(pr),
        classifier=config.classifier(),
        review_bots=config.review_bots,
    )
    watcher.poll()
    issue = watcher.get_active_issue_by_id(normalized)
    if issue is None:
        raise SystemExit(f"prwatch: no active issue {normalized} on {pr}")
    print(render_issue_detail(issue))


def _print_snapshot(pr: PullRequestRef, snapshot: PollSnapshot) -> None:
    print(render_snapshot(pr, snapshot), flush=True)


def _announce(pr: PullRequestRef, notifier: DesktopNotifier, event: NotificationEvent) -> None:
    if isinstance(event, NewIssuesEvent):
        prompt = generate_fix_prompt((*event.issues, *event.non_blocking_issues))
        copied = copy_to_clipboard(prompt)
        print(f"\nNEW ISSUES: {len(event.issues)} blocking issue(s) on {pr}")
        if copied:
            print("Fix prompt copied to clipboard:")
        print(prompt)
    elif isinstance(event, ReadyToMergeEvent):
        print(f"\nREADY TO MERGE: {pr.html_url}")
    elif isinstance(event, QueueTransitionEvent):
        print(f"\nMERGE QUEUE: {event.detail}")
    sys.stdout.write("\a")
    sys.stdout.flush()
    notifier.notify(pr, event)
