from __future__ import annotations

from collections.abc import Callable
import logging
import threading

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from prwatch.config import ConfigError, WatchConfig, parse_pr_reference
from prwatch.github_gateway import GitHubGateway, PullRequestNotFoundError
from prwatch.models import Issue, PollSnapshot, PullRequestRef
from prwatch.observability import log_event
from prwatch.rendering import render_issue_detail, render_issue_summary, status_line
from prwatch.watcher import PullRequestWatcher


LOGGER = logging.getLogger("prwatch.mcp_server")

WatcherFactory = Callable[[PullRequestRef], PullRequestWatcher]

_INSTRUCTIONS = """
prwatch watches one GitHub pull request for review-bot comments, CI failures
and merge queue changes. Call watch_pr first, then check_for_issues whenever
you want fresh results. Fix what you can, and use mark_issue_handled to drop
issues you have dealt with from later checks.
"""


class WatchSession:
    """State behind the MCP tools: one watched pull request and the issue ids
    the client has marked as handled.

    Handled ids are a client-side filter only. They never change what the
    watcher considers active, so a handled issue still blocks "ready to merge".
    """

    def __init__(self, watcher_factory: WatcherFactory) -> None:
        self._watcher_factory = watcher_factory
        self._lock = threading.Lock()
        self._pr: PullRequestRef | None = None
        self._watcher: PullRequestWatcher | None = None
        self._handled_ids: set[str] = set()
        self._last_checked_at: str | None = None

    @property
    def pr(self) -> PullRequestRef | None:
        return self._pr

    @property
    def handled_ids(self) -> frozenset[str]:
        return frozenset(self._handled_ids)

    def watch(self, pr_ref: str, *, owner: str | None = None, repo: str | None = None) -> str:
        pr = _resolve_pr(pr_ref, owner=owner, repo=repo)
        with self._lock:
            self._pr = pr
            self._watcher = self._watcher_factory(pr)
            self._handled_ids.clear()
            snapshot = self._poll()
        log_event(LOGGER, "mcp_watch_started", pr=str(pr))

        lines = [f"Now watching {pr} ({pr.html_url})", ""]
        lines.append(f"Found {len(snapshot.active_issues)} active issue(s):")
        lines.extend(render_issue_summary(issue) for issue in snapshot.active_issues)
        lines.extend(["", _status_text(snapshot), "", "Use check_for_issues to poll again."])
        return "\n".join(lines)

    def check_for_issues(self, *, include_handled: bool = False) -> str:
        with self._lock:
            pr = self._require_pr()
            snapshot = self._poll()
            handled = set(self._handled_ids)

        issues = [
            issue
            for issue in snapshot.active_issues
            if include_handled or issue.issue_id not in handled
        ]
        qualifier = "" if include_handled else "unhandled "
        if not issues:
            return f"No {qualifier}issues on {pr}\n{_status_text(snapshot)}"

        new_ids = {issue.issue_id for issue in snapshot.new_issues}
        lines = [f"Found {len(issues)} {qualifier}issue(s) on {pr}:", ""]
        for issue in issues:
            is_new = issue.issue_id in new_ids and not snapshot.is_first_poll
            lines.append(render_issue_summary(issue, is_new=is_new))
        lines.extend(
            [
                "",
                _status_text(snapshot),
                "",
                "Use get_issue_details for the full text, "
                "and mark_issue_handled to dismiss an issue.",
            ]
        )
        return "\n".join(lines)

    def get_issue_details(self, issue_id: str) -> str:
        normalized = issue_id.strip()
        with self._lock:
            self._require_pr()
            issue = self._lookup(normalized)
            if issue is None:
                self._poll()
                issue = self._lookup(normalized)
        if issue is None:
            raise ToolError(f"Issue {normalized} is not active on {self._pr}")
        return render_issue_detail(issue)

    def mark_handled(self, issue_id: str) -> str:
        normalized = issue_id.strip()
        with self._lock:
            self._handled_ids.add(normalized)
        log_event(LOGGER, "mcp_issue_handled", issue_id=normalized)
        return f"Marked {normalized} as handled; it will not appear in later checks."

    def describe(self) -> str:
        with self._lock:
            if self._pr is None:
                return "No pull request is being watched."
            return "\n".join(
                [
                    f"Watching: {self._pr} ({self._pr.html_url})",
                    f"Last check: {self._last_checked_at or 'never'}",
                    f"Handled issues: {len(self._handled_ids)}",
                ]
            )

    def clear_handled(self) -> str:
        with self._lock:
            count = len(self._handled_ids)
            self._handled_ids.clear()
        return f"Cleared {count} handled issue(s); every active issue will show in the next check."

    def _require_pr(self) -> PullRequestRef:
        if self._pr is None or self._watcher is None:
            raise ToolError("No pull request is being watched; call watch_pr first")
        return self._pr

    def _poll(self) -> PollSnapshot:
        assert self._watcher is not None
        try:
            snapshot = self._watcher.poll()
        except PullRequestNotFoundError as exc:
            raise ToolError(str(exc)) from exc
        if snapshot is None:
            snapshot = self._watcher.last_snapshot
        assert snapshot is not None
        self._last_checked_at = snapshot.polled_at
        return snapshot

    def _lookup(self, issue_id: str) -> Issue | None:
        assert self._watcher is not None
        return self._watcher.get_active_issue_by_id(issue_id)


def build_server(session: WatchSession) -> FastMCP:
    server = FastMCP(name="prwatch", instructions=_INSTRUCTIONS)

    @server.tool
    def watch_pr(pr: str, owner: str | None = None, repo: str | None = None) -> str:
        """Start watching a pull request for review-bot comments and CI failures.

        ``pr`` is a URL (https://github.com/OWNER/REPO/pull/N), OWNER/REPO#N, or a
        bare number when ``owner`` and ``repo`` are given.
        """
        return session.watch(pr, owner=owner, repo=repo)

    @server.tool
    def check_for_issues(include_handled: bool = False) -> str:
        """Poll the watched pull request and list its active issues that are not handled yet."""
        return session.check_for_issues(include_handled=include_handled)

    @server.tool
    def get_issue_details(issue_id: str) -> str:
        """Full record of one active issue, by the id check_for_issues reported."""
        return session.get_issue_details(issue_id)

    @server.tool
    def mark_issue_handled(issue_id: str) -> str:
        """Hide an issue from later check_for_issues results."""
        return session.mark_handled(issue_id)

    @server.tool
    def get_watched_pr() -> str:
        """The watched pull request and when it was last checked."""
        return session.describe()

    @server.tool
    def clear_handled() -> str:
        """Forget every handled issue id."""
        return session.clear_handled()

    return server


def run_mcp_server(config: WatchConfig) -> None:
    def make_watcher(pr: PullRequestRef) -> PullRequestWatcher:
        return PullRequestWatcher(
            GitHubGateway(pr),
            classifier=config.classifier(),
            review_bots=config.review_bots,
        )

    log_event(LOGGER, "mcp_server_started", transport="stdio")
    build_server(WatchSession(make_watcher)).run()


def _resolve_pr(pr_ref: str, *, owner: str | None, repo: str | None) -> PullRequestRef:
    value = pr_ref.strip()
    number = value.removeprefix("#")
    if number.isdigit() and owner and repo:
        value = f"{owner}/{repo}#{number}"
    try:
        return parse_pr_reference(value, environ={})
    except ConfigError as exc:
        raise ToolError(str(exc)) from exc


def _status_text(snapshot: PollSnapshot) -> str:
    status = status_line(snapshot)
    return f"{status.headline}\n{status.detail}"
