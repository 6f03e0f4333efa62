from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from prwatch.merge_queue import display_status
from prwatch.models import CiAggregate, Issue, PollSnapshot, PullRequestRef


StatusKind = Literal["merged", "queue", "blocking", "ready", "waiting", "failing", "unknown"]

_DETAIL_RULE = "-" * 70


@dataclass(frozen=True)
class StatusLine:
    kind: StatusKind
    headline: str
    detail: str


def location_text(issue: Issue) -> str:
    return str(issue.location) if issue.location is not None else ""


def severity_tag(issue: Issue) -> str:
    if issue.severity is None:
        return ""
    if issue.severity.startswith("p"):
        return f"[{issue.severity.upper()}] "
    return f"[{issue.severity.capitalize()}] "


def generate_fix_prompt(issues: Sequence[Issue]) -> str:
    """Build the clipboard prompt handed to a coding assistant.

    Cursor and other bot findings share one section, Codex findings get their
    own, and only blocking CI failures are listed. Non-blocking failures are
    mentioned as a count so the reader knows they were seen.
    """
    comments = [issue for issue in issues if issue.is_comment]
    cursor_issues = [issue for issue in comments if issue.bot_kind != "codex"]
    codex_issues = [issue for issue in comments if issue.bot_kind == "codex"]
    ci_issues = [issue for issue in issues if issue.kind == "ci_failure"]
    blocking_ci = [issue for issue in ci_issues if issue.blocking]
    non_blocking_ci = [issue for issue in ci_issues if not issue.blocking]

    lines = ["Fix these PR issues:", ""]
    for heading, section in (
        ("**Cursorbot Issues:**", cursor_issues),
        ("**Codex Review Issues:**", codex_issues),
    ):
        if not section:
            continue
        lines.append(heading)
        for issue in section:
            lines.append(f"- {severity_tag(issue)}{issue.title}")
            location = location_text(issue)
            if location:
                lines.append(f"  File: {location}")
        lines.append("")

    if blocking_ci:
        lines.append("**CI Failures:**")
        for issue in blocking_ci:
            lines.append(f"- {issue.title}: {issue.description or 'Build failed'}")
            if issue.url:
                lines.append(f"  URL: {issue.url}")
        lines.append("")

    if non_blocking_ci:
        lines.append(
            f"*Note: {len(non_blocking_ci)} non-blocking CI failure(s) "
            "(Slack notifications, etc.) won't prevent merge.*"
        )
        lines.append("")

    lines.append("After fixing, commit and push the changes.")
    return "\n".join(lines)


def ci_summary(ci: CiAggregate) -> str:
    if ci.total == 0:
        return "No checks reported"
    failed = ci.failed_blocking + ci.failed_non_blocking
    if ci.pending > 0:
        text = f"{ci.pending} check(s) pending, {ci.passed} passed"
        if failed:
            text += f", {failed} failed"
    elif failed:
        text = f"{failed} check(s) failed, {ci.passed} passed"
    else:
        text = f"All {ci.total} check(s) passed"
    if ci.failed_non_blocking:
        text += f" ({ci.failed_non_blocking} non-blocking)"
    if ci.unknown:
        text += f" ({ci.unknown} unrecognized)"
    return text


def status_line(snapshot: PollSnapshot) -> StatusLine:
    ci = snapshot.ci
    queue = snapshot.merge_queue
    blocking = snapshot.blocking_issues
    detail = ci_summary(ci)
    if snapshot.degraded:
        detail += f" [degraded: {', '.join(snapshot.degraded_categories)}]"

    if queue.merged:
        return StatusLine(kind="merged", headline="PR MERGED!", detail=detail)
    if queue.in_queue:
        return StatusLine(
            kind="queue", headline=f"MERGE QUEUE: {display_status(queue)}", detail=detail
        )
    if blocking:
        return StatusLine(
            kind="blocking", headline=f"{len(blocking)} blocking issue(s) to fix", detail=detail
        )
    if "ci" in snapshot.degraded_categories:
        return StatusLine(kind="unknown", headline="CI STATUS UNAVAILABLE", detail=detail)
    if ci.all_green:
        return StatusLine(kind="ready", headline="READY TO MERGE", detail=detail)
    if ci.pending > 0 or ci.total == 0:
        return StatusLine(kind="waiting", headline="WAITING FOR CI", detail=detail)
    return StatusLine(kind="failing", headline="CI FAILING", detail=detail)


def issue_kind_label(issue: Issue) -> str:
    if issue.kind == "ci_failure":
        return "CI" if issue.blocking else "CI (non-blocking)"
    if issue.bot_kind == "codex":
        return "Codex"
    if issue.bot_kind == "cursorbot":
        return "Cursorbot"
    return "Bot"


def render_issue_summary(issue: Issue, *, is_new: bool = False) -> str:
    prefix = "NEW " if is_new else ""
    lines = [f"{prefix}{issue_kind_label(issue)}: {severity_tag(issue)}{issue.title}"]
    lines.append(f"  ID: {issue.issue_id}")
    location = location_text(issue)
    if location:
        lines.append(f"  File: {location}")
    if issue.url:
        lines.append(f"  URL: {issue.url}")
    return "\n".join(lines)


def render_snapshot(pr: PullRequestRef, snapshot: PollSnapshot) -> str:
    status = status_line(snapshot)
    new_ids = {issue.issue_id for issue in snapshot.new_issues}
    lines = [f"{pr} ({pr.html_url})", f"Polled at {snapshot.polled_at}", ""]
    if snapshot.active_issues:
        for issue in snapshot.active_issues:
            lines.append(
                render_issue_summary(
                    issue, is_new=issue.issue_id in new_ids and not snapshot.is_first_poll
                )
            )
    else:
        lines.append("No active issues.")
    lines.extend(["", status.headline, status.detail])
    return "\n".join(lines)


def render_issue_detail(issue: Issue) -> str:
    lines = [f"Issue Details: {issue.issue_id}", _DETAIL_RULE]
    if issue.kind == "ci_failure":
        lines.append(f"Type: CI Failure ({'blocking' if issue.blocking else 'non-blocking'})")
        lines.append(f"Name: {issue.name}")
        lines.append(f"Source: {issue.source}")
        if issue.conclusion:
            lines.append(f"Conclusion: {issue.conclusion}")
    else:
        lines.append(f"Type: {issue.name or 'Comment'}")
        lines.append(f"Author: {issue.author_login}")
        lines.append(f"Severity: {issue.severity.upper() if issue.severity else 'Unknown'}")
        location = location_text(issue)
        if location:
            lines.append(f"File: {location}")
        if issue.created_at:
            lines.append(f"Created: {issue.created_at}")
    if issue.url:
        lines.append(f"URL: {issue.url}")
    body = issue.body.strip()
    if body:
        lines.extend(["", "Content:", "", body])
    return "\n".join(lines)


def notification_text(pr: PullRequestRef, issues: Sequence[Issue]) -> tuple[str, str]:
    """Return (subtitle, message) for a new-issues desktop notification."""
    count = len(issues)
    subtitle = f"{count} issues on PR #{pr.number}" if count > 1 else f"Issue on PR #{pr.number}"
    if not issues:
        return subtitle, "PR Issue"
    first = issues[0]
    return subtitle, f"{severity_tag(first)}{first.title[:40]}"
