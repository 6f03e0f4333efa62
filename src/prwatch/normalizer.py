from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from functools import partial
import logging
import re
from typing import TypeVar

from prwatch.classifier import BlockingClassifier
from prwatch.models import (
    BotKind,
    CiAggregate,
    Issue,
    IssueLocation,
    RawCheckRun,
    RawCiStatus,
    RawCommitStatus,
    RawIssueComment,
    RawReviewComment,
    RawReviewThread,
)
from prwatch.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prwatch.normalizer")

REVIEW_BOTS: tuple[str, ...] = ("cursor", "codex-connector", "codex")
_FAILED_CHECK_CONCLUSIONS = frozenset({"failure", "cancelled", "timed_out"})
_GREEN_CHECK_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})
# Known conclusions that fail the check without being reported as an issue.
_RED_CHECK_CONCLUSIONS = _FAILED_CHECK_CONCLUSIONS | frozenset(
    {"action_required", "stale", "startup_failure"}
)
_FAILED_STATUS_STATES = frozenset({"failure", "error"})
_SEVERITY_PATTERN = re.compile(r"\b(High|Medium|Low)\s+Severity\b", re.IGNORECASE)
_PRIORITY_PATTERN = re.compile(r"\b(P[0-2])\b", re.IGNORECASE)

_RawT = TypeVar("_RawT")


class MalformedEventError(ValueError):
    """A single raw record could not be normalized; the rest of the batch is kept."""


def is_review_bot(login: str | None, extra_bots: Iterable[str] = ()) -> bool:
    if not login:
        return False
    lowered = login.lower()
    roster = (*REVIEW_BOTS, *(bot.strip().lower() for bot in extra_bots if bot.strip()))
    return any(bot in lowered for bot in roster)


def bot_kind_for_login(login: str) -> BotKind:
    lowered = login.lower()
    if "codex" in lowered:
        return "codex"
    if "cursor" in lowered:
        return "cursorbot"
    return "other"


def extract_severity(body: str) -> str | None:
    severity = _SEVERITY_PATTERN.search(body)
    if severity is not None:
        return severity.group(1).lower()
    priority = _PRIORITY_PATTERN.search(body)
    if priority is not None:
        return priority.group(1).lower()
    return None


def normalize_review_threads(
    threads: Sequence[RawReviewThread], *, extra_bots: Iterable[str] = ()
) -> list[Issue]:
    bots = tuple(extra_bots)
    issues: list[Issue] = []
    skipped_threads = 0
    for thread in threads:
        if thread.is_resolved or thread.is_outdated:
            skipped_threads += 1
            continue
        bot_comments = [c for c in thread.comments if is_review_bot(c.author_login, bots)]
        issues.extend(
            _normalize_each(
                bot_comments,
                partial(_review_issue, path=thread.path, line=thread.line, source="review_thread"),
                category="review_comments",
            )
        )
    log_event(
        LOGGER,
        "review_threads_normalized",
        thread_count=len(threads),
        skipped_thread_count=skipped_threads,
        issue_count=len(issues),
    )
    return dedupe_issues(issues)


def normalize_review_comments_fallback(
    comments: Sequence[RawReviewComment], *, extra_bots: Iterable[str] = ()
) -> list[Issue]:
    """Degraded path without thread flags.

    Resolved threads are invisible here, so a degraded poll may show comments a
    full poll would have suppressed. Outdated comments are still detected: the
    platform clears ``position`` once the surrounding code changes.
    """
    bots = tuple(extra_bots)
    kept: list[RawReviewComment] = []
    for comment in comments:
        if not is_review_bot(comment.author_login, bots):
            continue
        if comment.position is None and comment.original_position is not None:
            continue
        kept.append(comment)
    issues = _normalize_each(
        kept,
        lambda comment: _review_issue(
            comment,
            path=comment.path,
            line=comment.line if comment.line is not None else comment.original_line,
            source="review_comment_fallback",
        ),
        category="review_comments",
    )
    return dedupe_issues(issues)


def normalize_issue_comments(
    comments: Sequence[RawIssueComment], *, extra_bots: Iterable[str] = ()
) -> list[Issue]:
    bots = tuple(extra_bots)
    bot_comments = [c for c in comments if is_review_bot(c.author_login, bots)]
    return dedupe_issues(
        _normalize_each(bot_comments, _general_issue, category="general_comments")
    )


def normalize_ci_failures(ci: RawCiStatus, classifier: BlockingClassifier) -> list[Issue]:
    failed_runs = [
        run for run in ci.check_runs if (run.conclusion or "").lower() in _FAILED_CHECK_CONCLUSIONS
    ]
    check_issues = _normalize_each(
        failed_runs, lambda run: _check_run_issue(run, classifier), category="ci"
    )
    check_urls = {issue.url for issue in check_issues if issue.url}
    check_names = {issue.name.lower() for issue in check_issues if issue.name}

    failed_statuses: list[RawCommitStatus] = []
    for status in ci.commit_statuses:
        if status.state.lower() not in _FAILED_STATUS_STATES:
            continue
        if _reported_by_checks(status, check_urls, check_names):
            continue
        failed_statuses.append(status)
    status_issues = _normalize_each(
        failed_statuses, lambda status: _commit_status_issue(status, classifier), category="ci"
    )
    return dedupe_issues([*check_issues, *status_issues])


def aggregate_ci(ci: RawCiStatus, classifier: BlockingClassifier) -> CiAggregate:
    total = pending = passed = failed_blocking = failed_non_blocking = unknown = 0
    run_urls = {run.resolved_url for run in ci.check_runs if run.resolved_url}
    run_names = {run.name.lower() for run in ci.check_runs if run.name}
    for run in ci.check_runs:
        total += 1
        conclusion = (run.conclusion or "").lower()
        if run.status.lower() != "completed":
            pending += 1
        elif conclusion in _GREEN_CHECK_CONCLUSIONS:
            passed += 1
        elif conclusion in _RED_CHECK_CONCLUSIONS:
            if classifier.is_blocking(run.name):
                failed_blocking += 1
            else:
                failed_non_blocking += 1
        else:
            unknown += 1
            log_warning_event(
                LOGGER,
                "ci_state_unrecognized",
                kind="check_run",
                name=run.name,
                state=run.conclusion,
            )

    for status in ci.commit_statuses:
        if _reported_by_checks(status, run_urls, run_names):
            continue
        total += 1
        state = status.state.lower()
        if state == "pending":
            pending += 1
        elif state == "success":
            passed += 1
        elif state in _FAILED_STATUS_STATES:
            if classifier.is_blocking(status.context):
                failed_blocking += 1
            else:
                failed_non_blocking += 1
        else:
            unknown += 1
            log_warning_event(
                LOGGER,
                "ci_state_unrecognized",
                kind="commit_status",
                name=status.context,
                state=status.state,
            )

    return CiAggregate(
        total=total,
        pending=pending,
        passed=passed,
        failed_blocking=failed_blocking,
        failed_non_blocking=failed_non_blocking,
        unknown=unknown,
    )


def _reported_by_checks(status: RawCommitStatus, urls: set[str], names: set[str]) -> bool:
    # The same job often reports through both the checks and statuses APIs.
    return bool(status.target_url and status.target_url in urls) or bool(
        status.context and status.context.lower() in names
    )


def dedupe_issues(issues: Iterable[Issue]) -> list[Issue]:
    seen: set[str] = set()
    out: list[Issue] = []
    for issue in issues:
        if issue.issue_id in seen:
            continue
        seen.add(issue.issue_id)
        out.append(issue)
    return out


def _normalize_each(
    records: Sequence[_RawT],
    normalize: Callable[[_RawT], Issue],
    *,
    category: str,
) -> list[Issue]:
    issues: list[Issue] = []
    for record in records:
        try:
            issues.append(normalize(record))
        except MalformedEventError as exc:
            log_warning_event(
                LOGGER,
                "malformed_event_skipped",
                category=category,
                record_type=type(record).__name__,
                error=str(exc),
            )
    return issues


def _require_id(value: int | None, *, record: str) -> int:
    if value is None:
        raise MalformedEventError(f"{record} is missing its id")
    return value


def _review_issue(
    comment: RawReviewComment, *, path: str | None, line: int | None, source: str
) -> Issue:
    comment_id = _require_id(comment.comment_id, record="review comment")
    return Issue(
        issue_id=f"review-{comment_id}",
        kind="review_comment",
        body=comment.body,
        url=comment.url,
        blocking=True,
        bot_kind=bot_kind_for_login(comment.author_login),
        location=IssueLocation(path=path, line=line) if path else None,
        created_at=comment.created_at,
        name="Review Comment",
        source=source,
        author_login=comment.author_login,
        severity=extract_severity(comment.body),
    )


def _general_issue(comment: RawIssueComment) -> Issue:
    comment_id = _require_id(comment.comment_id, record="issue comment")
    return Issue(
        issue_id=f"issue-{comment_id}",
        kind="general_comment",
        body=comment.body,
        url=comment.url,
        blocking=True,
        bot_kind=bot_kind_for_login(comment.author_login),
        created_at=comment.created_at,
        name="PR Comment",
        source="issue_comment",
        author_login=comment.author_login,
        severity=extract_severity(comment.body),
    )


def _check_run_issue(run: RawCheckRun, classifier: BlockingClassifier) -> Issue:
    run_id = _require_id(run.run_id, record="check run")
    return Issue(
        issue_id=f"ci-{run_id}",
        kind="ci_failure",
        body=run.output_summary or "",
        url=run.resolved_url,
        blocking=classifier.is_blocking(run.name),
        name=run.name,
        source=run.app_name or "CI",
        conclusion=(run.conclusion or "").lower(),
        description=run.output_summary,
    )


def _commit_status_issue(status: RawCommitStatus, classifier: BlockingClassifier) -> Issue:
    status_id = _require_id(status.status_id, record="commit status")
    return Issue(
        issue_id=f"status-{status_id}",
        kind="ci_failure",
        body=status.description or "",
        url=status.target_url or "",
        blocking=classifier.is_blocking(status.context),
        name=status.context,
        source=status.context.split("/", 1)[0] if status.context else "CI",
        conclusion=status.state.lower(),
        description=status.description,
    )
