from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import cast
from urllib.parse import urlencode

from prwatch.models import (
    PullRequestRef,
    RawCheckRun,
    RawCiStatus,
    RawCommitStatus,
    RawIssueComment,
    RawMergeQueueEntry,
    RawReviewComment,
    RawReviewThread,
)
from prwatch.observability import log_event
from prwatch.shell import CommandError, run


LOGGER = logging.getLogger("prwatch.github_gateway")
_PAGE_SIZE = 100
_NOT_FOUND_MARKERS = (
    "Could not resolve to a PullRequest",
    "Could not resolve to a Repository",
)

_REVIEW_THREADS_QUERY = """
query($owner: String!, $repo: String!, $prNumber: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $prNumber) {
      reviewThreads(first: 100) {
        nodes {
          id
          isResolved
          isOutdated
          path
          line
          comments(first: 50) {
            nodes {
              databaseId
              body
              url
              author { login }
              createdAt
            }
          }
        }
      }
    }
  }
}
""".strip()

_MERGE_QUEUE_QUERY = """
query($owner: String!, $repo: String!, $prNumber: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $prNumber) {
      mergeQueueEntry {
        position
        state
        estimatedTimeToMerge
        enqueuedAt
      }
    }
  }
}
""".strip()


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub polling failure; caller should retry next poll."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PullRequestNotFoundError(RuntimeError):
    """The watched pull request does not exist (or is no longer visible)."""


class _HttpStatusError(RuntimeError):
    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class PullRequestHead:
    head_sha: str
    merged: bool
    state: str


@dataclass(frozen=True)
class GitHubGateway:
    pr: PullRequestRef
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    def get_pull_request(self) -> PullRequestHead:
        path = f"/repos/{self.pr.owner}/{self.pr.repo}/pulls/{self.pr.number}"
        try:
            payload = self._api_json(path)
        except GitHubPollingError as exc:
            if exc.status_code == 404:
                raise PullRequestNotFoundError(f"Pull request {self.pr} was not found") from exc
            raise
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for pull request")
        head = _as_object_dict(payload_obj.get("head")) or {}
        snapshot = PullRequestHead(
            head_sha=_as_string(head.get("sha")),
            merged=_as_bool(payload_obj.get("merged")),
            state=_as_string(payload_obj.get("state")).strip().lower(),
        )
        if not snapshot.head_sha:
            raise GitHubPollingError("Unexpected GitHub response: pull request has no head sha")
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=self.pr.number,
            merged=snapshot.merged,
        )
        return snapshot

    def fetch_review_threads(self) -> list[RawReviewThread]:
        payload = self._graphql(_REVIEW_THREADS_QUERY)
        pull_request = _graphql_pull_request(payload)
        threads_obj = _as_object_dict(pull_request.get("reviewThreads")) or {}
        threads: list[RawReviewThread] = []
        for item in _as_list(threads_obj.get("nodes")):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            comments_obj = _as_object_dict(item_obj.get("comments")) or {}
            comments: list[RawReviewComment] = []
            for raw_comment in _as_list(comments_obj.get("nodes")):
                comment_obj = _as_object_dict(raw_comment)
                if comment_obj is None:
                    continue
                author = _as_object_dict(comment_obj.get("author"))
                comments.append(
                    RawReviewComment(
                        comment_id=_as_optional_int(comment_obj.get("databaseId")),
                        author_login=_as_string(author.get("login") if author else None),
                        body=_as_string(comment_obj.get("body")),
                        url=_as_string(comment_obj.get("url")),
                        created_at=_as_string(comment_obj.get("createdAt")),
                    )
                )
            threads.append(
                RawReviewThread(
                    thread_id=_as_string(item_obj.get("id")),
                    is_resolved=item_obj.get("isResolved") is True,
                    is_outdated=item_obj.get("isOutdated") is True,
                    path=_as_optional_str(item_obj.get("path")),
                    line=_as_optional_int(item_obj.get("line")),
                    comments=tuple(comments),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="review_threads",
            pr_number=self.pr.number,
            count=len(threads),
        )
        return threads

    def fetch_review_comments_fallback(self) -> list[RawReviewComment]:
        base = f"/repos/{self.pr.owner}/{self.pr.repo}/pulls/{self.pr.number}/comments"
        comments: list[RawReviewComment] = []
        for item_obj in self._paginate(base, what="review comments"):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                RawReviewComment(
                    comment_id=_as_optional_int(item_obj.get("id")),
                    author_login=_as_string(user_obj.get("login") if user_obj else None),
                    body=_as_string(item_obj.get("body")),
                    url=_as_string(item_obj.get("html_url")),
                    created_at=_as_string(item_obj.get("created_at")),
                    path=_as_optional_str(item_obj.get("path")),
                    line=_as_optional_int(item_obj.get("line")),
                    original_line=_as_optional_int(item_obj.get("original_line")),
                    position=_as_optional_int(item_obj.get("position")),
                    original_position=_as_optional_int(item_obj.get("original_position")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=self.pr.number,
            count=len(comments),
        )
        return comments

    def fetch_issue_comments(self) -> list[RawIssueComment]:
        base = f"/repos/{self.pr.owner}/{self.pr.repo}/issues/{self.pr.number}/comments"
        comments: list[RawIssueComment] = []
        for item_obj in self._paginate(base, what="issue comments"):
            user_obj = _as_object_dict(item_obj.get("user"))
            comments.append(
                RawIssueComment(
                    comment_id=_as_optional_int(item_obj.get("id")),
                    author_login=_as_string(user_obj.get("login") if user_obj else None),
                    body=_as_string(item_obj.get("body")),
                    url=_as_string(item_obj.get("html_url")),
                    created_at=_as_string(item_obj.get("created_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            pr_number=self.pr.number,
            count=len(comments),
        )
        return comments

    def fetch_ci_status(self) -> RawCiStatus:
        head = self.get_pull_request()
        check_runs = self.list_check_runs(head.head_sha)
        statuses = self.list_commit_statuses(head.head_sha)
        if head.merged:
            return RawCiStatus(check_runs=check_runs, commit_statuses=statuses, merged=True)

        entry: RawMergeQueueEntry | None = None
        queue_known = True
        try:
            entry = self.get_merge_queue_entry()
        except GitHubPollingError as exc:
            queue_known = False
            log_event(
                LOGGER,
                "merge_queue_unavailable",
                pr_number=self.pr.number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return RawCiStatus(
            check_runs=check_runs,
            commit_statuses=statuses,
            merge_queue_entry=entry,
            merged=False,
            merge_queue_known=queue_known,
        )

    def list_check_runs(self, head_sha: str) -> tuple[RawCheckRun, ...]:
        base = f"/repos/{self.pr.owner}/{self.pr.repo}/commits/{head_sha}/check-runs"
        runs: list[RawCheckRun] = []
        page = 1
        while True:
            payload = self._api_json(f"{base}?{urlencode({'per_page': _PAGE_SIZE, 'page': page})}")
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise GitHubPollingError("Unexpected GitHub response: expected object for checks")
            items = _as_list(payload_obj.get("check_runs"))
            for item in items:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                app_obj = _as_object_dict(item_obj.get("app"))
                output_obj = _as_object_dict(item_obj.get("output")) or {}
                runs.append(
                    RawCheckRun(
                        run_id=_as_optional_int(item_obj.get("id")),
                        name=_as_string(item_obj.get("name")),
                        status=_as_string(item_obj.get("status")).strip().lower(),
                        conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                        html_url=_as_optional_str(item_obj.get("html_url")),
                        details_url=_as_optional_str(item_obj.get("details_url")),
                        app_name=_as_optional_str(app_obj.get("name")) if app_obj else None,
                        output_summary=_as_optional_str(output_obj.get("summary"))
                        or _as_optional_str(output_obj.get("title")),
                    )
                )
            if len(items) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="check_runs",
            head_sha=head_sha,
            count=len(runs),
        )
        return tuple(runs)

    def list_commit_statuses(self, head_sha: str) -> tuple[RawCommitStatus, ...]:
        path = f"/repos/{self.pr.owner}/{self.pr.repo}/commits/{head_sha}/status?per_page=100"
        payload_obj = _as_object_dict(self._api_json(path))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for status")
        statuses: list[RawCommitStatus] = []
        for item in _as_list(payload_obj.get("statuses")):
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            statuses.append(
                RawCommitStatus(
                    status_id=_as_optional_int(item_obj.get("id")),
                    context=_as_string(item_obj.get("context")),
                    state=_as_string(item_obj.get("state")).strip().lower(),
                    description=_as_optional_str(item_obj.get("description")),
                    target_url=_as_optional_str(item_obj.get("target_url")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="commit_statuses",
            head_sha=head_sha,
            combined_state=_as_string(payload_obj.get("state")),
            count=len(statuses),
        )
        return tuple(statuses)

    def get_merge_queue_entry(self) -> RawMergeQueueEntry | None:
        payload = self._graphql(_MERGE_QUEUE_QUERY)
        entry_obj = _as_object_dict(_graphql_pull_request(payload).get("mergeQueueEntry"))
        if entry_obj is None:
            return None
        return RawMergeQueueEntry(
            state=_as_string(entry_obj.get("state")),
            position=_as_optional_int(entry_obj.get("position")),
            estimated_time_to_merge=_as_optional_int(entry_obj.get("estimatedTimeToMerge")),
            enqueued_at=_as_optional_str(entry_obj.get("enqueuedAt")),
        )

    def _paginate(self, base_path: str, *, what: str) -> list[dict[str, object]]:
        items: list[dict[str, object]] = []
        page = 1
        while True:
            path = f"{base_path}?{urlencode({'per_page': _PAGE_SIZE, 'page': page})}"
            payload = self._api_json(path)
            if not isinstance(payload, list):
                raise GitHubPollingError(f"Unexpected GitHub response: expected list of {what}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    items.append(item_obj)
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        return items

    def _graphql(self, query: str) -> dict[str, object]:
        cmd = [
            "gh",
            "api",
            "graphql",
            "-f",
            f"query={query}",
            "-F",
            f"owner={self.pr.owner}",
            "-F",
            f"repo={self.pr.repo}",
            "-F",
            f"prNumber={self.pr.number}",
        ]
        try:
            raw = run(cmd)
        except CommandError as exc:
            message = exc.stderr or str(exc)
            if any(marker in message for marker in _NOT_FOUND_MARKERS):
                raise PullRequestNotFoundError(
                    f"Pull request {self.pr} was not found: {message.strip()}"
                ) from exc
            log_event(
                LOGGER,
                "github_graphql_failed",
                pr_number=self.pr.number,
                exit_code=exc.exit_code,
                error=_preview_for_log(message),
            )
            raise GitHubPollingError(f"GitHub GraphQL request failed: {message.strip()}") from exc
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitHubPollingError("GitHub GraphQL response was not JSON") from exc
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub GraphQL response: expected object")
        return payload_obj

    def _api_json(self, path: str) -> object:
        cmd = ["gh", "api", "--method", "GET"]
        etag = self._etags_by_path.get(path)
        if etag:
            cmd.extend(["--header", f"If-None-Match: {etag}"])
        cmd.extend(["--include", path])

        try:
            raw = run(cmd, check=False)
        except CommandError as exc:
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc
        try:
            status_code, headers, body = _parse_http_response(raw)

            if status_code == 304:
                cached_payload = self._cached_get_payload_by_path.get(path)
                if cached_payload is None:
                    raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                return cached_payload

            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise _HttpStatusError(
                    f"GitHub API request failed with status {status_code}: {message}",
                    status_code=status_code,
                )

            payload_obj = json.loads(body)
            etag = headers.get("etag")
            if etag:
                self._etags_by_path[path] = etag
                self._cached_get_payload_by_path[path] = payload_obj
            return payload_obj
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(
                f"GitHub polling GET failed for path {path}: {exc}",
                status_code=exc.status_code if isinstance(exc, _HttpStatusError) else None,
            ) from exc


def _graphql_pull_request(payload: dict[str, object]) -> dict[str, object]:
    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        first = _as_object_dict(errors[0]) or {}
        raise GitHubPollingError(f"GitHub GraphQL error: {_as_string(first.get('message'))}")
    data = _as_object_dict(payload.get("data")) or {}
    repository = _as_object_dict(data.get("repository"))
    if repository is None:
        raise PullRequestNotFoundError("GitHub GraphQL response has no repository")
    pull_request = _as_object_dict(repository.get("pullRequest"))
    if pull_request is None:
        raise PullRequestNotFoundError("GitHub GraphQL response has no pull request")
    return pull_request


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_list(value: object) -> list[object]:
    if not isinstance(value, list):
        return []
    return cast(list[object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_int(value: object) -> int | None:
    # Bad values become None so the normalizer can skip the one record.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise GitHubPollingError("Unexpected GitHub response type for bool field")
