from __future__ import annotations

import json
import logging
from urllib.parse import parse_qs, urlparse

import pytest

from prwatch.github_gateway import (
    GitHubGateway,
    GitHubPollingError,
    PullRequestNotFoundError,
    _as_bool,
    _as_object_dict,
    _as_optional_int,
    _as_optional_str,
    _as_string,
    _normalize_optional_lower_str,
    _parse_http_response,
    _preview_for_log,
)
from prwatch.models import PullRequestRef
from prwatch.observability import configure_logging
from prwatch.shell import CommandError


PR = PullRequestRef(owner="o", repo="r", number=7)


@pytest.fixture
def prwatch_logger() -> None:
    logger = logging.getLogger("prwatch")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    try:
        yield
    finally:
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)


def _http(status: str, body: object, *headers: str) -> str:
    return "\n".join((f"HTTP/2.0 {status}", *headers, "", json.dumps(body)))


def _fake_rest(
    monkeypatch: pytest.MonkeyPatch, payloads: dict[str, object]
) -> list[str]:
    paths: list[str] = []

    def fake_api_json(self: GitHubGateway, path: str) -> object:
        _ = self
        paths.append(path)
        parsed = urlparse(path)
        key = parsed.path
        page = parse_qs(parsed.query).get("page", ["1"])[0]
        if f"{key}#page={page}" in payloads:
            value = payloads[f"{key}#page={page}"]
        else:
            value = payloads[key]
        if isinstance(value, Exception):
            raise value
        return value

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api_json)
    return paths


def test_api_json_invokes_gh_api_and_reuses_etag(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[list[str], bool]] = []

    def fake_run(
        cmd: list[str],
        *,
        input_text: str | None = None,
        check: bool = True,
        timeout_seconds: float | None = None,
    ) -> str:
        _ = input_text, timeout_seconds
        calls.append((cmd, check))
        if len(calls) == 1:
            return _http("200 OK", {"value": 7}, 'ETag: "etag-1"')
        return "\n".join(("HTTP/2.0 304 Not Modified", "", ""))

    monkeypatch.setattr("prwatch.github_gateway.run", fake_run)

    gateway = GitHubGateway(PR)
    first = gateway._api_json("/path")
    second = gateway._api_json("/path")

    assert first == {"value": 7}
    assert second == {"value": 7}
    assert calls[0] == (["gh", "api", "--method", "GET", "--include", "/path"], False)
    header_index = calls[1][0].index("--header")
    assert calls[1][0][header_index + 1] == 'If-None-Match: "etag-1"'


def test_api_json_http_error_carries_status_code(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "prwatch.github_gateway.run",
        lambda cmd, **kwargs: _http("502 Bad Gateway", {"message": "bad"}),
    )

    with pytest.raises(GitHubPollingError, match="status 502") as excinfo:
        GitHubGateway(PR)._api_json("/path")

    assert excinfo.value.status_code == 502


def test_api_json_wraps_malformed_http_and_logs(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    prwatch_logger: None,
) -> None:
    configure_logging(verbose=True)
    monkeypatch.setattr("prwatch.github_gateway.run", lambda cmd, **kwargs: "not-http")

    with pytest.raises(GitHubPollingError, match="GitHub polling GET failed for path /path") as exc:
        GitHubGateway(PR)._api_json("/path")

    assert exc.value.status_code is None
    text = capsys.readouterr().err
    assert "event=github_poll_get_failed" in text
    assert "raw_preview=not-http" in text


def test_api_json_wraps_command_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = cmd, kwargs
        raise CommandError("gh missing")

    monkeypatch.setattr("prwatch.github_gateway.run", fake_run)

    with pytest.raises(GitHubPollingError, match="gh missing"):
        GitHubGateway(PR)._api_json("/path")


def test_api_json_rejects_not_modified_without_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "prwatch.github_gateway.run",
        lambda cmd, **kwargs: "\n".join(("HTTP/2.0 304 Not Modified", "", "")),
    )

    with pytest.raises(GitHubPollingError, match="uncached path"):
        GitHubGateway(PR)._api_json("/path")


def test_get_pull_request_maps_404_to_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_rest(
        monkeypatch,
        {"/repos/o/r/pulls/7": GitHubPollingError("missing", status_code=404)},
    )

    with pytest.raises(PullRequestNotFoundError):
        GitHubGateway(PR).get_pull_request()


def test_get_pull_request_parses_head(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_rest(
        monkeypatch,
        {"/repos/o/r/pulls/7": {"head": {"sha": "abc"}, "merged": False, "state": "OPEN"}},
    )

    head = GitHubGateway(PR).get_pull_request()

    assert head.head_sha == "abc"
    assert head.merged is False
    assert head.state == "open"


def test_fetch_ci_status_collects_checks_statuses_and_queue(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _fake_rest(
        monkeypatch,
        {
            "/repos/o/r/pulls/7": {"head": {"sha": "abc"}, "merged": False, "state": "open"},
            "/repos/o/r/commits/abc/check-runs": {
                "check_runs": [
                    {
                        "id": 11,
                        "name": "build",
                        "status": "completed",
                        "conclusion": "FAILURE",
                        "html_url": "https://ci/11",
                        "details_url": "https://details/11",
                        "app": {"name": "GitHub Actions"},
                        "output": {"title": "Build failed", "summary": None},
                    },
                    "junk",
                ]
            },
            "/repos/o/r/commits/abc/status": {
                "state": "failure",
                "statuses": [
                    {
                        "id": 21,
                        "context": "buildkite/app",
                        "state": "error",
                        "description": "Timed out",
                        "target_url": "https://bk/21",
                    }
                ],
            },
        },
    )

    def fake_graphql(self: GitHubGateway, query: str) -> dict[str, object]:
        _ = self
        assert "mergeQueueEntry" in query
        return {
            "data": {
                "repository": {
                    "pullRequest": {
                        "mergeQueueEntry": {
                            "position": 2,
                            "state": "AWAITING_CHECKS",
                            "estimatedTimeToMerge": 600,
                            "enqueuedAt": "2026-01-01T00:00:00Z",
                        }
                    }
                }
            }
        }

    monkeypatch.setattr(GitHubGateway, "_graphql", fake_graphql)

    ci = GitHubGateway(PR).fetch_ci_status()

    assert len(ci.check_runs) == 1
    run = ci.check_runs[0]
    assert run.run_id == 11
    assert run.conclusion == "failure"
    assert run.app_name == "GitHub Actions"
    assert run.output_summary == "Build failed"
    assert ci.commit_statuses[0].status_id == 21
    assert ci.commit_statuses[0].state == "error"
    assert ci.merge_queue_entry is not None
    assert ci.merge_queue_entry.state == "AWAITING_CHECKS"
    assert ci.merge_queue_entry.estimated_time_to_merge == 600
    assert ci.merge_queue_known is True
    assert ci.merged is False


def test_fetch_ci_status_marks_queue_unknown_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_rest(
        monkeypatch,
        {
            "/repos/o/r/pulls/7": {"head": {"sha": "abc"}, "merged": False, "state": "open"},
            "/repos/o/r/commits/abc/check-runs": {"check_runs": []},
            "/repos/o/r/commits/abc/status": {"state": "pending", "statuses": []},
        },
    )

    def failing_graphql(self: GitHubGateway, query: str) -> dict[str, object]:
        _ = self, query
        raise GitHubPollingError("graphql down")

    monkeypatch.setattr(GitHubGateway, "_graphql", failing_graphql)

    ci = GitHubGateway(PR).fetch_ci_status()

    assert ci.merge_queue_known is False
    assert ci.merge_queue_entry is None


def test_fetch_ci_status_skips_queue_when_merged(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_rest(
        monkeypatch,
        {
            "/repos/o/r/pulls/7": {"head": {"sha": "abc"}, "merged": True, "state": "closed"},
            "/repos/o/r/commits/abc/check-runs": {"check_runs": []},
            "/repos/o/r/commits/abc/status": {"state": "success", "statuses": []},
        },
    )

    def unexpected_graphql(self: GitHubGateway, query: str) -> dict[str, object]:
        raise AssertionError("merge queue should not be queried for merged PRs")

    monkeypatch.setattr(GitHubGateway, "_graphql", unexpected_graphql)

    assert GitHubGateway(PR).fetch_ci_status().merged is True


def test_fetch_issue_comments_paginates(monkeypatch: pytest.MonkeyPatch) -> None:
    first_page = [
        {
            "id": index,
            "user": {"login": "cursor[bot]"},
            "body": f"comment {index}",
            "html_url": f"https://github.com/o/r/pull/7#issuecomment-{index}",
            "created_at": "2026-01-01T00:00:00Z",
        }
        for index in range(100)
    ]
    paths = _fake_rest(
        monkeypatch,
        {
            "/repos/o/r/issues/7/comments#page=1": first_page,
            "/repos/o/r/issues/7/comments#page=2": [
                {"id": "bad", "user": None, "body": "x", "html_url": "u", "created_at": "t"}
            ],
        },
    )

    comments = GitHubGateway(PR).fetch_issue_comments()

    assert len(comments) == 101
    assert comments[0].author_login == "cursor[bot]"
    assert comments[-1].comment_id is None
    assert comments[-1].author_login == ""
    assert len(paths) == 2


def test_fetch_review_comments_fallback_parses_positions(monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_rest(
        monkeypatch,
        {
            "/repos/o/r/pulls/7/comments": [
                {
                    "id": 5,
                    "user": {"login": "cursor[bot]"},
                    "body": "b",
                    "html_url": "u",
                    "created_at": "t",
                    "path": "a.py",
                    "line": None,
                    "original_line": 3,
                    "position": None,
                    "original_position": 4,
                }
            ]
        },
    )

    comments = GitHubGateway(PR).fetch_review_comments_fallback()

    assert comments[0].comment_id == 5
    assert comments[0].original_line == 3
    assert comments[0].position is None
    assert comments[0].original_position == 4


def test_fetch_issue_comments_rejects_non_list_payload(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _fake_rest(monkeypatch, {"/repos/o/r/issues/7/comments": {"message": "oops"}})

    with pytest.raises(GitHubPollingError, match="expected list of issue comments"):
        GitHubGateway(PR).fetch_issue_comments()


def test_fetch_review_threads_parses_graphql(monkeypatch: pytest.MonkeyPatch) -> None:
    payload = {
        "data": {
            "repository": {
                "pullRequest": {
                    "reviewThreads": {
                        "nodes": [
                            {
                                "id": "PRRT_1",
                                "isResolved": False,
                                "isOutdated": True,
                                "path": "src/a.py",
                                "line": 12,
                                "comments": {
                                    "nodes": [
                                        {
                                            "databaseId": 99,
                                            "body": "### Bug",
                                            "url": "https://github.com/o/r/pull/7#r99",
                                            "author": {"login": "cursor[bot]"},
                                            "createdAt": "2026-01-01T00:00:00Z",
                                        },
                                        {"databaseId": 100, "author": None},
                                    ]
                                },
                            },
                            None,
                        ]
                    }
                }
            }
        }
    }
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return json.dumps(payload)

    monkeypatch.setattr("prwatch.github_gateway.run", fake_run)

    threads = GitHubGateway(PR).fetch_review_threads()

    assert len(threads) == 1
    thread = threads[0]
    assert thread.thread_id == "PRRT_1"
    assert thread.is_outdated is True
    assert thread.line == 12
    assert [comment.comment_id for comment in thread.comments] == [99, 100]
    assert thread.comments[1].author_login == ""
    assert calls[0][:3] == ["gh", "api", "graphql"]
    assert "owner=o" in calls[0]
    assert "prNumber=7" in calls[0]


def test_graphql_not_found_is_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = cmd, kwargs
        raise CommandError(
            "failed",
            exit_code=1,
            stderr="GraphQL: Could not resolve to a PullRequest with the number of 7.",
        )

    monkeypatch.setattr("prwatch.github_gateway.run", fake_run)

    with pytest.raises(PullRequestNotFoundError):
        GitHubGateway(PR).fetch_review_threads()


def test_graphql_other_failures_are_recoverable(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = cmd, kwargs
        raise CommandError("failed", exit_code=1, stderr="HTTP 502: Bad Gateway")

    monkeypatch.setattr("prwatch.github_gateway.run", fake_run)

    with pytest.raises(GitHubPollingError, match="502"):
        GitHubGateway(PR).fetch_review_threads()


def test_graphql_error_payload_is_recoverable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "prwatch.github_gateway.run",
        lambda cmd, **kwargs: json.dumps({"errors": [{"message": "rate limited"}]}),
    )

    with pytest.raises(GitHubPollingError, match="rate limited"):
        GitHubGateway(PR).get_merge_queue_entry()


def test_graphql_rejects_non_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("prwatch.github_gateway.run", lambda cmd, **kwargs: "<html>")

    with pytest.raises(GitHubPollingError, match="not JSON"):
        GitHubGateway(PR).get_merge_queue_entry()


def test_parse_helpers() -> None:
    status, headers, body = _parse_http_response(
        "HTTP/1.1 100 Continue\r\n\r\nHTTP/2.0 200 OK\r\nETag: \"abc\"\r\n\r\n{}"
    )
    assert status == 200
    assert headers == {"etag": '"abc"'}
    assert body == "{}"
    with pytest.raises(RuntimeError, match="missing HTTP status line"):
        _parse_http_response("nope")
    with pytest.raises(RuntimeError, match="status line"):
        _parse_http_response("HTTP/2.0 abc")

    assert _as_optional_int("12") == 12
    assert _as_optional_int("x") is None
    assert _as_optional_int(True) is None
    assert _as_optional_int(None) is None
    assert _as_optional_str(5) == "5"
    assert _as_string(None) == ""
    assert _as_object_dict({1: "x"}) is None
    assert _normalize_optional_lower_str("  SUCCESS ") == "success"
    assert _normalize_optional_lower_str("  ") is None
    assert _as_bool(True) is True
    with pytest.raises(GitHubPollingError):
        _as_bool("yes")
    assert _preview_for_log("") == "<empty>"
    assert _preview_for_log("a\nb") == "a\\nb"
    assert _preview_for_log("x" * 300).endswith("...")
