from __future__ import annotations

import logging
import subprocess

import pytest

from prwatch.observability import configure_logging
from prwatch.shell import CommandError, _preview, run


@pytest.fixture(autouse=True)
def restore_prwatch_logger_state() -> None:
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


def test_run_success(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["gh"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(["gh", "api", "/user"], input_text="hi", timeout_seconds=5)

    assert out == "ok"
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["input"] == "hi"
    assert kwargs["check"] is False
    assert kwargs["timeout"] == 5


def test_run_failure_raises(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["bad"], returncode=2, stdout="out", stderr="err")

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="Command failed") as excinfo:
        run(["bad"])
    assert excinfo.value.exit_code == 2
    assert excinfo.value.stderr == "err"
    stderr = capsys.readouterr().err
    assert "event=command_failed command=bad exit_code=2" in stderr
    assert "stderr=err" in stderr
    assert "stdout=out" in stderr


def test_run_without_check_returns_output_of_failed_command(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda *args, **kwargs: subprocess.CompletedProcess(
            args=["gh"], returncode=1, stdout="HTTP/2.0 404 Not Found", stderr=""
        ),
    )

    assert run(["gh"], check=False) == "HTTP/2.0 404 Not Found"


@pytest.mark.parametrize(
    "error",
    [FileNotFoundError("gh"), subprocess.TimeoutExpired(cmd="gh", timeout=1)],
)
def test_run_reports_unavailable_commands(
    monkeypatch: pytest.MonkeyPatch, error: Exception
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        raise error

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(CommandError, match="Command could not run: gh api") as excinfo:
        run(["gh", "api"])
    assert excinfo.value.exit_code is None


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
