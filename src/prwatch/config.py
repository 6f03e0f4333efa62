from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import re
import tomllib
from typing import cast

from prwatch.classifier import BlockingClassifier, patterns_from_env
from prwatch.models import PullRequestRef


DEFAULT_CONFIG_PATH = Path("prwatch.toml")
DEFAULT_POLL_INTERVAL_SECONDS = 30
DEFAULT_STATE_DIR = Path("~/.prwatch")
PR_URL_ENV = "PR_URL"

_PR_URL_PATTERN = re.compile(
    r"^https?://github\.com/(?P<owner>[^/\s]+)/(?P<repo>[^/\s]+)/pull/(?P<number>\d+)(?:[/?#].*)?$"
)
_PR_SHORTHAND_PATTERN = re.compile(r"^(?P<owner>[^/\s#]+)/(?P<repo>[^/\s#]+)#(?P<number>\d+)$")


@dataclass(frozen=True)
class WatchConfig:
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    review_bots: tuple[str, ...] = ()
    non_blocking_ci: tuple[str, ...] = ()
    desktop_notifications: bool = True
    state_dir: Path = DEFAULT_STATE_DIR

    def classifier(self, environ: dict[str, str] | None = None) -> BlockingClassifier:
        return BlockingClassifier.with_extra_patterns(
            (*self.non_blocking_ci, *patterns_from_env(environ))
        )


class ConfigError(ValueError):
    """Raised for invalid configuration files or pull request references."""


def default_config() -> WatchConfig:
    return WatchConfig(state_dir=DEFAULT_STATE_DIR.expanduser())


def load_config(path: Path) -> WatchConfig:
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path} is not valid TOML: {exc}") from exc

    watch_data = _optional_table(data, "watch") or {}
    config = WatchConfig(
        poll_interval_seconds=_int_with_default(
            watch_data, "poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS
        ),
        review_bots=_tuple_of_str_with_default(watch_data, "review_bots", ()),
        non_blocking_ci=_tuple_of_str_with_default(watch_data, "non_blocking_ci", ()),
        desktop_notifications=_bool_with_default(watch_data, "desktop_notifications", True),
        state_dir=Path(
            _str_with_default(watch_data, "state_dir", str(DEFAULT_STATE_DIR))
        ).expanduser(),
    )

    if config.poll_interval_seconds < 5:
        raise ConfigError("watch.poll_interval_seconds must be >= 5")
    return config


def resolve_config(path: Path | None) -> WatchConfig:
    """Explicit paths must exist; the default file is optional."""
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return load_config(path)
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return default_config()


def parse_pr_reference(raw: str | None, environ: dict[str, str] | None = None) -> PullRequestRef:
    env = os.environ if environ is None else environ
    value = (raw or env.get(PR_URL_ENV, "")).strip()
    if not value:
        raise ConfigError(f"A pull request reference is required (argument or {PR_URL_ENV})")
    match = _PR_URL_PATTERN.match(value) or _PR_SHORTHAND_PATTERN.match(value)
    if match is None:
        raise ConfigError(
            f"Invalid pull request reference {value!r}; "
            "expected https://github.com/OWNER/REPO/pull/N or OWNER/REPO#N"
        )
    number = int(match.group("number"))
    if number < 1:
        raise ConfigError("Pull request number must be >= 1")
    return PullRequestRef(owner=match.group("owner"), repo=match.group("repo"), number=number)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table")
    return cast(dict[str, object], value)


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a list of non-empty strings")
        out.append(item.strip())
    return tuple(out)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    return _tuple_of_str(data, key)
