from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import ConfigError

DEFAULT_API_URL = "https://api.travis-ci.org"

ENV_BUILD_ID = "TRAVIS_BUILD_ID"
ENV_JOB_NUMBER = "TRAVIS_JOB_NUMBER"
ENV_POLLING_INTERVAL = "LEADER_POLLING_INTERVAL"
ENV_MAX_WAIT = "LEADER_MAX_WAIT"
ENV_API_URL = "LEADER_API_URL"
ENV_LOG_PATH = "LEADER_LOG_PATH"


@dataclass(frozen=True, slots=True)
class ApiConfig:
    url: str = DEFAULT_API_URL
    timeout_seconds: float = 30.0
    max_redirects: int = 5


@dataclass(frozen=True, slots=True)
class PollConfig:
    interval_seconds: int = 5
    max_wait_seconds: int | None = None


@dataclass(frozen=True, slots=True)
class AppConfig:
    build_id: str
    job_number: str
    api: ApiConfig = field(default_factory=ApiConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    log_path: Path | None = None


def _mapping(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"`{key}` must be a mapping")
    return value


def _positive_int(value: object, name: str) -> int:
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"`{name}` must be an integer, got {value!r}") from exc
    if parsed < 1:
        raise ConfigError(f"`{name}` must be >= 1")
    return parsed


def _env(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name, "").strip()
    return value or None


def _load_file(path: str | Path | None) -> tuple[dict, Path | None]:
    if path is None:
        return {}, None
    config_path = Path(path).expanduser().resolve()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")
    return raw, config_path.parent


def load_config(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build the configuration from an optional YAML file and the environment.

    Environment variables win over file values. The build id and the job
    number only come from the environment, where the CI platform sets them.
    """
    environ = os.environ if environ is None else environ
    raw, base_dir = _load_file(path)
    api_raw = _mapping(raw, "api")
    poll_raw = _mapping(raw, "poll")
    log_raw = _mapping(raw, "log")

    build_id = _env(environ, ENV_BUILD_ID)
    if build_id is None:
        raise ConfigError(f"Missing environment variable: {ENV_BUILD_ID}")
    job_number = _env(environ, ENV_JOB_NUMBER)
    if job_number is None:
        raise ConfigError(f"Missing environment variable: {ENV_JOB_NUMBER}")

    api_url = _env(environ, ENV_API_URL) or str(api_raw.get("url") or DEFAULT_API_URL)
    try:
        timeout_seconds = float(api_raw.get("timeout_seconds", 30.0))
    except (TypeError, ValueError) as exc:
        raise ConfigError("`api.timeout_seconds` must be a number") from exc
    if timeout_seconds <= 0:
        raise ConfigError("`api.timeout_seconds` must be > 0")
    api = ApiConfig(
        url=api_url,
        timeout_seconds=timeout_seconds,
        max_redirects=_positive_int(api_raw.get("max_redirects", 5), "api.max_redirects"),
    )

    interval_raw = _env(environ, ENV_POLLING_INTERVAL)
    if interval_raw is not None:
        interval_seconds = _positive_int(interval_raw, ENV_POLLING_INTERVAL)
    else:
        interval_seconds = _positive_int(poll_raw.get("interval_seconds", 5), "poll.interval_seconds")

    max_wait_raw = _env(environ, ENV_MAX_WAIT)
    max_wait_seconds: int | None = None
    if max_wait_raw is not None:
        max_wait_seconds = _positive_int(max_wait_raw, ENV_MAX_WAIT)
    elif poll_raw.get("max_wait_seconds") is not None:
        max_wait_seconds = _positive_int(poll_raw["max_wait_seconds"], "poll.max_wait_seconds")

    log_path: Path | None = None
    log_raw_path = _env(environ, ENV_LOG_PATH) or log_raw.get("path")
    if log_raw_path:
        log_path = Path(str(log_raw_path)).expanduser()
        if not log_path.is_absolute() and base_dir is not None and not _env(environ, ENV_LOG_PATH):
            log_path = base_dir / log_path

    return AppConfig(
        build_id=build_id,
        job_number=job_number,
        api=api,
        poll=PollConfig(interval_seconds=interval_seconds, max_wait_seconds=max_wait_seconds),
        log_path=log_path,
    )
