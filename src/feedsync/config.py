from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    public_url: str
    environment: str

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@dataclass(frozen=True)
class PathsConfig:
    state_db: str


@dataclass(frozen=True)
class JobsConfig:
    stale_after_seconds: int
    poll_interval_seconds: int
    concurrency: int


@dataclass(frozen=True)
class BackoffConfig:
    default_interval_seconds: int = 15 * 60
    min_interval_seconds: int = 60
    max_interval_seconds: int = 7 * 24 * 60 * 60
    failure_base_seconds: int = 30 * 60
    max_consecutive_failures: int = 10
    websub_backup_interval_seconds: int = 24 * 60 * 60
    jitter_fraction: float = 0.1
    max_jitter_seconds: int = 30 * 60


@dataclass(frozen=True)
class WebSubConfig:
    enabled: bool
    renew_before_hours: int
    renew_interval_hours: int
    callback_path: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_error_body: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    jobs: JobsConfig
    backoff: BackoffConfig
    websub: WebSubConfig
    http: HttpConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "feedsync",
        "public_url": "",
        "environment": "development",
    },
    "paths": {
        "state_db": "/data/feedsync.sqlite3",
    },
    "jobs": {
        "stale_after_seconds": 300,
        "poll_interval_seconds": 5,
        "concurrency": 1,
    },
    "backoff": {
        "default_interval_seconds": 15 * 60,
        "min_interval_seconds": 60,
        "max_interval_seconds": 7 * 24 * 60 * 60,
        "failure_base_seconds": 30 * 60,
        "max_consecutive_failures": 10,
        "websub_backup_interval_seconds": 24 * 60 * 60,
        "jitter_fraction": 0.1,
        "max_jitter_seconds": 30 * 60,
    },
    "websub": {
        "enabled": True,
        "renew_before_hours": 24,
        "renew_interval_hours": 24,
        "callback_path": "/api/webhooks/websub",
    },
    "http": {
        "timeout_seconds": 20,
        "user_agent": "feedsync/0.1",
        "max_error_body": 200,
    },
}

ENVIRONMENTS = ("development", "production", "test")

_ENV_OVERRIDES: list[tuple[str, tuple[str, str], type]] = [
    ("FS_PUBLIC_URL", ("app", "public_url"), str),
    ("FS_ENV", ("app", "environment"), str),
    ("FS_DB_PATH", ("paths", "state_db"), str),
    ("FS_STALE_JOB_SECONDS", ("jobs", "stale_after_seconds"), int),
    ("FS_WORKER_CONCURRENCY", ("jobs", "concurrency"), int),
    ("FS_POLL_INTERVAL_SECONDS", ("jobs", "poll_interval_seconds"), int),
    ("FS_WEBSUB_ENABLED", ("websub", "enabled"), bool),
]


def load_config(path: str | None = None) -> Config:
    cfg = _deep_copy(DEFAULT_CONFIG)
    path = path or os.environ.get("FS_CONFIG_PATH")
    if path:
        cfg = _merge(cfg, _read_yaml(path))
    return _finalize(_apply_env_overrides(cfg))


def config_from_dict(overrides: dict[str, Any]) -> Config:
    return _finalize(_merge(_deep_copy(DEFAULT_CONFIG), overrides))


def _finalize(cfg: dict[str, Any]) -> Config:
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _check(cfg, DEFAULT_CONFIG, "config", errors)
    if not errors:
        environment = cfg["app"]["environment"]
        if environment not in ENVIRONMENTS:
            errors.append(
                f"config.app.environment must be one of {', '.join(ENVIRONMENTS)}"
            )
        if cfg["jobs"]["stale_after_seconds"] <= 0:
            errors.append("config.jobs.stale_after_seconds must be positive")
        if cfg["jobs"]["poll_interval_seconds"] <= 0:
            errors.append("config.jobs.poll_interval_seconds must be positive")
        backoff = cfg["backoff"]
        if backoff["min_interval_seconds"] > backoff["max_interval_seconds"]:
            errors.append("config.backoff.min_interval_seconds exceeds max_interval_seconds")
        if not 0 <= backoff["jitter_fraction"] <= 1:
            errors.append("config.backoff.jitter_fraction must be between 0 and 1")
    return errors


def _read_yaml(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    return data


def _apply_env_overrides(cfg: dict[str, Any]) -> dict[str, Any]:
    for env_name, (section, key), kind in _ENV_OVERRIDES:
        raw = os.environ.get(env_name)
        if raw is None or raw == "":
            continue
        if kind is bool:
            value: Any = raw.strip().lower() not in {"0", "false", "no", "off"}
        elif kind is int:
            try:
                value = int(raw)
            except ValueError as exc:
                raise ConfigError(f"{env_name} must be an integer") from exc
        else:
            value = raw.strip()
        cfg.setdefault(section, {})[key] = value
    return cfg


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _merge(base[key], value)
        else:
            base[key] = value
    return base


# Leaf kinds keyed by the default's type; bool is listed first since it subclasses int.
_LEAF_KINDS: list[tuple[type, tuple[type, ...], str]] = [
    (bool, (bool,), "a boolean"),
    (int, (int,), "an integer"),
    (float, (int, float), "a number"),
    (str, (str,), "a string"),
]


def _check(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        errors.extend(f"missing {path}.{key}" for key in default if key not in value)
        errors.extend(f"unknown {path}.{key}" for key in value if key not in default)
        for key, sub_default in default.items():
            if key in value:
                _check(value[key], sub_default, f"{path}.{key}", errors)
        return
    for default_type, accepted, label in _LEAF_KINDS:
        if isinstance(default, default_type):
            wrong_bool = isinstance(value, bool) and default_type is not bool
            if wrong_bool or not isinstance(value, accepted):
                errors.append(f"{path} must be {label}")
            return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    jobs_cfg = cfg["jobs"]
    backoff_cfg = cfg["backoff"]
    websub_cfg = cfg["websub"]
    http_cfg = cfg["http"]

    app = AppConfig(
        name=str(app_cfg["name"]),
        public_url=str(app_cfg["public_url"]).strip(),
        environment=str(app_cfg["environment"]),
    )
    paths = PathsConfig(state_db=str(cfg["paths"]["state_db"]))
    jobs = JobsConfig(
        stale_after_seconds=int(jobs_cfg["stale_after_seconds"]),
        poll_interval_seconds=int(jobs_cfg["poll_interval_seconds"]),
        concurrency=max(1, int(jobs_cfg["concurrency"])),
    )
    backoff = BackoffConfig(
        default_interval_seconds=int(backoff_cfg["default_interval_seconds"]),
        min_interval_seconds=int(backoff_cfg["min_interval_seconds"]),
        max_interval_seconds=int(backoff_cfg["max_interval_seconds"]),
        failure_base_seconds=int(backoff_cfg["failure_base_seconds"]),
        max_consecutive_failures=int(backoff_cfg["max_consecutive_failures"]),
        websub_backup_interval_seconds=int(backoff_cfg["websub_backup_interval_seconds"]),
        jitter_fraction=float(backoff_cfg["jitter_fraction"]),
        max_jitter_seconds=int(backoff_cfg["max_jitter_seconds"]),
    )
    websub = WebSubConfig(
        enabled=bool(websub_cfg["enabled"]),
        renew_before_hours=int(websub_cfg["renew_before_hours"]),
        renew_interval_hours=int(websub_cfg["renew_interval_hours"]),
        callback_path="/" + str(websub_cfg["callback_path"]).strip("/"),
    )
    http = HttpConfig(
        timeout_seconds=int(http_cfg["timeout_seconds"]),
        user_agent=str(http_cfg["user_agent"]),
        max_error_body=int(http_cfg["max_error_body"]),
    )
    return Config(app=app, paths=paths, jobs=jobs, backoff=backoff, websub=websub, http=http)


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
