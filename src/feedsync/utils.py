from __future__ import annotations

import dataclasses
import json
import logging
import os
import sys
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import UUID

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    parts = [f"event={event}"]
    parts.extend(f"{key}={_field_text(value)}" for key, value in fields.items())
    logger.log(level, " ".join(parts))


def _field_text(value: Any) -> str:
    text = str(value)
    if text and not any(ch.isspace() or ch == '"' for ch in text):
        return text
    return json.dumps(text)


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    """Attach stdout and optional file handlers to the root logger once per process.

    FS_LOG_LEVEL sets the handler level, FS_LOG_FILE adds a file sink and
    FS_LOG_LEVELS takes comma separated ``logger=level`` pairs.
    """
    level = _level(os.environ.get("FS_LOG_LEVEL", default_level))
    root = logging.getLogger()
    if not root.handlers:
        root.setLevel(level)

    def has_handler(match) -> bool:
        return any(match(handler) for handler in root.handlers)

    if not has_handler(lambda h: isinstance(h, logging.StreamHandler) and h.stream is sys.stdout):
        root.addHandler(_formatted(logging.StreamHandler(sys.stdout), level))

    log_file = os.environ.get("FS_LOG_FILE")
    if log_file:
        log_file = os.path.abspath(log_file)
        if not has_handler(
            lambda h: isinstance(h, logging.FileHandler) and h.baseFilename == log_file
        ):
            os.makedirs(os.path.dirname(log_file), exist_ok=True)
            root.addHandler(_formatted(logging.FileHandler(log_file), level))

    for name, override in _level_overrides(os.environ.get("FS_LOG_LEVELS", "")):
        logging.getLogger(name).setLevel(override)
    return logging.getLogger(logger_name)


def _level(name: str) -> int:
    value = logging.getLevelName(name.strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _formatted(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def _level_overrides(raw: str) -> list[tuple[str, int]]:
    pairs = []
    for item in raw.split(","):
        name, sep, level = item.partition("=")
        if sep and name.strip():
            pairs.append((name.strip(), _level(level)))
    return pairs


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True)


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


# Fixed microsecond precision keeps text order equal to time order in the store.
def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def utc_now_iso() -> str:
    return to_iso(utc_now())

