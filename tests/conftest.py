from __future__ import annotations

import pytest

from feedsync.config import Config, config_from_dict
from feedsync.db import connect_db


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in (
        "FS_DB_URL",
        "FS_CONFIG_PATH",
        "FS_PUBLIC_URL",
        "FS_ENV",
        "FS_WEBSUB_ENABLED",
        "FS_DB_PATH",
        "FS_STALE_JOB_SECONDS",
        "FS_WORKER_CONCURRENCY",
        "FS_POLL_INTERVAL_SECONDS",
        "FS_MASTER_KEY",
        "FS_KEY_ID",
        "FS_ADMIN_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = connect_db(db_path)
    yield connection
    connection.close()


def _build_config(db_path: str, **sections) -> Config:
    overrides: dict[str, dict] = {
        "app": {"public_url": "https://reader.example.com", "environment": "production"},
        "paths": {"state_db": db_path},
        "backoff": {"jitter_fraction": 0.0},
    }
    for section, values in sections.items():
        overrides.setdefault(section, {}).update(values)
    return config_from_dict(overrides)


@pytest.fixture
def make_config(db_path):
    def factory(**sections) -> Config:
        return _build_config(db_path, **sections)

    return factory
