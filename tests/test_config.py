import pytest

from feedsync.config import DEFAULT_CONFIG, ConfigError, config_from_dict, load_config, validate_config


def test_defaults_load_without_file():
    config = load_config()
    assert config.app.name == "feedsync"
    assert config.app.is_production is False
    assert config.jobs.stale_after_seconds == 300
    assert config.backoff.default_interval_seconds == 15 * 60
    assert config.websub.callback_path == "/api/webhooks/websub"


def test_yaml_file_is_merged_over_defaults(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text(
        "app:\n"
        "  public_url: https://reader.example.com\n"
        "  environment: production\n"
        "backoff:\n"
        "  default_interval_seconds: 1800\n",
        encoding="utf-8",
    )
    config = load_config(str(path))
    assert config.app.public_url == "https://reader.example.com"
    assert config.app.is_production is True
    assert config.backoff.default_interval_seconds == 1800
    assert config.backoff.min_interval_seconds == 60


def test_config_path_from_env(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("jobs:\n  concurrency: 4\n", encoding="utf-8")
    monkeypatch.setenv("FS_CONFIG_PATH", str(path))
    assert load_config().jobs.concurrency == 4


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("FS_PUBLIC_URL", "https://feeds.example.net")
    monkeypatch.setenv("FS_ENV", "production")
    monkeypatch.setenv("FS_DB_PATH", "/tmp/override.sqlite3")
    monkeypatch.setenv("FS_STALE_JOB_SECONDS", "120")
    monkeypatch.setenv("FS_WEBSUB_ENABLED", "false")
    monkeypatch.setenv("FS_WORKER_CONCURRENCY", "6")
    monkeypatch.setenv("FS_POLL_INTERVAL_SECONDS", "9")
    config = load_config()
    assert config.app.public_url == "https://feeds.example.net"
    assert config.app.environment == "production"
    assert config.paths.state_db == "/tmp/override.sqlite3"
    assert config.jobs.stale_after_seconds == 120
    assert config.websub.enabled is False
    assert config.jobs.concurrency == 6
    assert config.jobs.poll_interval_seconds == 9


def test_invalid_env_integer(monkeypatch):
    monkeypatch.setenv("FS_STALE_JOB_SECONDS", "soon")
    with pytest.raises(ConfigError):
        load_config()


def test_rejects_unknown_and_mistyped_keys():
    with pytest.raises(ConfigError) as excinfo:
        config_from_dict({"app": {"colour": "blue"}, "jobs": {"concurrency": "many"}})
    message = str(excinfo.value)
    assert "unknown config.app.colour" in message
    assert "config.jobs.concurrency must be an integer" in message


def test_rejects_bad_environment_and_ranges():
    with pytest.raises(ConfigError, match="environment"):
        config_from_dict({"app": {"environment": "staging"}})
    with pytest.raises(ConfigError, match="min_interval_seconds"):
        config_from_dict({"backoff": {"min_interval_seconds": 10**9}})
    with pytest.raises(ConfigError, match="jitter_fraction"):
        config_from_dict({"backoff": {"jitter_fraction": 1.5}})
    with pytest.raises(ConfigError, match="poll_interval_seconds"):
        config_from_dict({"jobs": {"poll_interval_seconds": 0}})


def test_invalid_yaml_file(tmp_path):
    path = tmp_path / "config.yml"
    path.write_text("app: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(str(path))
    with pytest.raises(ConfigError, match="Unable to read"):
        load_config(str(tmp_path / "missing.yml"))


def test_default_config_is_valid():
    assert validate_config(DEFAULT_CONFIG) == []
