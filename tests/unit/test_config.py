"""Tests for configuration loading: YAML, env overrides and defaults."""

import pytest
from pydantic import ValidationError

from failure_history.config import (
    DEFAULT_DB_URL,
    ScanConfig,
    get_config,
    load_config,
    normalize_database_url,
    reload_config,
)

YAML_CONFIG = """
jenkins:
  base_url: https://jenkins.internal/job/app/job/master
  timeout_s: 10
scan:
  window_days: 3
  max_batch: 4
storage:
  backend: memory
invoker:
  mode: http
  collector_url: http://collector:8080
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "failure-history.yml"
    path.write_text(YAML_CONFIG)
    return path


class TestDefaults:

    def test_defaults_without_file(self):
        config = load_config()
        assert config.scan.window_days == 5
        assert config.scan.max_batch == 10
        assert config.storage.backend == "sql"
        assert config.storage.database_url == DEFAULT_DB_URL
        assert config.invoker.mode == "local"
        assert config.jenkins.base_url == ""

    def test_rejects_zero_batch(self):
        with pytest.raises(ValidationError):
            ScanConfig(max_batch=0)


class TestYaml:

    def test_loads_sections(self, config_file):
        config = load_config(str(config_file))
        assert config.jenkins.base_url == "https://jenkins.internal/job/app/job/master"
        assert config.jenkins.timeout_s == 10
        assert config.scan.window_days == 3
        assert config.scan.max_batch == 4
        assert config.storage.backend == "memory"
        assert config.invoker.mode == "http"
        assert config.invoker.collector_url == "http://collector:8080"

    def test_config_path_env(self, config_file, monkeypatch):
        monkeypatch.setenv("CONFIG_PATH", str(config_file))
        assert load_config().scan.max_batch == 4

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")
        assert load_config(str(path)).scan.max_batch == 10


class TestEnvOverrides:

    def test_nested_override_beats_yaml(self, config_file, monkeypatch):
        monkeypatch.setenv("CONFIG__SCAN__MAX_BATCH", "20")
        config = load_config(str(config_file))
        assert config.scan.max_batch == 20
        assert config.scan.window_days == 3

    def test_boolean_coercion(self, monkeypatch):
        monkeypatch.setenv("CONFIG__STORAGE__ECHO", "true")
        assert load_config().storage.echo is True

    def test_jenkins_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("JENKINS_URL", "https://ci.example.com/job/x")
        monkeypatch.setenv("JENKINS_USERNAME", "bot")
        monkeypatch.setenv("JENKINS_PASSWORD", "token")
        config = load_config()
        assert config.jenkins.base_url == "https://ci.example.com/job/x"
        assert config.jenkins.username == "bot"
        assert config.jenkins.password == "token"

    def test_yaml_base_url_wins_over_jenkins_url(self, config_file, monkeypatch):
        monkeypatch.setenv("JENKINS_URL", "https://other.example.com")
        config = load_config(str(config_file))
        assert config.jenkins.base_url == "https://jenkins.internal/job/app/job/master"

    def test_database_url_env(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db:5432/history")
        config = load_config()
        assert config.storage.database_url == "postgresql+asyncpg://u:p@db:5432/history"


class TestNormalizeDatabaseUrl:

    def test_rewrites_postgres_scheme(self):
        assert normalize_database_url("postgres://h/db") == "postgresql+asyncpg://h/db"

    def test_leaves_other_urls(self):
        assert normalize_database_url(DEFAULT_DB_URL) == DEFAULT_DB_URL


class TestCachedConfig:

    def test_reload_replaces_cache(self, config_file):
        reload_config(str(config_file))
        assert get_config().scan.max_batch == 4
        reload_config()
        assert get_config().scan.max_batch == 10
