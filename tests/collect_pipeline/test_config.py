"""
Tests for configuration loading.

Test coverage:
- YAML file under "collect:" with defaults filled in
- Environment variables override file values
- Validation errors for bad server settings
"""

import logging
from pathlib import Path

import pytest

from collect_pipeline.config import (
    CollectConfig,
    LoggingConfig,
    PullConfig,
    ServerConfig,
    load_config,
)

ENV_VARS = [
    "COLLECT_SERVER_URL",
    "COLLECT_SERVER_TYPE",
    "COLLECT_USERNAME",
    "COLLECT_PASSWORD",
    "COLLECT_PROJECT_ID",
    "COLLECT_STORAGE_DIR",
    "COLLECT_PAGE_SIZE",
    "COLLECT_INCLUDE_INCOMPLETE",
    "COLLECT_MAX_PARALLEL",
    "COLLECT_TIMEOUT_SECONDS",
    "COLLECT_CONNECT_TIMEOUT_SECONDS",
    "COLLECT_PRIVATE_KEY",
    "COLLECT_FORMS",
    "COLLECT_START_FROM_LAST",
    "LOG_LEVEL",
    "LOG_DIR",
    "LOG_JSON",
    "METRICS_PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


class TestLoadConfig:
    def test_full_file(self, tmp_path):
        path = write_config(
            tmp_path,
            """
collect:
  server:
    type: central
    url: https://central.example.org
    username: admin@example.org
    password: secret
    project_id: 3
  pull:
    storage_dir: /data/storage
    page_size: 50
    include_incomplete: true
    max_parallel: 8
    private_key_path: /keys/form.pem
    forms: [census, household]
    start_from_last: false
  logging:
    level: debug
    json_format: false
  metrics:
    port: 9100
""",
        )

        config = load_config(path)

        assert config.server.type == "central"
        assert config.server.project_id == 3
        assert config.server.credentials.username == "admin@example.org"
        assert config.pull.storage_dir == Path("/data/storage")
        assert config.pull.page_size == 50
        assert config.pull.include_incomplete is True
        assert config.pull.private_key_path == Path("/keys/form.pem")
        assert config.pull.forms == ["census", "household"]
        assert config.pull.start_from_last is False
        assert config.logging.level_number == logging.DEBUG
        assert config.logging.json_format is False
        assert config.metrics.port == 9100

    def test_defaults(self, tmp_path):
        path = write_config(tmp_path, "collect:\n  server:\n    url: https://collect.example.org\n")

        config = load_config(path)

        assert config.server.type == "aggregate"
        assert config.server.credentials is None
        assert config.pull == PullConfig()
        assert config.logging == LoggingConfig()
        assert config.metrics.port == 0

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = write_config(
            tmp_path,
            "collect:\n  server:\n    url: https://collect.example.org\n  pull:\n    page_size: 50\n",
        )
        monkeypatch.setenv("COLLECT_SERVER_URL", "https://other.example.org")
        monkeypatch.setenv("COLLECT_PAGE_SIZE", "25")
        monkeypatch.setenv("COLLECT_FORMS", "census, household")
        monkeypatch.setenv("COLLECT_INCLUDE_INCOMPLETE", "yes")

        config = load_config(path)

        assert config.server.url == "https://other.example.org"
        assert config.pull.page_size == 25
        assert config.pull.forms == ["census", "household"]
        assert config.pull.include_incomplete is True

    def test_missing_file_uses_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("COLLECT_SERVER_URL", "https://collect.example.org")

        config = load_config(tmp_path / "missing.yaml")

        assert config.server.url == "https://collect.example.org"

    def test_missing_collect_key(self, tmp_path):
        path = write_config(tmp_path, "server:\n  url: https://collect.example.org\n")

        with pytest.raises(ValueError, match="collect"):
            load_config(path)

    def test_missing_url(self, tmp_path):
        with pytest.raises(ValueError, match="URL is required"):
            load_config(tmp_path / "missing.yaml")


class TestValidation:
    def test_central_needs_project_and_credentials(self):
        with pytest.raises(ValueError) as exc_info:
            ServerConfig.from_dict({"type": "central", "url": "https://central.example.org"})

        assert "project_id" in str(exc_info.value)
        assert "username and password" in str(exc_info.value)

    def test_unknown_server_type(self):
        with pytest.raises(ValueError, match="Unknown server type"):
            ServerConfig.from_dict({"type": "kobo", "url": "https://collect.example.org"})

    @pytest.mark.parametrize("url", ["ftp://collect.example.org", "https://h.org?formId=a", "collect"])
    def test_invalid_url(self, url):
        with pytest.raises(ValueError, match="Invalid server URL"):
            ServerConfig.from_dict({"url": url})

    def test_non_positive_page_size(self):
        with pytest.raises(ValueError, match="page_size"):
            PullConfig.from_dict({"page_size": 0})

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("COLLECT_SERVER_URL", "https://collect.example.org")
        monkeypatch.setenv("COLLECT_USERNAME", "alice")
        monkeypatch.setenv("LOG_LEVEL", "warning")

        config = CollectConfig.from_env()

        assert config.server.credentials.username == "alice"
        assert config.logging.level == "WARNING"
