"""
Configuration for pull runs.

Loaded from a YAML file whose settings live under a top-level "collect:"
key; environment variables override file values, and dataclass defaults
fill in the rest.

    collect:
      server:
        type: aggregate            # or central
        url: https://collect.example.org
        username: alice
        password: secret
        project_id: 1              # central only
      pull:
        storage_dir: ./storage
        page_size: 100
        include_incomplete: false
        max_parallel: 4
        timeout_seconds: 60
        connect_timeout_seconds: 10
        private_key_path: ./keys/form.pem
        forms: [census, household]
        start_from_last: true
      logging:
        level: INFO
        log_dir: ./logs
        json_format: true
      metrics:
        port: 8000                 # 0 disables the metrics server
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.download.http_client import Credentials
from core.security.url_validation import validate_server_url

DEFAULT_CONFIG_PATH = Path("config.yaml")

SERVER_TYPES = ("aggregate", "central")


def _env(name: str, default: Any) -> Any:
    value = os.getenv(name)
    return default if value is None or value == "" else value


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


@dataclass
class ServerConfig:
    """Remote server to pull from.

    Load with ServerConfig.from_env() or through load_config().
    """

    url: str
    type: str = "aggregate"
    username: str = ""
    password: str = ""
    project_id: Optional[int] = None

    @property
    def credentials(self) -> Optional[Credentials]:
        if not self.username:
            return None
        return Credentials(self.username, self.password)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        """Build from a YAML mapping, letting environment variables win.

        Environment variables:
            COLLECT_SERVER_URL: Server base URL (required)
            COLLECT_SERVER_TYPE: aggregate (default) or central
            COLLECT_USERNAME / COLLECT_PASSWORD: Credentials
            COLLECT_PROJECT_ID: Project of a central server

        Raises:
            ValueError: If the URL is missing or the values are invalid
        """
        url = _env("COLLECT_SERVER_URL", data.get("url"))
        if not url:
            raise ValueError("Server URL is required (collect.server.url or COLLECT_SERVER_URL)")

        project_id = _env("COLLECT_PROJECT_ID", data.get("project_id"))
        config = cls(
            url=str(url),
            type=str(_env("COLLECT_SERVER_TYPE", data.get("type", "aggregate"))).lower(),
            username=str(_env("COLLECT_USERNAME", data.get("username", ""))),
            password=str(_env("COLLECT_PASSWORD", data.get("password", ""))),
            project_id=int(project_id) if project_id is not None else None,
        )
        errors = config.validate()
        if errors:
            raise ValueError("; ".join(errors))
        return config

    @classmethod
    def from_env(cls) -> "ServerConfig":
        return cls.from_dict({})

    def validate(self) -> List[str]:
        errors = []
        if self.type not in SERVER_TYPES:
            errors.append(f"Unknown server type: {self.type!r} (expected one of {SERVER_TYPES})")
        is_valid, error = validate_server_url(self.url)
        if not is_valid:
            errors.append(f"Invalid server URL: {error}")
        if self.type == "central":
            if self.project_id is None:
                errors.append("project_id is required for central servers")
            if not self.username or not self.password:
                errors.append("username and password are required for central servers")
        return errors


@dataclass
class PullConfig:
    """How forms are pulled and where they're stored."""

    storage_dir: Path = Path("storage")
    page_size: int = 100
    include_incomplete: bool = False
    max_parallel: int = 4
    timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0
    private_key_path: Optional[Path] = None
    forms: List[str] = field(default_factory=list)
    start_from_last: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PullConfig":
        """Build from a YAML mapping, letting environment variables win.

        Environment variables:
            COLLECT_STORAGE_DIR: storage (default)
            COLLECT_PAGE_SIZE: 100 (default)
            COLLECT_INCLUDE_INCOMPLETE: false (default)
            COLLECT_MAX_PARALLEL: 4 (default)
            COLLECT_TIMEOUT_SECONDS: 60 (default)
            COLLECT_CONNECT_TIMEOUT_SECONDS: 10 (default)
            COLLECT_PRIVATE_KEY: PEM private key for encrypted forms
            COLLECT_FORMS: Comma-separated form IDs (default: all forms)
            COLLECT_START_FROM_LAST: true (default)

        Raises:
            ValueError: If a numeric value is invalid
        """
        private_key = _env("COLLECT_PRIVATE_KEY", data.get("private_key_path"))
        config = cls(
            storage_dir=Path(_env("COLLECT_STORAGE_DIR", data.get("storage_dir", "storage"))),
            page_size=int(_env("COLLECT_PAGE_SIZE", data.get("page_size", 100))),
            include_incomplete=_as_bool(
                _env("COLLECT_INCLUDE_INCOMPLETE", data.get("include_incomplete", False))
            ),
            max_parallel=int(_env("COLLECT_MAX_PARALLEL", data.get("max_parallel", 4))),
            timeout_seconds=float(_env("COLLECT_TIMEOUT_SECONDS", data.get("timeout_seconds", 60))),
            connect_timeout_seconds=float(
                _env("COLLECT_CONNECT_TIMEOUT_SECONDS", data.get("connect_timeout_seconds", 10))
            ),
            private_key_path=Path(private_key) if private_key else None,
            forms=_as_list(_env("COLLECT_FORMS", data.get("forms"))),
            start_from_last=_as_bool(_env("COLLECT_START_FROM_LAST", data.get("start_from_last", True))),
        )
        errors = config.validate()
        if errors:
            raise ValueError("; ".join(errors))
        return config

    @classmethod
    def from_env(cls) -> "PullConfig":
        return cls.from_dict({})

    def validate(self) -> List[str]:
        errors = []
        if self.page_size < 1:
            errors.append(f"page_size must be positive, got {self.page_size}")
        if self.max_parallel < 1:
            errors.append(f"max_parallel must be positive, got {self.max_parallel}")
        if self.timeout_seconds <= 0 or self.connect_timeout_seconds <= 0:
            errors.append("timeouts must be positive")
        return errors


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_dir: Path = Path("logs")
    json_format: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingConfig":
        return cls(
            level=str(_env("LOG_LEVEL", data.get("level", "INFO"))).upper(),
            log_dir=Path(_env("LOG_DIR", data.get("log_dir", "logs"))),
            json_format=_as_bool(_env("LOG_JSON", data.get("json_format", True))),
        )

    @property
    def level_number(self) -> int:
        return getattr(logging, self.level, logging.INFO)


@dataclass
class MetricsConfig:
    port: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsConfig":
        return cls(port=int(_env("METRICS_PORT", data.get("port", 0))))


@dataclass
class CollectConfig:
    """Everything a pull run needs."""

    server: ServerConfig
    pull: PullConfig = field(default_factory=PullConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_env(cls) -> "CollectConfig":
        return cls(
            server=ServerConfig.from_env(),
            pull=PullConfig.from_env(),
            logging=LoggingConfig.from_dict({}),
            metrics=MetricsConfig.from_dict({}),
        )


def load_config(config_path: Optional[Path] = None) -> CollectConfig:
    """
    Load configuration from YAML, then environment.

    A missing file is fine as long as the environment provides the
    required values.

    Args:
        config_path: Path to the YAML config file (default: ./config.yaml)

    Raises:
        ValueError: If the file lacks the "collect:" key or a required
            value is missing
    """
    config_path = config_path or DEFAULT_CONFIG_PATH

    if config_path.exists():
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
        if "collect" not in data:
            raise ValueError(f"Config must have a 'collect:' top-level key: {config_path}")
        data = data["collect"] or {}
    else:
        data = {}

    return CollectConfig(
        server=ServerConfig.from_dict(data.get("server") or {}),
        pull=PullConfig.from_dict(data.get("pull") or {}),
        logging=LoggingConfig.from_dict(data.get("logging") or {}),
        metrics=MetricsConfig.from_dict(data.get("metrics") or {}),
    )
