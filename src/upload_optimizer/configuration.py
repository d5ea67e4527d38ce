from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .models import TaskConfig, TaskDefinition

ENV_PREFIX = "IUO_"

DEFAULT_WAIT_PATH = "/_upload-optimizer/wait"
DEFAULT_HEALTH_PATH = "/_upload-optimizer/healthz"

# Browsers and intermediate proxies commonly give up after 60 seconds
MAX_WAIT_TIMEOUT = 60.0

_LIST_SETTINGS = {"no_redirect_user_agents"}


class Settings(BaseModel):
    upstream: str
    host: str = "0.0.0.0"
    port: int = 2283
    tasks_file: Path = Path("config/default.yaml")
    filter_path: str = "/api/assets"
    filter_form_key: str = "assetData"
    wait_path: str = DEFAULT_WAIT_PATH
    max_concurrent_tasks: int = 10
    job_workers: int = 32
    wait_threads: int = 64
    delivery_timeout: float = 10.0
    ack_timeout: float = 10.0
    wait_timeout: float = 55.0
    upstream_timeout: Optional[float] = None
    no_redirect_user_agents: List[str] = ["Dart/"]
    watch_dir: Optional[Path] = None
    undone_dir: Optional[Path] = None
    api_key: Optional[str] = None
    device_id: str = "upload-optimizer"
    temp_dir: Optional[Path] = None
    log_level: str = "INFO"

    @field_validator("upstream")
    @classmethod
    def _check_upstream(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("upstream must be an http:// or https:// URL, e.g. http://immich-server:2283")
        return value

    @field_validator("max_concurrent_tasks", "job_workers", "wait_threads")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("delivery_timeout", "ack_timeout", "wait_timeout")
    @classmethod
    def _check_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than 0")
        return value

    @field_validator("wait_timeout")
    @classmethod
    def _check_wait_timeout(cls, value: float) -> float:
        if value >= MAX_WAIT_TIMEOUT:
            raise ValueError(f"must stay below {MAX_WAIT_TIMEOUT:.0f} seconds to avoid client timeouts")
        return value

    @field_validator("filter_path", "wait_path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("must start with /")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value}")
        return value

    @model_validator(mode="after")
    def _check_watch_mode(self) -> "Settings":
        if self.watch_dir is not None:
            if self.undone_dir is None:
                raise ValueError("undone_dir is required when watch_dir is set")
            if not self.api_key:
                raise ValueError("api_key is required when watch_dir is set")
            if self.undone_dir.resolve().is_relative_to(self.watch_dir.resolve()):
                raise ValueError("undone_dir must not be inside watch_dir")
        return self

    @property
    def config_dir(self) -> Path:
        """Working directory for task commands."""
        return self.tasks_file.resolve().parent


def _env_overrides(environ: Dict[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in Settings.model_fields:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None or raw == "":
            continue
        if name in _LIST_SETTINGS:
            values[name] = [item.strip() for item in raw.split(",") if item.strip()]
        else:
            values[name] = raw
    return values


def load_settings(overrides: Optional[Dict[str, Any]] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """
    Build settings from ``.env``, ``IUO_*`` environment variables and explicit overrides.

    Overrides with a value of None are ignored so command line options that were
    not given fall back to the environment.

    Raises:
        ConfigurationError: If the merged values do not validate
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    values = _env_overrides(environ)
    values.update({key: value for key, value in (overrides or {}).items() if value is not None})

    try:
        return Settings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid settings: {exc}") from exc


def load_task_config(path: Path) -> List[TaskDefinition]:
    """
    Load and validate the ordered task list from a YAML file.

    Raises:
        ConfigurationError: If the file is missing, unparseable or contains an invalid task
    """
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"unable to read task config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"unable to parse task config {path}: {exc}") from exc

    if not isinstance(raw, dict) or not isinstance(raw.get("tasks"), list):
        raise ConfigurationError(f"task config {path} must contain a 'tasks' list")

    try:
        return TaskConfig(**raw).tasks
    except ValidationError as exc:
        raise ConfigurationError(f"invalid task config {path}: {exc}") from exc
