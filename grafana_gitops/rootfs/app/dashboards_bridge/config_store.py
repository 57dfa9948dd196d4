from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from . import settings
from .fs_utils import read_text

PUSHER_MODES = {"git-pull", "webhook"}
LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


class ConfigError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


@dataclass
class GrafanaOptions:
    base_url: str
    api_key: str = ""
    username: str = ""
    password: str = ""
    skip_verify: bool = False
    ignore_prefix: str = ""
    timeout: float = settings.DEFAULT_TIMEOUT_SECONDS
    folder_ids: bool = False
    overwrite: bool = True


@dataclass
class CommitsAuthor:
    name: str
    email: str


@dataclass
class GitOptions:
    url: str
    clone_path: Path
    branch: str = "master"
    private_key: str = ""
    commits_author: CommitsAuthor = field(
        default_factory=lambda: CommitsAuthor("Grafana GitOps", "grafana-gitops@localhost")
    )
    versions_file_prefix: str = ""
    dont_commit: bool = False
    dont_push: bool = False


@dataclass
class PusherOptions:
    mode: str = "git-pull"
    interval: int = settings.DEFAULT_POLL_INTERVAL_SECONDS
    interface: str = "0.0.0.0"
    port: int = 8080
    path: str = "/gitlab-webhook"
    secret: str = ""


@dataclass
class Options:
    grafana: GrafanaOptions
    git: GitOptions | None
    sync_path: Path
    pusher: PusherOptions | None
    log_level: str = "info"

    @property
    def versions_file_prefix(self) -> str:
        return self.git.versions_file_prefix if self.git else ""


def _section(data: dict[str, Any], key: str) -> dict[str, Any] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a map")
    return value


def _string(section: dict[str, Any], key: str, default: str = "", prefix: str = "") -> str:
    value = section.get(key, default)
    if value is None:
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise ConfigError(f"{prefix}{key} must be a string")
    return value


def _bool(section: dict[str, Any], key: str, default: bool, prefix: str = "") -> bool:
    value = section.get(key, default)
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{prefix}{key} must be true or false")


def _number(section: dict[str, Any], key: str, default: float, prefix: str = "") -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{prefix}{key} must be a positive number")
    return value


def _build_grafana(section: dict[str, Any] | None) -> GrafanaOptions:
    if section is None:
        raise ConfigError("grafana section is required")
    base_url = _string(section, "base_url", prefix="grafana.")
    if not base_url:
        raise ConfigError("grafana.base_url is required")
    api_key = os.environ.get(settings.API_KEY_ENV) or _string(section, "api_key", prefix="grafana.")
    return GrafanaOptions(
        base_url=base_url.rstrip("/"),
        api_key=api_key,
        username=_string(section, "username", prefix="grafana."),
        password=_string(section, "password", prefix="grafana."),
        skip_verify=_bool(section, "skip_verify", False, "grafana."),
        ignore_prefix=_string(section, "ignore_prefix", prefix="grafana."),
        timeout=float(_number(section, "timeout", settings.DEFAULT_TIMEOUT_SECONDS, "grafana.")),
        folder_ids=_bool(section, "folder_ids", False, "grafana."),
        overwrite=_bool(section, "overwrite", True, "grafana."),
    )


def _build_git(section: dict[str, Any] | None) -> GitOptions | None:
    if section is None:
        return None
    url = _string(section, "url", prefix="git.")
    clone_path = _string(section, "clone_path", prefix="git.")
    if not clone_path:
        raise ConfigError("git.clone_path is required")
    author = _section(section, "commits_author") or {}
    return GitOptions(
        url=url,
        clone_path=Path(clone_path),
        branch=_string(section, "branch", "master", "git.") or "master",
        private_key=_string(section, "private_key", prefix="git."),
        commits_author=CommitsAuthor(
            name=_string(author, "name", "Grafana GitOps", "git.commits_author."),
            email=_string(author, "email", "grafana-gitops@localhost", "git.commits_author."),
        ),
        versions_file_prefix=_string(section, "versions_file_prefix", prefix="git."),
        dont_commit=_bool(section, "dont_commit", False, "git."),
        dont_push=_bool(section, "dont_push", False, "git."),
    )


def _build_pusher(section: dict[str, Any] | None) -> PusherOptions | None:
    if section is None:
        return None
    mode = _string(section, "mode", "git-pull", "pusher.")
    if mode not in PUSHER_MODES:
        raise ConfigError("pusher.mode must be git-pull or webhook")
    path = _string(section, "path", "/gitlab-webhook", "pusher.")
    if not path.startswith("/"):
        path = f"/{path}"
    return PusherOptions(
        mode=mode,
        interval=int(_number(section, "interval", settings.DEFAULT_POLL_INTERVAL_SECONDS, "pusher.")),
        interface=_string(section, "interface", "0.0.0.0", "pusher."),
        port=int(_number(section, "port", 8080, "pusher.")),
        path=path,
        secret=_string(section, "secret", prefix="pusher."),
    )


def build_options(data: dict[str, Any]) -> Options:
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a map")
    git = _build_git(_section(data, "git"))
    simple_sync = _section(data, "simple_sync") or {}
    if git is not None:
        sync_path = git.clone_path
    else:
        raw_sync_path = _string(simple_sync, "sync_path", prefix="simple_sync.")
        if not raw_sync_path:
            raise ConfigError("Either git.clone_path or simple_sync.sync_path is required")
        sync_path = Path(raw_sync_path)
    log_section = _section(data, "log") or {}
    log_level = _string(log_section, "level", "info", "log.").lower()
    if log_level not in LOG_LEVELS:
        raise ConfigError(f"log.level must be one of {', '.join(sorted(LOG_LEVELS))}")
    return Options(
        grafana=_build_grafana(_section(data, "grafana")),
        git=git,
        sync_path=sync_path,
        pusher=_build_pusher(_section(data, "pusher")),
        log_level=log_level,
    )


def load_options(path: Path | None = None) -> Options:
    config_path = path or settings.CONFIG_PATH
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")
    try:
        data = yaml.safe_load(read_text(config_path))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid {config_path.name}: {exc}") from exc
    return build_options(data or {})
