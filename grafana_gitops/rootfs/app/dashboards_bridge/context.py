from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path

from . import baseline
from .config_store import Options
from .git_ops import GitRepository
from .grafana_client import GrafanaClient


@dataclass
class SyncContext:
    """Everything one reconciliation needs, built once at startup.

    ``lock`` is held for the whole of a pull or push run so that the poller,
    the webhook and the CLI never compute diffs against the same defs file at
    the same time.
    """

    options: Options
    client: GrafanaClient
    repo: GitRepository | None = None
    lock: threading.RLock = field(default_factory=threading.RLock)

    @classmethod
    def from_options(cls, options: Options) -> "SyncContext":
        repo = GitRepository.from_options(options.git) if options.git else None
        return cls(options=options, client=GrafanaClient.from_options(options.grafana), repo=repo)

    @property
    def sync_path(self) -> Path:
        return self.options.sync_path

    @property
    def defs_name(self) -> str:
        return baseline.defs_filename(self.options.versions_file_prefix)

    @property
    def defs_path(self) -> Path:
        return self.sync_path / self.defs_name

    @property
    def ignore_prefix(self) -> str:
        return self.options.grafana.ignore_prefix
