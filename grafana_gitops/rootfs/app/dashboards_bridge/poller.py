from __future__ import annotations

import logging
import time

from . import settings
from .baseline import BaselineError
from .context import SyncContext
from .git_ops import GitError
from .grafana_client import GrafanaError
from .pusher import ChangeSet, PushResult, load_contents, push_changes

logger = logging.getLogger(__name__)


class PollerError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class Poller:
    """Watch the remote branch and push every new commit to Grafana."""

    def __init__(self, ctx: SyncContext, delete_removed: bool = False, single_shot: bool = False) -> None:
        if ctx.repo is None or ctx.options.git is None:
            raise PollerError("the git-pull pusher needs a git section in the configuration")
        self.ctx = ctx
        self.repo = ctx.repo
        self.delete_removed = delete_removed
        self.single_shot = single_shot
        self.interval = settings.DEFAULT_POLL_INTERVAL_SECONDS
        if ctx.options.pusher:
            self.interval = ctx.options.pusher.interval
        self.previous_commit: str | None = None
        self.ready = False

    def setup(self) -> None:
        self.repo.sync()
        self.previous_commit = self.repo.latest_commit()
        self.ready = True
        logger.info("Poller starting at commit %s", self.previous_commit)

    def run_once(self) -> PushResult | None:
        with self.ctx.lock:
            self.repo.sync()
            latest = self.repo.latest_commit()
            if latest is None or latest == self.previous_commit:
                logger.debug("No new commit")
                return None
            logger.info("New commit(s) detected: %s => %s", self.previous_commit, latest)
            commits = self.repo.commits_between(self.previous_commit, latest)
            changes = ChangeSet.from_commits(commits, self.ctx.options.git.commits_author.email)
            previous = self.previous_commit
            # Commits pulled in by the loop-breaking pull come after ``latest``
            # and are picked up on the next run.
            self.previous_commit = latest
            if not changes:
                logger.debug("Only bridge commits since %s", previous)
                return None
            contents = load_contents(self.repo, changes, previous, latest)
            return push_changes(self.ctx, changes, contents, self.delete_removed)

    def run_forever(self) -> None:
        while True:
            try:
                if not self.ready:
                    self.setup()
                self.run_once()
            except (GrafanaError, GitError, BaselineError) as exc:
                if self.single_shot:
                    raise
                logger.error("Poller iteration failed: %s", exc)
            if self.single_shot:
                return
            time.sleep(self.interval)
