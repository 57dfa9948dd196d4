"""Files to Grafana: push what changed in the repository, then pull back."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from . import baseline, codec, settings
from .context import SyncContext
from .folders import resolve_folder_id
from .fs_utils import list_json_files, read_text
from .git_ops import CommitChanges, GitRepository
from .grafana_client import GrafanaError, NotFound, VersionConflict
from .puller import PullResult, pull_and_commit

logger = logging.getLogger(__name__)

DIR_KINDS = {directory: kind for kind, directory in codec.KIND_DIRS.items()}


@dataclass
class ChangeSet:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @classmethod
    def from_commits(cls, commits: Iterable[CommitChanges], skip_author_email: str = "") -> "ChangeSet":
        """Fold commits, oldest first, into one disjoint set of changes.

        Commits written by the bridge itself are skipped so that its own pulls
        are never pushed back to Grafana.
        """

        state: dict[str, str] = {}
        for commit in commits:
            if skip_author_email and commit.author_email == skip_author_email:
                logger.debug("Skipping commit %s authored by the bridge", commit.sha)
                continue
            for path in commit.added:
                state[path] = "modified" if state.get(path) == "removed" else "added"
            for path in commit.modified:
                if state.get(path) != "added":
                    state[path] = "modified"
            for path in commit.removed:
                if state.get(path) == "added":
                    # created and deleted within the range: Grafana never saw it
                    state.pop(path)
                else:
                    state[path] = "removed"
        changes = cls()
        for path in sorted(state):
            getattr(changes, state[path]).append(path)
        return changes

    @property
    def upserted(self) -> list[str]:
        return [*self.added, *self.modified]

    def __bool__(self) -> bool:
        return bool(self.added or self.modified or self.removed)


@dataclass
class PushResult:
    pushed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    pull: PullResult | None = None


def load_contents(
    repo: GitRepository,
    changes: ChangeSet,
    previous_rev: str | None,
    current_rev: str,
) -> dict[str, str]:
    """Contents of every changed path: current for upserts, previous for removals."""

    contents: dict[str, str] = {}
    for path in changes.upserted:
        content = repo.read_file_at(path, current_rev)
        if content is not None:
            contents[path] = content
    if previous_rev:
        for path in changes.removed:
            content = repo.read_file_at(path, previous_rev)
            if content is not None:
                contents[path] = content
    return contents


def _partition(paths: Iterable[str]) -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {kind: [] for kind in codec.KINDS}
    for path in paths:
        if baseline.is_defs_file(path):
            continue
        directory, _, name = path.partition("/")
        kind = DIR_KINDS.get(directory)
        if kind is None or "/" in name or not name.endswith(".json"):
            logger.info("Ignoring unknown changed file %s", path)
            continue
        grouped[kind].append(path)
    return grouped


class _Push:
    """State for one push run."""

    def __init__(self, ctx: SyncContext, contents: dict[str, str]) -> None:
        self.ctx = ctx
        self.client = ctx.client
        self.contents = contents
        self.result = PushResult()
        self.defs = baseline.load(ctx.defs_path)

    def decode(self, path: str, kind: str) -> codec.Decoded | None:
        content = self.contents.get(path)
        if content is None:
            logger.warning("No content available for %s, skipping", path)
            self.result.skipped.append(path)
            return None
        try:
            decoded = codec.decode(content, kind)
        except codec.MalformedEntity as exc:
            logger.error("Failed to decode %s: %s", path, exc)
            self.result.failed.append(path)
            return None
        if codec.matches_prefix(self.ctx.ignore_prefix, decoded.uid, decoded.title):
            logger.info("%s matches the ignore prefix, skipping", path)
            self.result.skipped.append(path)
            return None
        return decoded

    def upsert_folder(self, path: str) -> None:
        decoded = self.decode(path, codec.FOLDER)
        if decoded is None:
            return
        logger.info("Creating or updating folder %s (%s)", decoded.uid, decoded.title)
        try:
            self.client.create_or_update_folder(decoded.uid, decoded.title, decoded.folder_uid)
        except GrafanaError as exc:
            logger.error("Failed to push folder %s to Grafana: %s", path, exc)
            self.result.failed.append(path)
            return
        self.result.pushed.append(path)

    def upsert_dashboard(self, path: str) -> None:
        decoded = self.decode(path, codec.DASHBOARD)
        if decoded is None:
            return
        grafana_options = self.ctx.options.grafana
        folder_id = None
        if grafana_options.folder_ids:
            folder_id = resolve_folder_id(self.client, decoded.folder_uid)
        version = None
        if not grafana_options.overwrite:
            version = self.defs.dashboard_versions.get(decoded.uid, 0)
        logger.info("Pushing dashboard %s (%s) to folder %r", decoded.uid, decoded.title, decoded.folder_uid)
        try:
            new_version = self.client.create_or_update_dashboard(
                decoded.body, decoded.folder_uid, folder_id=folder_id, version=version
            )
        except VersionConflict as exc:
            logger.error("Dashboard %s changed in Grafana since the last pull, not overwriting: %s", path, exc)
            self.result.failed.append(path)
            return
        except GrafanaError as exc:
            logger.error("Failed to push dashboard %s to Grafana: %s", path, exc)
            self.result.failed.append(path)
            return
        logger.debug("Dashboard %s is now at version %d", decoded.uid, new_version)
        self.result.pushed.append(path)

    def upsert_library(self, path: str) -> None:
        decoded = self.decode(path, codec.LIBRARY)
        if decoded is None:
            return
        folder_id = resolve_folder_id(self.client, decoded.folder_uid)
        version = self.defs.library_versions.get(decoded.uid, 0)
        logger.info("Pushing library element %s (%s)", decoded.uid, decoded.title)
        try:
            self.client.create_or_update_library(
                decoded.body, decoded.folder_uid, folder_id=folder_id, version=version
            )
        except VersionConflict as exc:
            logger.error("Library element %s changed in Grafana since the last pull: %s", path, exc)
            self.result.failed.append(path)
            return
        except GrafanaError as exc:
            logger.error("Failed to push library element %s to Grafana: %s", path, exc)
            self.result.failed.append(path)
            return
        self.result.pushed.append(path)

    def delete(self, path: str, kind: str) -> None:
        decoded = self.decode(path, kind)
        if decoded is None:
            return
        logger.info("Removing %s %s (%s) from Grafana", kind, decoded.uid, decoded.title)
        try:
            if kind == codec.DASHBOARD:
                self.client.delete_dashboard(decoded.uid)
            else:
                self.client.delete_library(decoded.uid)
        except NotFound:
            logger.info("%s %s is already gone from Grafana", kind, decoded.uid)
        except GrafanaError as exc:
            logger.error("Failed to remove %s from Grafana: %s", path, exc)
            self.result.failed.append(path)
            return
        self.result.deleted.append(path)


def push_changes(
    ctx: SyncContext,
    changes: ChangeSet,
    contents: dict[str, str],
    delete_removed: bool = False,
) -> PushResult:
    """Apply repository changes to Grafana, then run the loop-breaking pull.

    Folders are created first so that dashboards and library elements can be
    placed in them, and library elements before the dashboards using them.
    Folders are never deleted: Grafana removes everything inside a deleted
    folder.
    """

    with ctx.lock:
        push = _Push(ctx, contents)
        upserts = _partition(changes.upserted)
        removals = _partition(changes.removed)

        for path in upserts[codec.FOLDER]:
            push.upsert_folder(path)
        # library panels before the dashboards that embed them
        for path in upserts[codec.LIBRARY]:
            push.upsert_library(path)
        for path in upserts[codec.DASHBOARD]:
            push.upsert_dashboard(path)

        if removals[codec.FOLDER]:
            logger.info("Not removing %d folders from Grafana", len(removals[codec.FOLDER]))
        if delete_removed:
            for path in removals[codec.DASHBOARD]:
                push.delete(path, codec.DASHBOARD)
            for path in removals[codec.LIBRARY]:
                push.delete(path, codec.LIBRARY)
        elif removals[codec.DASHBOARD] or removals[codec.LIBRARY]:
            logger.info("Leaving removed files in Grafana, deletion is disabled")

        logger.info(
            "Push complete: %d pushed, %d deleted, %d failed, %d skipped",
            len(push.result.pushed),
            len(push.result.deleted),
            len(push.result.failed),
            len(push.result.skipped),
        )
        # Grafana bumped the versions of everything pushed; record them.
        push.result.pull = pull_and_commit(ctx)
        return push.result


def push_all(ctx: SyncContext) -> PushResult:
    """Push every definition currently in the tree."""

    with ctx.lock:
        paths: list[str] = []
        for directory in settings.ENTITY_DIRS:
            paths.extend(list_json_files(ctx.sync_path, directory))
        contents = {path: read_text(ctx.sync_path / path) for path in paths}
        logger.info("Pushing all %d files from %s", len(paths), ctx.sync_path)
        return push_changes(ctx, ChangeSet(added=paths), contents)
