"""Grafana to files: snapshot the instance and bring the tree in line with it."""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import baseline, codec, settings
from .baseline import Defs, EntityMeta
from .context import SyncContext
from .fs_utils import read_text, remove_file, rewrite_file
from .git_ops import GitRepository
from .grafana_client import NotFound

logger = logging.getLogger(__name__)

SEARCH_TYPES = {"dash-db": codec.DASHBOARD, "dash-folder": codec.FOLDER}


@dataclass
class Fetched:
    kind: str
    meta: EntityMeta
    version: int
    body: dict[str, Any]


@dataclass
class Snapshot:
    dashboards: dict[str, Fetched] = field(default_factory=dict)
    libraries: dict[str, Fetched] = field(default_factory=dict)
    folders: dict[str, EntityMeta] = field(default_factory=dict)
    # Present in Grafana but unusable this run; their baseline entries are kept.
    skipped: set[tuple[str, str]] = field(default_factory=set)
    # Matched the ignore prefix; neither present nor absent.
    ignored: set[tuple[str, str]] = field(default_factory=set)

    def entities(self, kind: str) -> dict[str, Fetched]:
        return self.dashboards if kind == codec.DASHBOARD else self.libraries


@dataclass
class VersionChange:
    kind: str
    uid: str
    old: int
    new: int


@dataclass
class PullResult:
    written: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changes: list[VersionChange] = field(default_factory=list)
    commit: str | None = None
    pushed: bool = False


class Tree:
    """Writes and deletions under the sync path, staged when a repository is in use."""

    def __init__(self, root: Path, repo: GitRepository | None = None) -> None:
        self.root = root
        self.repo = repo

    def write(self, rel_path: str, content: str) -> bool:
        path = self.root / rel_path
        if path.exists() and read_text(path) == content:
            return False
        # delete then write so the new content never lands on top of the old one
        remove_file(path)
        rewrite_file(path, content)
        if self.repo is not None:
            self.repo.stage(rel_path)
        return True

    def delete(self, rel_path: str) -> bool:
        path = self.root / rel_path
        existed = path.exists()
        if self.repo is not None:
            self.repo.remove(rel_path)
        else:
            remove_file(path)
        return existed


def _parse_version(value: Any) -> int | None:
    if value is None:
        return 0
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _fetch_dashboard(client, entry: dict[str, Any], snapshot: Snapshot, ignore_prefix: str) -> None:
    uid = entry["uid"]
    meta = EntityMeta.from_json(entry)
    if codec.matches_prefix(ignore_prefix, uid, meta.title):
        logger.info("Dashboard %s (%s) starts with prefix %r, skipping", uid, meta.title, ignore_prefix)
        snapshot.ignored.add((codec.DASHBOARD, uid))
        return
    logger.debug("Retrieving dashboard %s", uid)
    try:
        data = client.get_dashboard(uid)
    except NotFound:
        logger.warning("Dashboard %s disappeared while pulling, keeping its previous state", uid)
        snapshot.skipped.add((codec.DASHBOARD, uid))
        return
    body = data["dashboard"]
    try:
        view = codec.EntityView.from_body(body)
    except codec.MalformedEntity as exc:
        logger.error("Skipping malformed dashboard %s: %s", uid, exc)
        snapshot.skipped.add((codec.DASHBOARD, uid))
        return
    dashboard_meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
    meta.title = view.title
    meta.folder_uid = str(dashboard_meta.get("folderUid") or meta.folder_uid or "")
    raw_version = dashboard_meta.get("version", body.get("version"))
    version = _parse_version(raw_version)
    if version is None:
        logger.error("Skipping malformed dashboard %s: bad version %r", uid, raw_version)
        snapshot.skipped.add((codec.DASHBOARD, uid))
        return
    snapshot.dashboards[uid] = Fetched(codec.DASHBOARD, meta, version, body)


def _fetch_library(element: dict[str, Any], snapshot: Snapshot, ignore_prefix: str) -> None:
    meta = EntityMeta.from_json(element)
    if meta is None:
        logger.warning("Ignoring library element without a uid: %s", element.get("name"))
        return
    if not meta.folder_uid and isinstance(element.get("folderUid"), str):
        meta.folder_uid = element["folderUid"]
    if codec.matches_prefix(ignore_prefix, meta.uid, meta.title):
        logger.info("Library element %s (%s) starts with prefix %r, skipping", meta.uid, meta.title, ignore_prefix)
        snapshot.ignored.add((codec.LIBRARY, meta.uid))
        return
    if not isinstance(element.get("name"), str):
        logger.error("Skipping malformed library element %s: no name", meta.uid)
        snapshot.skipped.add((codec.LIBRARY, meta.uid))
        return
    version = _parse_version(element.get("version"))
    if version is None:
        logger.error("Skipping malformed library element %s: bad version %r", meta.uid, element.get("version"))
        snapshot.skipped.add((codec.LIBRARY, meta.uid))
        return
    snapshot.libraries[meta.uid] = Fetched(codec.LIBRARY, meta, version, element)


def fetch_definitions(client, ignore_prefix: str = "") -> Snapshot:
    """Take a point-in-time snapshot of dashboards, folders and library elements."""

    snapshot = Snapshot()
    logger.info("Getting dashboard and folder list from Grafana")
    for entry in client.search():
        uid = entry.get("uid")
        kind = SEARCH_TYPES.get(entry.get("type"))
        if not isinstance(uid, str) or not uid:
            logger.warning("Ignoring search result without a uid: %s", entry.get("title"))
            continue
        if kind == codec.DASHBOARD:
            _fetch_dashboard(client, entry, snapshot, ignore_prefix)
        elif kind == codec.FOLDER:
            snapshot.folders[uid] = EntityMeta.from_json(entry)
        else:
            logger.warning("Unknown search result type %r for %s, ignoring", entry.get("type"), uid)
    logger.info("Getting library elements from Grafana")
    for element in client.list_library_elements():
        _fetch_library(element, snapshot, ignore_prefix)
    return snapshot


def _apply_versioned(kind: str, snapshot: Snapshot, previous: Defs, current: Defs, tree: Tree, result: PullResult) -> None:
    old_versions = previous.versions(kind)
    old_meta = previous.meta(kind)
    fetched = snapshot.entities(kind)

    for uid in sorted(fetched):
        item = fetched[uid]
        known = uid in old_versions
        old_version = old_versions.get(uid, 0)
        if known and item.version < old_version:
            logger.warning(
                "Grafana reports %s %s at version %d, older than the synced version %d; not rolling back",
                kind,
                uid,
                item.version,
                old_version,
            )
            current.record(kind, old_meta.get(uid, item.meta), old_version)
            continue
        if not known or item.version > old_version:
            logger.info(
                "Grafana has a newer %s version than previously synced, updating: %s (%s) %d => %d",
                kind,
                uid,
                item.meta.title,
                old_version,
                item.version,
            )
            text, name = codec.encode(item.body, item.meta.folder_uid, kind)
            rel_path = f"{codec.KIND_DIRS[kind]}/{name}.json"
            previous_meta = old_meta.get(uid)
            if previous_meta is not None:
                old_path = codec.entity_path(kind, uid, previous_meta.title)
                if old_path != rel_path and tree.delete(old_path):
                    result.removed.append(old_path)
            if tree.write(rel_path, text):
                result.written.append(rel_path)
            result.changes.append(VersionChange(kind, uid, old_version, item.version))
        current.record(kind, item.meta, item.version)

    for uid in sorted(old_versions):
        if uid in fetched or (kind, uid) in snapshot.ignored:
            continue
        meta = old_meta[uid]
        if (kind, uid) in snapshot.skipped:
            current.record(kind, meta, old_versions[uid])
            continue
        rel_path = codec.entity_path(kind, uid, meta.title)
        logger.info("Removing %s %s (%s) from the tree", kind, uid, meta.title)
        if tree.delete(rel_path):
            result.removed.append(rel_path)


def _apply_folders(snapshot: Snapshot, previous: Defs, current: Defs, tree: Tree, result: PullResult) -> None:
    # Folder deletions are never mirrored: deleting a folder deletes every dashboard in it.
    for uid in sorted(snapshot.folders):
        meta = snapshot.folders[uid]
        text, name = codec.encode_folder({"uid": uid, "title": meta.title, "folderUid": meta.folder_uid})
        rel_path = f"{settings.FOLDERS_DIR}/{name}.json"
        previous_meta = previous.folder_meta.get(uid)
        if previous_meta is not None:
            old_path = codec.entity_path(codec.FOLDER, uid, previous_meta.title)
            if old_path != rel_path and tree.delete(old_path):
                result.removed.append(old_path)
        if tree.write(rel_path, text):
            result.written.append(rel_path)
        current.folder_meta[uid] = meta


def _remove_legacy_files(previous: Defs, tree: Tree, result: PullResult) -> None:
    for slug in previous.legacy_slugs:
        rel_path = f"{settings.DASHBOARDS_DIR}/{slug}.json"
        if (tree.root / rel_path).exists() and rel_path not in result.written:
            logger.info("Removing title-named dashboard file %s", rel_path)
            tree.delete(rel_path)
            result.removed.append(rel_path)


def apply_snapshot(snapshot: Snapshot, previous: Defs, tree: Tree) -> tuple[Defs, PullResult]:
    """Write, rename and delete files so the tree matches ``snapshot``.

    Returns the new baseline and what was done. Nothing here talks to Grafana
    or commits; callers persist the baseline and commit.
    """

    current = Defs()
    result = PullResult()
    _apply_versioned(codec.DASHBOARD, snapshot, previous, current, tree, result)
    _apply_versioned(codec.LIBRARY, snapshot, previous, current, tree, result)
    _apply_folders(snapshot, previous, current, tree, result)
    _remove_legacy_files(previous, tree, result)
    return current, result


def commit_message(changes: list[VersionChange]) -> str:
    lines = [f"Updated dashboards on {socket.gethostname()}"]
    for change in changes:
        lines.append(f"{change.uid}: {change.old} => {change.new}")
    return "\n".join(lines) + "\n"


def _stage_tree(repo: GitRepository, root: Path, defs_name: str) -> None:
    # Also picks up files written by an earlier run that failed before committing.
    for rel_path in (*settings.ENTITY_DIRS, defs_name):
        if (root / rel_path).exists():
            repo.run_git(["add", "-A", "--", rel_path])


def pull_and_commit(ctx: SyncContext) -> PullResult:
    """Run one pull reconciliation: Grafana state into files, baseline and a commit."""

    with ctx.lock:
        repo = ctx.repo
        git_options = ctx.options.git
        if repo is not None:
            repo.sync()

        snapshot = fetch_definitions(ctx.client, ctx.ignore_prefix)
        previous = baseline.load(ctx.defs_path)
        tree = Tree(ctx.sync_path, repo)
        current, result = apply_snapshot(snapshot, previous, tree)

        # saved before committing so a crash in between still records the new versions
        if baseline.save(ctx.defs_path, current):
            logger.info("Updated defs file %s", ctx.defs_name)
        if repo is None or git_options is None:
            logger.info(
                "Pull complete: %d written, %d removed", len(result.written), len(result.removed)
            )
            return result

        if git_options.dont_commit:
            logger.info("Skipping git commit and push - asked not to")
            return result

        _stage_tree(repo, ctx.sync_path, ctx.defs_name)
        if repo.has_staged_changes():
            logger.info("Committing changes")
            result.commit = repo.commit(
                commit_message(result.changes),
                git_options.commits_author.name,
                git_options.commits_author.email,
            )
        else:
            logger.info("No changes to commit")

        if git_options.dont_push:
            logger.info("Skipping git push - asked not to")
        else:
            # pushes every pending commit, including ones an earlier run failed to push
            repo.push()
            result.pushed = True
        return result
