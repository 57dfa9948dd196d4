"""The defs file: what the bridge last synced, per entity.

The file maps every known dashboard and library element uid to the version
that was last written to the tree, together with the search metadata needed to
find its file again (title, folder). Folder metadata is kept alongside it.
"""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import codec, settings
from .fs_utils import json_dump, read_text, rewrite_file

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


class BaselineError(Exception):
    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path is None:
            return self.message
        return f"{self.path}: {self.message}"


@dataclass
class EntityMeta:
    uid: str
    title: str = ""
    folder_uid: str = ""
    tags: list[str] = field(default_factory=list)
    starred: bool = False
    type: str = ""

    @classmethod
    def from_json(cls, raw: Any, fallback_uid: str | None = None) -> "EntityMeta | None":
        if not isinstance(raw, dict):
            return None
        uid = raw.get("uid") or fallback_uid
        if not isinstance(uid, str) or not uid:
            return None
        title = raw.get("title")
        if title is None:
            title = raw.get("name", "")
        folder_uid = raw.get("folderUid")
        if not folder_uid and isinstance(raw.get("meta"), dict):
            folder_uid = raw["meta"].get("folderUid")
        tags = raw.get("tags")
        return cls(
            uid=uid,
            title=str(title or ""),
            folder_uid=str(folder_uid or ""),
            tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
            starred=bool(raw.get("isStarred", False)),
            type=str(raw.get("type") or ""),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "title": self.title,
            "folderUid": self.folder_uid,
            "tags": list(self.tags),
            "isStarred": self.starred,
            "type": self.type,
        }


@dataclass
class Defs:
    dashboard_versions: dict[str, int] = field(default_factory=dict)
    dashboard_meta: dict[str, EntityMeta] = field(default_factory=dict)
    library_versions: dict[str, int] = field(default_factory=dict)
    library_meta: dict[str, EntityMeta] = field(default_factory=dict)
    folder_meta: dict[str, EntityMeta] = field(default_factory=dict)
    # Title-named dashboard files from the pre-uid layout; consumed once.
    legacy_slugs: list[str] = field(default_factory=list)

    def versions(self, kind: str) -> dict[str, int]:
        if kind == codec.DASHBOARD:
            return self.dashboard_versions
        if kind == codec.LIBRARY:
            return self.library_versions
        raise ValueError(f"{kind} entities are not versioned")

    def meta(self, kind: str) -> dict[str, EntityMeta]:
        if kind == codec.DASHBOARD:
            return self.dashboard_meta
        if kind == codec.LIBRARY:
            return self.library_meta
        if kind == codec.FOLDER:
            return self.folder_meta
        raise ValueError(f"Unsupported kind: {kind}")

    def record(self, kind: str, meta: EntityMeta, version: int) -> None:
        self.versions(kind)[meta.uid] = version
        self.meta(kind)[meta.uid] = meta

    def forget(self, kind: str, uid: str) -> None:
        self.versions(kind).pop(uid, None)
        self.meta(kind).pop(uid, None)

    def to_json(self) -> dict[str, Any]:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "dashboardVersionByUID": dict(self.dashboard_versions),
            "dashboardMetaByUID": {uid: meta.to_json() for uid, meta in self.dashboard_meta.items()},
            "libraryVersionByUID": dict(self.library_versions),
            "libraryMetaByUID": {uid: meta.to_json() for uid, meta in self.library_meta.items()},
            "foldersMetaByUID": {uid: meta.to_json() for uid, meta in self.folder_meta.items()},
        }


def defs_filename(prefix: str | None) -> str:
    if prefix == "hostname":
        return f"{socket.gethostname()}-{settings.DEFS_FILE_SUFFIX}"
    return f"{prefix or ''}{settings.DEFS_FILE_SUFFIX}"


def is_defs_file(path: str) -> bool:
    return path.endswith(settings.DEFS_FILE_SUFFIX)


def _mapping(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise BaselineError(f"{key} must be an object")
    return value


def _versions(data: dict[str, Any], key: str) -> dict[str, int]:
    versions: dict[str, int] = {}
    for uid, value in _mapping(data, key).items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise BaselineError(f"{key}.{uid} must be an integer")
        versions[uid] = value
    return versions


def _metas(data: dict[str, Any], key: str, keyed_by_uid: bool) -> dict[str, EntityMeta]:
    metas: dict[str, EntityMeta] = {}
    for entry_key, raw in _mapping(data, key).items():
        meta = EntityMeta.from_json(raw, entry_key if keyed_by_uid else None)
        if meta is None:
            logger.warning("Dropping %s entry %s without a uid", key, entry_key)
            continue
        metas[meta.uid] = meta
    return metas


def _enforce_pairs(kind: str, versions: dict[str, int], metas: dict[str, EntityMeta]) -> None:
    for uid in list(versions):
        if uid not in metas:
            logger.warning("Dropping %s version for %s: no metadata to locate its file", kind, uid)
            versions.pop(uid)
    for uid in metas:
        versions.setdefault(uid, 0)


def upgrade(data: dict[str, Any]) -> Defs:
    """Build a current ``Defs`` from any known schema of the defs file."""

    defs = Defs()
    legacy = False

    defs.dashboard_meta = _metas(data, "dashboardMetaByUID", keyed_by_uid=True)
    if "dashboardMetaBySlug" in data:
        legacy = True
        defs.dashboard_meta.update(_metas(data, "dashboardMetaBySlug", keyed_by_uid=False))
    defs.dashboard_versions = _versions(data, "dashboardVersionByUID")

    defs.library_meta = _metas(data, "libraryMetaByUID", keyed_by_uid=True)
    if "libraryMetaBySlug" in data:
        legacy = True
        defs.library_meta.update(_metas(data, "libraryMetaBySlug", keyed_by_uid=True))
    defs.library_versions = _versions(data, "libraryVersionByUID")

    # Older files keyed folders by their numeric id; the uid inside wins.
    defs.folder_meta = _metas(data, "foldersMetaByUID", keyed_by_uid=data.get("schemaVersion") == SCHEMA_VERSION)

    slug_versions = _versions(data, "dashboardVersionBySlug")
    if slug_versions:
        legacy = True
        slugs = set(slug_versions) | set(_mapping(data, "dashboardMetaByTitle"))
        defs.legacy_slugs = sorted(slugs)

    _enforce_pairs(codec.DASHBOARD, defs.dashboard_versions, defs.dashboard_meta)
    _enforce_pairs(codec.LIBRARY, defs.library_versions, defs.library_meta)
    if legacy:
        logger.info(
            "Upgraded legacy defs file: %d dashboards, %d library elements, %d title-named files",
            len(defs.dashboard_meta),
            len(defs.library_meta),
            len(defs.legacy_slugs),
        )
    return defs


def load(path: Path) -> Defs:
    if not path.exists():
        logger.info("No defs file at %s, starting from an empty baseline", path)
        return Defs()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise BaselineError(f"unreadable: {exc}", path) from exc
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise BaselineError(f"invalid JSON: {exc}", path) from exc
    if not isinstance(data, dict):
        raise BaselineError("defs file must contain a JSON object", path)
    try:
        return upgrade(data)
    except BaselineError as exc:
        raise BaselineError(exc.message, path) from exc


def save(path: Path, defs: Defs) -> bool:
    """Write ``defs`` to ``path`` atomically. Returns False if it was already current."""

    rendered = json_dump(defs.to_json())
    if path.exists() and read_text(path) == rendered:
        return False
    rewrite_file(path, rendered)
    return True
