"""Canonical on-disk form of Grafana definitions.

Grafana bodies carry fields that only make sense on the instance that produced
them (numeric ids, version counters, timestamps, actors, numeric folder ids).
The canonical form drops those, records the parent folder uid under an
out-of-band key, and is serialized with sorted keys so that equal definitions
always produce equal bytes.
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass
from typing import Any

from text_unidecode import unidecode

from . import settings
from .fs_utils import json_dump

DASHBOARD = "dashboard"
FOLDER = "folder"
LIBRARY = "library"
KINDS = (DASHBOARD, FOLDER, LIBRARY)

KIND_DIRS = {
    DASHBOARD: settings.DASHBOARDS_DIR,
    FOLDER: settings.FOLDERS_DIR,
    LIBRARY: settings.LIBRARIES_DIR,
}

INSTANCE_KEYS = (
    "id",
    "version",
    "orgId",
    "folderId",
    "folderUid",
    "created",
    "updated",
    "createdBy",
    "updatedBy",
)
ACTOR_KEYS = ("created", "updated", "createdBy", "updatedBy")
LIBRARY_META_KEYS = (*ACTOR_KEYS, "connectedDashboards", "folderName", "folderUid")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class MalformedEntity(ValueError):
    """Raised when a definition body lacks the fields needed to store it."""


@dataclass
class EntityView:
    """The handful of fields the bridge reads or rewrites in a body."""

    uid: str
    title: str
    folder_uid: str = ""

    @classmethod
    def from_body(cls, body: Any, title_key: str = "title") -> "EntityView":
        if not isinstance(body, dict):
            raise MalformedEntity("definition is not a JSON object")
        uid = body.get("uid")
        if not isinstance(uid, str) or not uid:
            raise MalformedEntity("definition has no uid")
        title = body.get(title_key)
        if not isinstance(title, str):
            raise MalformedEntity(f"{uid}: missing or invalid {title_key}")
        folder_uid = body.get(settings.FOLDER_UID_KEY)
        if not isinstance(folder_uid, str):
            folder_uid = ""
        return cls(uid=uid, title=title, folder_uid=folder_uid)

    def merge_into(self, body: dict[str, Any], title_key: str = "title") -> dict[str, Any]:
        """Return a copy of ``body`` with the view's fields written back."""

        merged = dict(body)
        merged["uid"] = self.uid
        merged[title_key] = self.title
        merged[settings.FOLDER_UID_KEY] = self.folder_uid
        return merged


@dataclass
class Decoded:
    uid: str
    title: str
    folder_uid: str
    body: dict[str, Any]


def title_key(kind: str) -> str:
    return "name" if kind == LIBRARY else "title"


def sluglike_name(uid: str, title: str) -> str:
    ascii_title = unidecode(title or "")
    return f"{uid}:{_UNSAFE_CHARS.sub('_', ascii_title)}"


def entity_path(kind: str, uid: str, title: str) -> str:
    return f"{KIND_DIRS[kind]}/{sluglike_name(uid, title)}.json"


def matches_prefix(prefix: str | None, uid: str, title: str) -> bool:
    if not prefix:
        return False
    return title.startswith(prefix) or sluglike_name(uid, title).startswith(prefix)


def _drop_keys(body: dict[str, Any], keys: tuple[str, ...]) -> None:
    for key in keys:
        body.pop(key, None)


def _strip_library_panel_refs(panels: Any) -> None:
    if not isinstance(panels, list):
        return
    for panel in panels:
        if not isinstance(panel, dict):
            continue
        library_panel = panel.get("libraryPanel")
        if isinstance(library_panel, dict):
            library_panel.pop("version", None)
            meta = library_panel.get("meta")
            if isinstance(meta, dict):
                _drop_keys(meta, ACTOR_KEYS)
        # collapsed rows keep their children nested
        _strip_library_panel_refs(panel.get("panels"))


def encode_dashboard(raw_body: Any, folder_uid: str | None) -> tuple[str, str]:
    view = EntityView.from_body(raw_body)
    view.folder_uid = folder_uid or ""
    body = copy.deepcopy(raw_body)
    _drop_keys(body, INSTANCE_KEYS)
    _strip_library_panel_refs(body.get("panels"))
    canonical = view.merge_into(body)
    return json_dump(canonical), sluglike_name(view.uid, view.title)


def encode_library(raw_element: Any, folder_uid: str | None) -> tuple[str, str]:
    view = EntityView.from_body(raw_element, "name")
    view.folder_uid = folder_uid or ""
    body = copy.deepcopy(raw_element)
    _drop_keys(body, INSTANCE_KEYS)
    meta = body.get("meta")
    if isinstance(meta, dict):
        _drop_keys(meta, LIBRARY_META_KEYS)
        if not meta:
            body.pop("meta")
    model = body.get("model")
    if isinstance(model, dict):
        library_panel = model.get("libraryPanel")
        if isinstance(library_panel, dict):
            _drop_keys(library_panel, ("version", *ACTOR_KEYS))
    canonical = view.merge_into(body, "name")
    return json_dump(canonical), sluglike_name(view.uid, view.title)


def encode_folder(folder: Any) -> tuple[str, str]:
    view = EntityView.from_body(folder)
    parent = folder.get("folderUid") or folder.get(settings.FOLDER_UID_KEY) or ""
    view.folder_uid = parent if isinstance(parent, str) else ""
    canonical = view.merge_into({})
    return json_dump(canonical), sluglike_name(view.uid, view.title)


def encode(raw_body: Any, folder_uid: str | None = None, kind: str = DASHBOARD) -> tuple[str, str]:
    """Return ``(canonical_text, filename)`` for a raw Grafana body."""

    if kind == DASHBOARD:
        return encode_dashboard(raw_body, folder_uid)
    if kind == LIBRARY:
        return encode_library(raw_body, folder_uid)
    if kind == FOLDER:
        folder = dict(raw_body) if isinstance(raw_body, dict) else raw_body
        if isinstance(folder, dict) and folder_uid is not None:
            folder["folderUid"] = folder_uid
        return encode_folder(folder)
    raise ValueError(f"Unsupported kind: {kind}")


def decode(content: str | bytes | dict[str, Any], kind: str = DASHBOARD) -> Decoded:
    """Split a canonical body into its identity, folder and presentation body."""

    if isinstance(content, (str, bytes)):
        try:
            body = json.loads(content)
        except ValueError as exc:
            raise MalformedEntity(f"invalid JSON: {exc}") from exc
    else:
        body = content
    key = title_key(kind)
    view = EntityView.from_body(body, key)
    presentation = dict(body)
    presentation.pop(settings.FOLDER_UID_KEY, None)
    if kind == FOLDER and not view.folder_uid:
        legacy_parent = presentation.pop("folderUid", "")
        view.folder_uid = legacy_parent if isinstance(legacy_parent, str) else ""
    return Decoded(uid=view.uid, title=view.title, folder_uid=view.folder_uid, body=presentation)
