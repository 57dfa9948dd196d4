import copy
import importlib.machinery
import importlib.util
import subprocess
import sys
import types
import uuid
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
APP_PATH = REPO_ROOT / "grafana_gitops/rootfs/app/main.py"

BRIDGE_MODULES = (
    "baseline",
    "codec",
    "config_store",
    "context",
    "folders",
    "fs_utils",
    "git_ops",
    "grafana_client",
    "poller",
    "puller",
    "pusher",
    "settings",
    "webhook",
)

GIT_IDENTITY = ["-c", "user.name=Test User", "-c", "user.email=test@example.com"]


def load_main():
    for module_name in list(sys.modules):
        if module_name.startswith("dashboards_bridge"):
            sys.modules.pop(module_name, None)

    module_name = f"grafana_gitops_main_{uuid.uuid4().hex}"
    loader = importlib.machinery.SourceFileLoader(module_name, str(APP_PATH))
    spec = importlib.util.spec_from_loader(loader.name, loader)
    module = importlib.util.module_from_spec(spec)
    loader.exec_module(module)
    return module


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=cwd,
        text=True,
        capture_output=True,
        check=True,
    )
    return result.stdout


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q", "-b", "master")
    return path


def make_origin(tmp_path: Path) -> tuple[Path, Path]:
    """A bare origin with one commit on master, plus a developer clone of it."""

    origin = tmp_path / "origin.git"
    origin.mkdir()
    git(origin, "init", "-q", "--bare", "-b", "master")
    work = init_repo(tmp_path / "work")
    (work / "README.md").write_text("dashboards\n", encoding="utf-8")
    git(work, "add", "README.md")
    git(work, "commit", "-q", "-m", "init")
    git(work, "remote", "add", "origin", str(origin))
    git(work, "push", "-q", "origin", "HEAD:master")
    return origin, work


class FakeGrafana:
    """In-memory stand-in for GrafanaClient."""

    def __init__(self) -> None:
        self.dashboards: dict[str, dict] = {}
        self.folders: dict[str, dict] = {}
        self.libraries: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail_search = False
        self._next_id = 1

    def _errors(self):
        return sys.modules["dashboards_bridge.grafana_client"]

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_folder(self, uid: str, title: str, parent_uid: str = "") -> None:
        self.folders[uid] = {"id": self._id(), "uid": uid, "title": title, "parentUid": parent_uid}

    def add_dashboard(self, uid: str, title: str, folder_uid: str = "", version: int = 1, **extra) -> None:
        body = {"id": self._id(), "uid": uid, "title": title, "version": version, "panels": [], **extra}
        self.dashboards[uid] = {
            "dashboard": body,
            "meta": {"folderUid": folder_uid, "version": version, "created": "2024-01-01T00:00:00Z"},
        }

    def add_library(self, uid: str, name: str, folder_uid: str = "", version: int = 1, model=None) -> None:
        self.libraries[uid] = {
            "id": self._id(),
            "uid": uid,
            "name": name,
            "kind": 1,
            "folderUid": folder_uid,
            "version": version,
            "model": model or {"type": "graph", "title": name},
            "meta": {"created": "2024-01-01T00:00:00Z", "connectedDashboards": 0},
        }

    def search(self) -> list[dict]:
        if self.fail_search:
            raise self._errors().GrafanaError("Grafana API unavailable: connection refused")
        results = []
        for folder in self.folders.values():
            results.append(
                {"uid": folder["uid"], "title": folder["title"], "type": "dash-folder", "folderUid": folder["parentUid"]}
            )
        for data in self.dashboards.values():
            body = data["dashboard"]
            results.append(
                {
                    "uid": body.get("uid") or data["meta"].get("uid"),
                    "title": body.get("title", ""),
                    "type": "dash-db",
                    "folderUid": data["meta"]["folderUid"],
                    "tags": [],
                }
            )
        return results

    def get_dashboard(self, uid: str) -> dict:
        if uid not in self.dashboards:
            raise self._errors().NotFound(f"/api/dashboards/uid/{uid} not found (404)", status_code=404)
        return copy.deepcopy(self.dashboards[uid])

    def create_or_update_dashboard(self, body, folder_uid="", folder_id=None, version=None) -> int:
        uid = body["uid"]
        self.calls.append(("dashboard", uid, folder_uid, folder_id, version))
        existing = self.dashboards.get(uid)
        current = existing["meta"]["version"] if existing else 0
        if version is not None and existing and current != version:
            raise self._errors().VersionConflict("version-mismatch", status_code=412)
        new_version = current + 1
        stored = copy.deepcopy(body)
        stored["id"] = existing["dashboard"]["id"] if existing else self._id()
        stored["version"] = new_version
        self.dashboards[uid] = {"dashboard": stored, "meta": {"folderUid": folder_uid, "version": new_version}}
        return new_version

    def delete_dashboard(self, uid: str) -> None:
        self.calls.append(("delete_dashboard", uid))
        if self.dashboards.pop(uid, None) is None:
            raise self._errors().NotFound(f"/api/dashboards/uid/{uid} not found (404)", status_code=404)

    def list_library_elements(self) -> list[dict]:
        return [copy.deepcopy(element) for element in self.libraries.values()]

    def create_or_update_library(self, element, folder_uid="", folder_id=0, version=0) -> int:
        uid = element["uid"]
        self.calls.append(("library", uid, folder_uid, folder_id, version))
        existing = self.libraries.get(uid)
        if existing and existing["version"] != version:
            raise self._errors().VersionConflict("version-mismatch", status_code=412)
        new_version = existing["version"] + 1 if existing else 1
        stored = copy.deepcopy(element)
        stored.update({"folderUid": folder_uid, "version": new_version})
        self.libraries[uid] = stored
        return new_version

    def delete_library(self, uid: str) -> None:
        self.calls.append(("delete_library", uid))
        self.libraries.pop(uid, None)

    def list_folders(self) -> list[dict]:
        return [{"id": folder["id"], "uid": folder["uid"], "title": folder["title"]} for folder in self.folders.values()]

    def create_or_update_folder(self, uid: str, title: str, parent_uid: str = "") -> None:
        self.calls.append(("folder", uid, title, parent_uid))
        if uid in self.folders:
            self.folders[uid]["title"] = title
        else:
            self.add_folder(uid, title, parent_uid)

    def delete_folder(self, uid: str) -> None:
        raise AssertionError(f"folder {uid} must never be deleted")

    def close(self) -> None:
        pass


@pytest.fixture
def main_module():
    return load_main()


@pytest.fixture
def bridge(main_module):
    return types.SimpleNamespace(
        **{name: sys.modules[f"dashboards_bridge.{name}"] for name in BRIDGE_MODULES}
    )


@pytest.fixture
def grafana():
    return FakeGrafana()


@pytest.fixture
def make_context(tmp_path: Path, bridge, grafana):
    """Build a SyncContext over the fake Grafana.

    With ``git=True`` the sync path is a fresh local repository without a
    remote; pass ``clone_path``/``url`` to point it elsewhere.
    """

    def build(git=True, grafana_options=None, git_options=None, pusher=None):
        data = {"grafana": {"base_url": "http://grafana.test", **(grafana_options or {})}}
        if git:
            git_section = {"clone_path": str(tmp_path / "repo"), **(git_options or {})}
            if not git_section.get("url"):
                init_repo(Path(git_section["clone_path"]))
            git_section.setdefault(
                "commits_author", {"name": "Grafana GitOps", "email": "bridge@example.com"}
            )
            data["git"] = git_section
        else:
            data["simple_sync"] = {"sync_path": str(tmp_path / "files")}
        if pusher is not None:
            data["pusher"] = pusher
        options = bridge.config_store.build_options(data)
        repo = bridge.git_ops.GitRepository.from_options(options.git) if options.git else None
        return bridge.context.SyncContext(options=options, client=grafana, repo=repo)

    return build
