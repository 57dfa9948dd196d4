from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .config_store import GitOptions

logger = logging.getLogger(__name__)


class GitError(Exception):
    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.returncode = returncode

    def __str__(self) -> str:
        return self.message


@dataclass
class CommitChanges:
    sha: str
    author_email: str
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


def _parse_name_status(lines: Iterable[str], commit: CommitChanges) -> None:
    for line in lines:
        if not line:
            continue
        parts = line.split("\t")
        status = parts[0]
        if status.startswith("R") and len(parts) >= 3:
            commit.removed.append(parts[1])
            commit.added.append(parts[2])
        elif status.startswith("C") and len(parts) >= 3:
            commit.added.append(parts[2])
        elif status.startswith("A") and len(parts) >= 2:
            commit.added.append(parts[1])
        elif status.startswith("D") and len(parts) >= 2:
            commit.removed.append(parts[1])
        elif len(parts) >= 2:
            commit.modified.append(parts[1])


class GitRepository:
    """The git working copy the bridge writes to, driven through the git CLI."""

    def __init__(self, path: Path, url: str = "", branch: str = "master", private_key: str = "") -> None:
        self.path = Path(path)
        self.url = url
        self.branch = branch
        self.private_key = private_key

    @classmethod
    def from_options(cls, options: GitOptions) -> "GitRepository":
        return cls(options.clone_path, options.url, options.branch, options.private_key)

    def _env(self) -> dict[str, str] | None:
        if not self.private_key:
            return None
        env = dict(os.environ)
        env["GIT_SSH_COMMAND"] = (
            f"ssh -i {self.private_key} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
        )
        return env

    def run_git(self, args: Iterable[str], check: bool = True, cwd: Path | None = None) -> subprocess.CompletedProcess:
        args = list(args)
        logger.debug("git %s", " ".join(args))
        result = subprocess.run(
            ["git", *args],
            cwd=cwd or self.path,
            env=self._env(),
            text=True,
            capture_output=True,
            check=False,
        )
        if check and result.returncode != 0:
            raise GitError(
                f"git {args[0]} failed: {result.stderr.strip() or result.stdout.strip()}",
                result.returncode,
            )
        return result

    def run_git_bytes(self, args: Iterable[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args],
            cwd=self.path,
            env=self._env(),
            text=False,
            capture_output=True,
            check=False,
        )

    def is_cloned(self) -> bool:
        return (self.path / ".git").exists()

    def sync(self) -> None:
        """Clone the repository if needed, otherwise pull from the remote."""

        if not self.is_cloned():
            if not self.url:
                raise GitError(f"{self.path} is not a git repository and no git.url is configured")
            logger.info("Cloning %s into %s", self.url, self.path)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.run_git(
                ["clone", "--branch", self.branch, self.url, str(self.path)],
                cwd=self.path.parent,
            )
            return
        if not self.has_remote():
            logger.debug("No origin remote configured for %s, skipping pull", self.path)
            return
        logger.info("Pulling %s from origin", self.branch)
        self.run_git(["pull", "--rebase", "--autostash", "origin", self.branch])

    def has_remote(self) -> bool:
        result = self.run_git(["remote"], check=False)
        return "origin" in {line.strip() for line in result.stdout.splitlines()}

    def latest_commit(self) -> str | None:
        result = self.run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def commits_between(self, previous: str | None, latest: str) -> list[CommitChanges]:
        """Commits reachable from ``latest`` but not ``previous``, oldest first."""

        revision = f"{previous}..{latest}" if previous else latest
        result = self.run_git(
            [
                "--no-pager",
                "log",
                "--reverse",
                "--no-renames",
                "--name-status",
                "--format=%x00%H%x09%ae",
                revision,
            ]
        )
        commits: list[CommitChanges] = []
        for block in result.stdout.split("\0"):
            if not block.strip():
                continue
            lines = block.splitlines()
            sha, _, email = lines[0].partition("\t")
            commit = CommitChanges(sha=sha.strip(), author_email=email.strip())
            _parse_name_status(lines[1:], commit)
            commits.append(commit)
        return commits

    def changed_paths(self, previous: str, latest: str) -> tuple[list[str], list[str], list[str]]:
        """Return ``(added, modified, removed)`` between two revisions."""

        result = self.run_git(["diff", "--no-renames", "--name-status", previous, latest])
        changes = CommitChanges(sha=latest, author_email="")
        _parse_name_status(result.stdout.splitlines(), changes)
        return changes.added, changes.modified, changes.removed

    def read_file_at(self, path: str, revision: str) -> str | None:
        result = self.run_git_bytes(["show", f"{revision}:{path}"])
        if result.returncode != 0:
            return None
        return (result.stdout or b"").decode("utf-8")

    def stage(self, path: str) -> None:
        self.run_git(["add", "--", path])

    def remove(self, path: str) -> None:
        tracked = self.run_git(["ls-files", "--error-unmatch", "--", path], check=False)
        if tracked.returncode == 0:
            self.run_git(["rm", "--quiet", "--cached", "--ignore-unmatch", "--", path])
        (self.path / path).unlink(missing_ok=True)

    def has_staged_changes(self) -> bool:
        if self.latest_commit() is None:
            result = self.run_git(["ls-files", "--cached"], check=False)
            return bool(result.stdout.strip())
        result = self.run_git(["diff", "--cached", "--quiet"], check=False)
        return result.returncode != 0

    def working_tree_clean(self) -> bool:
        result = self.run_git(["status", "--porcelain"], check=False)
        return result.stdout.strip() == ""

    def commit(self, message: str, author_name: str, author_email: str) -> str | None:
        author = f"{author_name} <{author_email}>"
        self.run_git(
            [
                "-c",
                f"user.name={author_name}",
                "-c",
                f"user.email={author_email}",
                "commit",
                "--quiet",
                f"--author={author}",
                "-m",
                message,
            ]
        )
        return self.latest_commit()

    def push(self) -> None:
        if not self.has_remote():
            logger.info("No origin remote configured, nothing to push")
            return
        self.run_git(["push", "origin", f"HEAD:{self.branch}"])
