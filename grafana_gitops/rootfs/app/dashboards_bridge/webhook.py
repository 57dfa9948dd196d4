from __future__ import annotations

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from .baseline import BaselineError
from .context import SyncContext
from .git_ops import CommitChanges, GitError
from .grafana_client import GrafanaError
from .pusher import ChangeSet, PushResult, push_changes

logger = logging.getLogger(__name__)

PUSH_EVENT = "Push Hook"


class WebhookError(Exception):
    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


def _commits_from_payload(payload: dict[str, Any]) -> list[CommitChanges]:
    commits: list[CommitChanges] = []
    for raw in payload.get("commits") or []:
        if not isinstance(raw, dict):
            continue
        author = raw.get("author") if isinstance(raw.get("author"), dict) else {}
        commits.append(
            CommitChanges(
                sha=str(raw.get("id") or ""),
                author_email=str(author.get("email") or ""),
                added=[str(path) for path in raw.get("added") or []],
                modified=[str(path) for path in raw.get("modified") or []],
                removed=[str(path) for path in raw.get("removed") or []],
            )
        )
    return commits


class WebhookHandler:
    """Turns GitLab push events into push runs against Grafana."""

    def __init__(self, ctx: SyncContext, delete_removed: bool = False) -> None:
        if ctx.repo is None or ctx.options.git is None:
            raise WebhookError("the webhook pusher needs a git section in the configuration", 500)
        self.ctx = ctx
        self.repo = ctx.repo
        self.delete_removed = delete_removed
        pusher_options = ctx.options.pusher
        self.secret = pusher_options.secret if pusher_options else ""
        self.ref = f"refs/heads/{ctx.options.git.branch}"

    def check_token(self, token: str | None) -> None:
        if not self.secret:
            return
        if token is None or not hmac.compare_digest(token, self.secret):
            raise WebhookError("Invalid webhook token", 401)

    def handle_push(self, payload: dict[str, Any]) -> PushResult | None:
        ref = payload.get("ref")
        if ref != self.ref:
            logger.info("Ignoring push to %s, only %s is synced", ref, self.ref)
            return None
        changes = ChangeSet.from_commits(
            _commits_from_payload(payload), self.ctx.options.git.commits_author.email
        )
        if not changes:
            logger.info("Push event has no changes to apply")
            return None

        before = payload.get("before")
        if not isinstance(before, str) or not before.strip("0"):
            # new branch, or a sender that leaves it out
            before = None

        with self.ctx.lock:
            contents: dict[str, str] = {}
            if before is None:
                # removed files are gone once the clone is synced
                self._read_into(contents, changes.removed, "HEAD")
            self.repo.sync()
            if before is not None:
                self._read_into(contents, changes.removed, before)
            self._read_into(contents, changes.upserted, "HEAD")
            return push_changes(self.ctx, changes, contents, self.delete_removed)

    def _read_into(self, contents: dict[str, str], paths: list[str], revision: str) -> None:
        for path in paths:
            content = self.repo.read_file_at(path, revision)
            if content is not None:
                contents[path] = content


def create_app(handler: WebhookHandler) -> FastAPI:
    path = handler.ctx.options.pusher.path if handler.ctx.options.pusher else "/gitlab-webhook"

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await asyncio.to_thread(handler.repo.sync)
        yield

    app = FastAPI(lifespan=lifespan)

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.post(path)
    async def gitlab_webhook(
        payload: dict[str, Any] = Body(...),
        x_gitlab_token: str | None = Header(default=None),
        x_gitlab_event: str | None = Header(default=None),
    ) -> JSONResponse:
        try:
            handler.check_token(x_gitlab_token)
        except WebhookError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        if x_gitlab_event != PUSH_EVENT:
            logger.debug("Ignoring GitLab event %r", x_gitlab_event)
            return JSONResponse({"status": "ignored"})
        try:
            result = await asyncio.to_thread(handler.handle_push, payload)
        except (GrafanaError, GitError, BaselineError) as exc:
            logger.error("Failed to handle push event: %s", exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        if result is None:
            return JSONResponse({"status": "ignored"})
        return JSONResponse(
            {
                "status": "ok",
                "pushed": result.pushed,
                "deleted": result.deleted,
                "failed": result.failed,
                "skipped": result.skipped,
            }
        )

    return app
