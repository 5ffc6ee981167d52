"""Reviewer-side HTTP API: repo registration, sessions and comment lifecycle."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, Field, ValidationError, field_validator
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from pr_review_relay.db import AppContext
from pr_review_relay.errors import CommentNotFoundError, RelayError, StorageError
from pr_review_relay.models import CommentPatch, CommentSide, CommentStatus
from pr_review_relay.repos import open_session, register_repo

logger = logging.getLogger("pr_review_relay")

# Module-level AppContext, set by relay_lifespan via set_app_context().
_app_ctx: AppContext | None = None

Handler = Callable[[Request, AppContext], Awaitable[Response]]


def set_app_context(ctx: AppContext | None) -> None:
    """Store the AppContext for HTTP route handlers to access."""
    global _app_ctx
    _app_ctx = ctx


class RegisterRepoRequest(BaseModel):
    path: str = Field(min_length=1)
    name: str | None = None
    remote_url: str | None = None
    base_branch: str = "main"


class OpenSessionRequest(BaseModel):
    repo_id: str
    branch: str = Field(min_length=1)
    base_branch: str | None = None


class CreateCommentRequest(BaseModel):
    session_id: str
    file_path: str = Field(min_length=1)
    content: str
    line_start: int | None = Field(default=None, ge=1)
    line_end: int | None = Field(default=None, ge=1)
    side: CommentSide | None = None


class CommentIdsRequest(BaseModel):
    ids: list[str]

    @field_validator("ids")
    @classmethod
    def _not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("ids must not be empty")
        return value


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _json_body(request: Request) -> dict:
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("JSON body must be an object")
    return payload


def _handle(route: str, handler: Handler) -> Callable[[Request], Awaitable[Response]]:
    """Wrap a handler with context lookup and the error-to-status mapping."""

    async def endpoint(request: Request) -> Response:
        ctx = _app_ctx
        if ctx is None:
            return _error("Relay is not running", 503)
        try:
            return await handler(request, ctx)
        except CommentNotFoundError as exc:
            return _error(str(exc), 404)
        except ValidationError as exc:
            return _error(str(exc), 400)
        except ValueError as exc:
            logger.info("%s -> rejected: %s", route, exc)
            return _error(str(exc), 400)
        except StorageError as exc:
            logger.exception("%s -> database error: %s", route, exc)
            return _error(f"{route} failed due to database error: {exc}", 500)
        except RelayError as exc:
            return _error(str(exc), 400)

    return endpoint


async def _register_repo(request: Request, ctx: AppContext) -> Response:
    body = RegisterRepoRequest.model_validate(await _json_body(request))
    repo, repo_path = await register_repo(
        ctx.storage,
        body.path,
        name=body.name,
        remote_url=body.remote_url,
        base_branch=body.base_branch,
        signals=ctx.signals,
    )
    return JSONResponse(
        {"repo": repo.model_dump(mode="json"), "path": repo_path.model_dump(mode="json")}
    )


async def _open_session(request: Request, ctx: AppContext) -> Response:
    body = OpenSessionRequest.model_validate(await _json_body(request))
    repo = await ctx.storage.query_one("SELECT id FROM repos WHERE id = ?", (body.repo_id,))
    if repo is None:
        return _error(f"Repo not found: {body.repo_id}", 404)
    session = await open_session(
        ctx.storage, body.repo_id, body.branch, body.base_branch, signals=ctx.signals
    )
    return JSONResponse(session.model_dump(mode="json"))


async def _list_comments(request: Request, ctx: AppContext) -> Response:
    session_id = request.path_params["session_id"]
    status = request.query_params.get("status")
    if status:
        comments = await ctx.comments.by_session_and_status(session_id, CommentStatus(status))
    else:
        comments = await ctx.comments.by_session(session_id)
    return JSONResponse({"comments": [c.model_dump(mode="json") for c in comments]})


async def _session_counts(request: Request, ctx: AppContext) -> Response:
    return JSONResponse(await ctx.comments.counts(request.path_params["session_id"]))


async def _create_comment(request: Request, ctx: AppContext) -> Response:
    body = CreateCommentRequest.model_validate(await _json_body(request))
    session = await ctx.storage.query_one(
        "SELECT id FROM review_sessions WHERE id = ?", (body.session_id,)
    )
    if session is None:
        return _error(f"Session not found: {body.session_id}", 404)
    comment = await ctx.comments.create(
        body.session_id,
        body.file_path,
        body.content,
        line_start=body.line_start,
        line_end=body.line_end,
        side=body.side,
    )
    return JSONResponse(comment.model_dump(mode="json"), status_code=201)


async def _get_comment(request: Request, ctx: AppContext) -> Response:
    comment = await ctx.comments.get(request.path_params["comment_id"])
    return JSONResponse(comment.model_dump(mode="json"))


async def _patch_comment(request: Request, ctx: AppContext) -> Response:
    patch = CommentPatch.model_validate(await _json_body(request))
    comment = await ctx.comments.update(request.path_params["comment_id"], patch)
    return JSONResponse(comment.model_dump(mode="json"))


async def _delete_comment(request: Request, ctx: AppContext) -> Response:
    comment_id = request.path_params["comment_id"]
    await ctx.comments.get(comment_id)
    if not await ctx.comments.delete(comment_id):
        return _error("Only queued comments can be deleted", 409)
    return JSONResponse({"deleted": True})


async def _resolve_comment(request: Request, ctx: AppContext) -> Response:
    comment = await ctx.comments.mark_resolved(
        request.path_params["comment_id"], resolved_by="reviewer"
    )
    return JSONResponse(comment.model_dump(mode="json"))


def _bulk(action: str) -> Handler:
    async def handler(request: Request, ctx: AppContext) -> Response:
        body = CommentIdsRequest.model_validate(await _json_body(request))
        operation = getattr(ctx.comments, action)
        changed = await operation(body.ids)
        return JSONResponse({"changed": changed})

    return handler


def register_api_routes(mcp: object) -> None:
    """Register the reviewer HTTP API on the FastMCP server instance.

    The bulk routes under /api/comments/ are registered before
    /api/comments/{comment_id} so they are not captured as ids.
    """
    routes: list[tuple[str, list[str], str, Handler]] = [
        ("/api/repos", ["POST"], "register_repo", _register_repo),
        ("/api/sessions", ["POST"], "open_session", _open_session),
        ("/api/sessions/{session_id}/comments", ["GET"], "list_comments", _list_comments),
        ("/api/sessions/{session_id}/counts", ["GET"], "session_counts", _session_counts),
        ("/api/comments", ["POST"], "create_comment", _create_comment),
        ("/api/comments/stage", ["POST"], "stage_comments", _bulk("stage")),
        ("/api/comments/send", ["POST"], "send_comments", _bulk("mark_sent")),
        ("/api/comments/cancel", ["POST"], "cancel_comments", _bulk("cancel")),
        ("/api/comments/{comment_id}/resolve", ["POST"], "resolve_comment", _resolve_comment),
        ("/api/comments/{comment_id}", ["GET"], "get_comment", _get_comment),
        ("/api/comments/{comment_id}", ["PATCH"], "update_comment", _patch_comment),
        ("/api/comments/{comment_id}", ["DELETE"], "delete_comment", _delete_comment),
    ]
    for path, methods, name, handler in routes:
        mcp.custom_route(path, methods=methods, name=name)(_handle(name, handler))  # type: ignore[union-attr]
