"""
Membership resolution and the authorization guard.

Every resource operation resolves the owning workspace from the resource's
current record, then calls authorize() before returning or mutating anything.
Call sites never pass a workspace id remembered from an earlier request.
"""

from dataclasses import dataclass
from typing import Literal, Optional

from database import DocumentStore, MEMBERS, PROJECTS, TASKS, WORKSPACES
from errors import NotFound, Unauthorized
from logging_config import get_logger

logger = get_logger(__name__)

ResourceKind = Literal["workspace", "project", "task"]


@dataclass(frozen=True)
class RequestContext:
    """Per-request collaborators, passed explicitly into every core call."""

    store: DocumentStore
    user_id: str


async def find_membership(store: DocumentStore, workspace_id: str, user_id: str) -> Optional[dict]:
    return await store.find_one(MEMBERS, {"workspace_id": workspace_id, "user_id": user_id})


async def authorize(ctx: RequestContext, workspace_id: str) -> dict:
    member = await find_membership(ctx.store, workspace_id, ctx.user_id)
    if member is None:
        logger.info("access_denied", reason="no_membership", workspace_id=workspace_id, user_id=ctx.user_id)
        raise Unauthorized()
    return member


async def _lookup(ctx: RequestContext, collection: str, resource_id: str) -> dict:
    try:
        return await ctx.store.get_document(collection, resource_id)
    except NotFound:
        # indistinguishable from a missing membership for the caller
        logger.info("access_denied", reason="not_found", collection=collection, resource_id=resource_id, user_id=ctx.user_id)
        raise Unauthorized()


async def resolve_workspace(ctx: RequestContext, workspace_id: str) -> dict:
    return await _lookup(ctx, WORKSPACES, workspace_id)


async def resolve_project(ctx: RequestContext, project_id: str) -> dict:
    return await _lookup(ctx, PROJECTS, project_id)


async def resolve_task(ctx: RequestContext, task_id: str) -> tuple[dict, dict]:
    """Return (task, project). The task's own workspace_id is only cross-checked."""
    task = await _lookup(ctx, TASKS, task_id)
    project = await _lookup(ctx, PROJECTS, task["project_id"])
    if task.get("workspace_id") != project["workspace_id"]:
        logger.warning(
            "task_workspace_mismatch",
            task_id=task_id,
            task_workspace_id=task.get("workspace_id"),
            project_workspace_id=project["workspace_id"],
        )
    return task, project


async def authorize_workspace(ctx: RequestContext, workspace_id: str) -> tuple[dict, dict]:
    workspace = await resolve_workspace(ctx, workspace_id)
    member = await authorize(ctx, workspace["id"])
    return workspace, member


async def authorize_project(ctx: RequestContext, project_id: str) -> tuple[dict, dict]:
    project = await resolve_project(ctx, project_id)
    member = await authorize(ctx, project["workspace_id"])
    return project, member


async def authorize_task(ctx: RequestContext, task_id: str) -> tuple[dict, dict, dict]:
    task, project = await resolve_task(ctx, task_id)
    member = await authorize(ctx, project["workspace_id"])
    return task, project, member


async def authorize_resource(ctx: RequestContext, kind: ResourceKind, resource_id: str) -> dict:
    """Resolve any resource kind to its owning workspace and return the caller's membership."""
    if kind == "workspace":
        _, member = await authorize_workspace(ctx, resource_id)
    elif kind == "project":
        _, member = await authorize_project(ctx, resource_id)
    elif kind == "task":
        _, _, member = await authorize_task(ctx, resource_id)
    else:
        raise ValueError(f"unknown resource kind: {kind}")
    return member


def require_admin(member: dict) -> dict:
    if member.get("role") != "admin":
        logger.info("access_denied", reason="not_admin", workspace_id=member.get("workspace_id"), user_id=member.get("user_id"))
        raise Unauthorized()
    return member
