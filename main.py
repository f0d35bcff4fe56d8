import os
import re
import secrets
import string
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from fastapi import FastAPI, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field, field_validator

import authz
from analytics import compute_project_analytics
from database import (
    DESCENDING,
    DATABASE_NAME,
    MEMBERS,
    PROJECTS,
    TASKS,
    USERS,
    WORKSPACES,
    DocumentList,
    DocumentStore,
    create_client,
    ensure_indexes,
    to_object_id,
)
from errors import NotFound, Unauthorized, ValidationError, register_error_handlers
from logging_config import configure_logging, get_logger
from schemas import (
    AnalyticsReport,
    Member as MemberSchema,
    Project as ProjectSchema,
    Role,
    Task as TaskSchema,
    TaskStatus,
    User as UserSchema,
    Workspace as WorkspaceSchema,
    as_utc,
)

# Settings
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", 7))
INVITE_CODE_LENGTH = 6
POSITION_STEP = 1000

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    client = create_client()
    app.state.store = DocumentStore(client[DATABASE_NAME])
    await ensure_indexes(app.state.store)
    logger.info("startup", database=DATABASE_NAME)
    yield
    await client.close()


app = FastAPI(title="Project Camp Backend API", version="2.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


# Utilities
class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"

class CurrentUser(BaseModel):
    id: str
    email: EmailStr
    name: str

# Helper functions

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_token(user_id: str, token_type: str, expires_delta: timedelta) -> str:
    to_encode = {
        "sub": user_id,
        "type": token_type,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGORITHM)


def issue_tokens(user_id: str) -> Token:
    access = create_token(user_id, "access", timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    refresh = create_token(user_id, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))
    return Token(access_token=access, refresh_token=refresh)


def generate_invite_code(length: int = INVITE_CODE_LENGTH) -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


async def get_current_user(authorization: Optional[str] = Header(default=None), store: DocumentStore = Depends(get_store)) -> CurrentUser:
    if not authorization:
        raise Unauthorized("Not authenticated")
    if not authorization.lower().startswith("bearer "):
        raise Unauthorized("Invalid authorization header")
    token = authorization.split()[1]

    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise Unauthorized("Invalid token")
    if payload.get("type") != "access":
        raise Unauthorized("Invalid token type")
    try:
        user = await store.get_document(USERS, payload.get("sub"))
    except NotFound:
        raise Unauthorized("User not found")
    return CurrentUser(id=user["id"], email=user["email"], name=user.get("name", ""))


def get_context(user: CurrentUser = Depends(get_current_user), store: DocumentStore = Depends(get_store)) -> authz.RequestContext:
    return authz.RequestContext(store=store, user_id=user.id)


def changes(payload: BaseModel) -> dict:
    return {k: v for k, v in payload.model_dump().items() if v is not None}


# Auth Routes
class RegisterRequest(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=120)
    password: str = Field(..., min_length=8, max_length=72)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

@app.post("/api/v1/auth/register", response_model=Token)
async def register(payload: RegisterRequest, store: DocumentStore = Depends(get_store)):
    if await store.find_one(USERS, {"email": payload.email}):
        raise ValidationError("Email already registered")
    user = UserSchema(email=payload.email, name=payload.name, password_hash=hash_password(payload.password))
    created = await store.create_document(USERS, user)
    logger.info("user_registered", user_id=created["id"])
    return issue_tokens(created["id"])


@app.post("/api/v1/auth/login", response_model=Token)
async def login(payload: LoginRequest, store: DocumentStore = Depends(get_store)):
    user = await store.find_one(USERS, {"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Incorrect email or password")
    return issue_tokens(user["id"])


@app.post("/api/v1/auth/refresh-token", response_model=Token)
async def refresh_token(payload: RefreshRequest, store: DocumentStore = Depends(get_store)):
    try:
        decoded = jwt.decode(payload.refresh_token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise Unauthorized("Invalid token")
    if decoded.get("type") != "refresh":
        raise Unauthorized("Invalid token type")
    try:
        user = await store.get_document(USERS, decoded.get("sub"))
    except NotFound:
        raise Unauthorized("User not found")
    return issue_tokens(user["id"])


@app.get("/api/v1/auth/current-user", response_model=CurrentUser)
async def current_user(user: CurrentUser = Depends(get_current_user)):
    return user


# Healthcheck
@app.get("/api/v1/healthcheck/")
async def healthcheck(store: DocumentStore = Depends(get_store)):
    return {
        "status": "ok",
        "database": "connected" if await store.ping() else "unavailable",
        "time": datetime.now(timezone.utc).isoformat(),
    }


# Authorization
@app.get("/api/v1/authorize/{kind}/{resource_id}")
async def authorize_resource(kind: authz.ResourceKind, resource_id: str, ctx: authz.RequestContext = Depends(get_context)):
    return await authz.authorize_resource(ctx, kind, resource_id)


# Workspace Routes
class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    image_url: Optional[str] = None

class WorkspaceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    image_url: Optional[str] = None

class JoinRequest(BaseModel):
    invite_code: str = Field(..., min_length=1)

@app.post("/api/v1/workspaces/")
async def create_workspace(payload: WorkspaceCreate, ctx: authz.RequestContext = Depends(get_context)):
    workspace = WorkspaceSchema(name=payload.name, image_url=payload.image_url, invite_code=generate_invite_code(), user_id=ctx.user_id)
    created = await ctx.store.create_document(WORKSPACES, workspace)
    await ctx.store.create_document(MEMBERS, MemberSchema(workspace_id=created["id"], user_id=ctx.user_id, role="admin"))
    logger.info("workspace_created", workspace_id=created["id"], user_id=ctx.user_id)
    return created


@app.get("/api/v1/workspaces/", response_model=DocumentList)
async def list_workspaces(ctx: authz.RequestContext = Depends(get_context)):
    memberships = await ctx.store.list_documents(MEMBERS, {"user_id": ctx.user_id})
    if memberships.total == 0:
        return DocumentList(documents=[], total=0)
    ids = [m["workspace_id"] for m in memberships.documents]
    oids = [oid for oid in map(to_object_id, ids) if oid is not None]
    return await ctx.store.list_documents(WORKSPACES, {"_id": {"$in": oids}}, sort=[("created_at", DESCENDING)])


@app.get("/api/v1/workspaces/{workspace_id}")
async def get_workspace(workspace_id: str, ctx: authz.RequestContext = Depends(get_context)):
    workspace, _ = await authz.authorize_workspace(ctx, workspace_id)
    return workspace


@app.patch("/api/v1/workspaces/{workspace_id}")
async def update_workspace(workspace_id: str, payload: WorkspaceUpdate, ctx: authz.RequestContext = Depends(get_context)):
    _, member = await authz.authorize_workspace(ctx, workspace_id)
    authz.require_admin(member)
    return await ctx.store.update_document(WORKSPACES, workspace_id, changes(payload))


@app.delete("/api/v1/workspaces/{workspace_id}")
async def delete_workspace(workspace_id: str, ctx: authz.RequestContext = Depends(get_context)):
    _, member = await authz.authorize_workspace(ctx, workspace_id)
    authz.require_admin(member)
    # cascade delete projects, tasks, members
    projects = await ctx.store.list_documents(PROJECTS, {"workspace_id": workspace_id})
    project_ids = [p["id"] for p in projects.documents]
    if project_ids:
        await ctx.store.delete_documents(TASKS, {"project_id": {"$in": project_ids}})
    await ctx.store.delete_documents(PROJECTS, {"workspace_id": workspace_id})
    await ctx.store.delete_documents(MEMBERS, {"workspace_id": workspace_id})
    await ctx.store.delete_document(WORKSPACES, workspace_id)
    logger.info("workspace_deleted", workspace_id=workspace_id, user_id=ctx.user_id)
    return {"id": workspace_id}


@app.post("/api/v1/workspaces/{workspace_id}/reset-invite-code")
async def reset_invite_code(workspace_id: str, ctx: authz.RequestContext = Depends(get_context)):
    _, member = await authz.authorize_workspace(ctx, workspace_id)
    authz.require_admin(member)
    return await ctx.store.update_document(WORKSPACES, workspace_id, {"invite_code": generate_invite_code()})


@app.post("/api/v1/workspaces/{workspace_id}/join")
async def join_workspace(workspace_id: str, payload: JoinRequest, ctx: authz.RequestContext = Depends(get_context)):
    if await authz.find_membership(ctx.store, workspace_id, ctx.user_id):
        raise ValidationError("Already a member")
    try:
        workspace = await ctx.store.get_document(WORKSPACES, workspace_id)
    except NotFound:
        workspace = None
    # a missing workspace and a wrong code look the same
    if workspace is None or not secrets.compare_digest(workspace["invite_code"].encode(), payload.invite_code.encode()):
        raise ValidationError("Invalid invite code")
    await ctx.store.create_document(MEMBERS, MemberSchema(workspace_id=workspace_id, user_id=ctx.user_id, role="member"))
    logger.info("workspace_joined", workspace_id=workspace_id, user_id=ctx.user_id)
    return workspace


# Members management
class MemberUpdate(BaseModel):
    role: Role

async def authorize_member(ctx: authz.RequestContext, member_id: str) -> tuple[dict, dict]:
    """Return (target member, caller's member) for the target's workspace."""
    try:
        target = await ctx.store.get_document(MEMBERS, member_id)
    except NotFound:
        raise Unauthorized()
    caller = await authz.authorize(ctx, target["workspace_id"])
    return target, caller


@app.get("/api/v1/members/", response_model=DocumentList)
async def list_members(workspace_id: str, ctx: authz.RequestContext = Depends(get_context)):
    await authz.authorize_workspace(ctx, workspace_id)
    members = await ctx.store.list_documents(MEMBERS, {"workspace_id": workspace_id})
    oids = [oid for oid in (to_object_id(m["user_id"]) for m in members.documents) if oid is not None]
    users = await ctx.store.list_documents(USERS, {"_id": {"$in": oids}})
    by_id = {u["id"]: u for u in users.documents}
    for m in members.documents:
        user = by_id.get(m["user_id"], {})
        m["name"] = user.get("name")
        m["email"] = user.get("email")
    return members


@app.patch("/api/v1/members/{member_id}")
async def update_member_role(member_id: str, payload: MemberUpdate, ctx: authz.RequestContext = Depends(get_context)):
    target, caller = await authorize_member(ctx, member_id)
    authz.require_admin(caller)
    total = await ctx.store.count_documents(MEMBERS, {"workspace_id": target["workspace_id"]})
    if total == 1 and payload.role != "admin":
        raise ValidationError("Cannot downgrade the only member")
    return await ctx.store.update_document(MEMBERS, member_id, {"role": payload.role})


@app.delete("/api/v1/members/{member_id}")
async def remove_member(member_id: str, ctx: authz.RequestContext = Depends(get_context)):
    target, caller = await authorize_member(ctx, member_id)
    # admins remove anyone, members can only leave
    if caller["id"] != target["id"]:
        authz.require_admin(caller)
    total = await ctx.store.count_documents(MEMBERS, {"workspace_id": target["workspace_id"]})
    if total == 1:
        raise ValidationError("Cannot remove the only member")
    await ctx.store.delete_document(MEMBERS, member_id)
    logger.info("member_removed", member_id=member_id, workspace_id=target["workspace_id"], user_id=ctx.user_id)
    return {"id": member_id}


# Project Routes
class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    image_url: Optional[str] = None
    workspace_id: str

class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    image_url: Optional[str] = None

async def project_access(project_id: str, ctx: authz.RequestContext = Depends(get_context)) -> dict:
    project, _ = await authz.authorize_project(ctx, project_id)
    return project


@app.post("/api/v1/projects/")
async def create_project(payload: ProjectCreate, ctx: authz.RequestContext = Depends(get_context)):
    await authz.authorize_workspace(ctx, payload.workspace_id)
    project = ProjectSchema(name=payload.name, image_url=payload.image_url, workspace_id=payload.workspace_id)
    return await ctx.store.create_document(PROJECTS, project)


@app.get("/api/v1/projects/", response_model=DocumentList)
async def list_projects(workspace_id: str, ctx: authz.RequestContext = Depends(get_context)):
    await authz.authorize_workspace(ctx, workspace_id)
    return await ctx.store.list_documents(PROJECTS, {"workspace_id": workspace_id}, sort=[("created_at", DESCENDING)])


@app.get("/api/v1/projects/{project_id}")
async def get_project(project: dict = Depends(project_access)):
    return project


@app.patch("/api/v1/projects/{project_id}")
async def update_project(payload: ProjectUpdate, project: dict = Depends(project_access), store: DocumentStore = Depends(get_store)):
    return await store.update_document(PROJECTS, project["id"], changes(payload))


@app.delete("/api/v1/projects/{project_id}")
async def delete_project(project: dict = Depends(project_access), store: DocumentStore = Depends(get_store)):
    await store.delete_documents(TASKS, {"project_id": project["id"]})
    await store.delete_document(PROJECTS, project["id"])
    logger.info("project_deleted", project_id=project["id"], workspace_id=project["workspace_id"])
    return {"id": project["id"]}


@app.get("/api/v1/projects/{project_id}/analytics", response_model=AnalyticsReport)
async def get_project_analytics(project_id: str, ctx: authz.RequestContext = Depends(get_context)):
    return await compute_project_analytics(ctx, project_id)


# Task Routes
class TaskCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    status: TaskStatus = "TODO"
    due_date: Optional[datetime] = None
    workspace_id: str
    project_id: str
    assignee_id: Optional[str] = None

class TaskUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    status: Optional[TaskStatus] = None
    due_date: Optional[datetime] = None
    project_id: Optional[str] = None
    assignee_id: Optional[str] = None
    position: Optional[int] = Field(None, ge=POSITION_STEP)

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v):
        return as_utc(v)

async def check_assignee(store: DocumentStore, workspace_id: str, assignee_id: Optional[str]) -> None:
    if assignee_id is None:
        return
    try:
        assignee = await store.get_document(MEMBERS, assignee_id)
    except NotFound:
        raise ValidationError("Assignee is not a member of this workspace")
    if assignee["workspace_id"] != workspace_id:
        raise ValidationError("Assignee is not a member of this workspace")


async def next_position(store: DocumentStore, project_id: str, status: str) -> int:
    highest = await store.list_documents(TASKS, {"project_id": project_id, "status": status}, sort=[("position", DESCENDING)], limit=1)
    if not highest.documents:
        return POSITION_STEP
    return highest.documents[0].get("position", 0) + POSITION_STEP


@app.post("/api/v1/tasks/")
async def create_task(payload: TaskCreate, ctx: authz.RequestContext = Depends(get_context)):
    await authz.authorize_workspace(ctx, payload.workspace_id)
    project = await authz.resolve_project(ctx, payload.project_id)
    if project["workspace_id"] != payload.workspace_id:
        raise ValidationError("Project does not belong to this workspace")
    await check_assignee(ctx.store, project["workspace_id"], payload.assignee_id)
    task = TaskSchema(
        name=payload.name,
        description=payload.description,
        status=payload.status,
        due_date=payload.due_date,
        project_id=project["id"],
        workspace_id=project["workspace_id"],
        assignee_id=payload.assignee_id,
        position=await next_position(ctx.store, project["id"], payload.status),
    )
    return await ctx.store.create_document(TASKS, task)


@app.get("/api/v1/tasks/", response_model=DocumentList)
async def list_tasks(
    workspace_id: str,
    project_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
    status: Optional[TaskStatus] = None,
    due_date: Optional[date] = None,
    search: Optional[str] = None,
    ctx: authz.RequestContext = Depends(get_context),
):
    await authz.authorize_workspace(ctx, workspace_id)
    # scope through the workspace's projects rather than the copy on each task
    projects = await ctx.store.list_documents(PROJECTS, {"workspace_id": workspace_id})
    project_ids = [p["id"] for p in projects.documents]
    if project_id is not None:
        project_ids = [p for p in project_ids if p == project_id]

    q: dict = {"project_id": {"$in": project_ids}}
    if assignee_id:
        q["assignee_id"] = assignee_id
    if status:
        q["status"] = status
    if due_date:
        day = datetime.combine(due_date, time.min, tzinfo=timezone.utc)
        q["due_date"] = {"$gte": day, "$lt": day + timedelta(days=1)}
    if search:
        q["name"] = {"$regex": re.escape(search), "$options": "i"}
    return await ctx.store.list_documents(TASKS, q, sort=[("created_at", DESCENDING)])


@app.get("/api/v1/tasks/{task_id}")
async def get_task(task_id: str, ctx: authz.RequestContext = Depends(get_context)):
    task, project, _ = await authz.authorize_task(ctx, task_id)
    task["project"] = project
    return task


@app.patch("/api/v1/tasks/{task_id}")
async def update_task(task_id: str, payload: TaskUpdate, ctx: authz.RequestContext = Depends(get_context)):
    task, project, _ = await authz.authorize_task(ctx, task_id)
    update = changes(payload)
    if "project_id" in update and update["project_id"] != project["id"]:
        target = await authz.resolve_project(ctx, update["project_id"])
        if target["workspace_id"] != project["workspace_id"]:
            raise ValidationError("Project does not belong to this workspace")
    await check_assignee(ctx.store, project["workspace_id"], update.get("assignee_id"))
    update["workspace_id"] = project["workspace_id"]
    return await ctx.store.update_document(TASKS, task["id"], update)


@app.delete("/api/v1/tasks/{task_id}")
async def delete_task(task_id: str, ctx: authz.RequestContext = Depends(get_context)):
    task, _, _ = await authz.authorize_task(ctx, task_id)
    await ctx.store.delete_document(TASKS, task["id"])
    return {"id": task["id"]}


# Root
@app.get("/")
def read_root():
    return {"message": "Project Camp Backend API"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
