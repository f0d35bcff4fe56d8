"""
Database Schemas for Project Camp Backend

Collections (see database.py):
- User -> "user"
- Workspace -> "workspace"
- Member -> "member"
- Project -> "project"
- Task -> "task"

These are used both for validation and to guide DB operations. Every stored
document also carries created_at / updated_at, stamped by the store.
"""

from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional, Literal
from datetime import datetime, timezone


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # naive datetimes from clients are taken as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# Auth and Users
class User(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=120)
    password_hash: str

# Workspaces and Memberships
Role = Literal["admin", "member"]

class Workspace(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    image_url: Optional[str] = None
    invite_code: str
    user_id: str  # owner

class Member(BaseModel):
    workspace_id: str
    user_id: str
    role: Role = "member"

# Projects
class Project(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    image_url: Optional[str] = None
    workspace_id: str

# Tasks
TaskStatus = Literal["TODO", "IN_PROGRESS", "IN_REVIEW", "DONE"]
DONE: TaskStatus = "DONE"

class Task(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    status: TaskStatus = "TODO"
    due_date: Optional[datetime] = None
    project_id: str
    # mirrors the project's workspace_id; authorization always goes through the project
    workspace_id: str
    assignee_id: Optional[str] = None  # a Member id, not a user id
    position: int = Field(1000, ge=1000)

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v):
        return as_utc(v)

# Analytics
class AnalyticsReport(BaseModel):
    task_count: int
    task_difference: int
    assigned_task_count: int
    assigned_task_difference: int
    incomplete_task_count: int
    incomplete_task_difference: int
    completed_task_count: int
    completed_task_difference: int
    overdue_task_count: int
    overdue_task_difference: int
