"""Shared fixtures: an in-memory DocumentStore and an app wired to it."""

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import MEMBERS, PROJECTS, TASKS, USERS, WORKSPACES, DocumentList, serialize, to_object_id
from errors import NotFound, StoreError


def _compare(op: str, value, arg) -> bool:
    if op == "$ne":
        return value != arg
    if op == "$in":
        return value in arg
    if op == "$regex":
        return value is not None and re.search(arg, value) is not None
    # range operators never match a missing field
    if value is None:
        return False
    if op == "$gte":
        return value >= arg
    if op == "$lte":
        return value <= arg
    if op == "$gt":
        return value > arg
    if op == "$lt":
        return value < arg
    raise ValueError(f"unsupported operator {op}")


def matches(doc: dict, filters: dict) -> bool:
    for field, cond in filters.items():
        value = doc.get(field)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
            for op, arg in cond.items():
                if op == "$options":
                    continue
                if op == "$regex":
                    arg = re.compile(arg, flags)
                if not _compare(op, value, arg):
                    return False
        elif value != cond:
            return False
    return True


class InMemoryDocumentStore:
    """Same interface as database.DocumentStore, backed by dicts.

    Records every count query so tests can assert on what was issued.
    """

    def __init__(self):
        self.collections: dict[str, dict[ObjectId, dict]] = {}
        self.count_queries: list[tuple[str, dict]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.fail_counts = False
        # when set, counts block until the event fires
        self.gate: Optional[asyncio.Event] = None

    def _col(self, collection: str) -> dict:
        return self.collections.setdefault(collection, {})

    def insert(self, collection: str, data: dict, created_at: Optional[datetime] = None) -> dict:
        created_at = created_at or datetime.now(timezone.utc)
        doc = {**data, "_id": ObjectId(), "created_at": created_at, "updated_at": created_at}
        self._col(collection)[doc["_id"]] = doc
        return serialize(doc)

    def _find(self, collection: str, filters: dict) -> list[dict]:
        return [d for d in self._col(collection).values() if matches(d, filters)]

    async def get_document(self, collection: str, document_id: str) -> dict:
        oid = to_object_id(document_id)
        if oid is None or oid not in self._col(collection):
            raise NotFound(f"{collection} not found")
        return serialize(self._col(collection)[oid])

    async def find_one(self, collection: str, filters: dict) -> Optional[dict]:
        found = self._find(collection, filters)
        return serialize(found[0]) if found else None

    async def list_documents(self, collection, filters=None, sort=None, limit=0, skip=0) -> DocumentList:
        found = self._find(collection, filters or {})
        total = len(found)
        for field, direction in reversed(sort or []):
            found.sort(key=lambda d: (d.get(field) is not None, d.get(field)), reverse=direction < 0)
        found = found[skip:]
        if limit:
            found = found[:limit]
        return DocumentList(documents=[serialize(d) for d in found], total=total)

    async def count_documents(self, collection: str, filters: dict) -> int:
        self.count_queries.append((collection, filters))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if self.gate is not None:
                await self.gate.wait()
            if self.fail_counts:
                raise StoreError("connection reset")
            return len(self._find(collection, filters))
        finally:
            self.in_flight -= 1

    async def create_document(self, collection: str, data) -> dict:
        if hasattr(data, "model_dump"):
            data = data.model_dump()
        return self.insert(collection, data)

    async def update_document(self, collection: str, document_id: str, data: dict) -> dict:
        oid = to_object_id(document_id)
        if oid is None or oid not in self._col(collection):
            raise NotFound(f"{collection} not found")
        update = {k: v for k, v in data.items() if k not in ("id", "_id", "created_at")}
        self._col(collection)[oid].update(update, updated_at=datetime.now(timezone.utc))
        return serialize(self._col(collection)[oid])

    async def delete_document(self, collection: str, document_id: str) -> None:
        oid = to_object_id(document_id)
        if oid is None or oid not in self._col(collection):
            raise NotFound(f"{collection} not found")
        del self._col(collection)[oid]

    async def delete_documents(self, collection: str, filters: dict) -> int:
        found = self._find(collection, filters)
        for d in found:
            del self._col(collection)[d["_id"]]
        return len(found)

    async def ping(self) -> bool:
        return True


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def seed(store):
    """Workspace W with member M (user U, admin) and project P."""
    workspace = store.insert(WORKSPACES, {"name": "W", "invite_code": "ABC123", "user_id": "U"})
    member = store.insert(MEMBERS, {"workspace_id": workspace["id"], "user_id": "U", "role": "admin"})
    project = store.insert(PROJECTS, {"name": "P", "image_url": None, "workspace_id": workspace["id"]})
    return {"workspace": workspace, "member": member, "project": project}


@pytest.fixture
def add_task(store):
    def _add(project, created_at, status="TODO", due_date=None, assignee_id=None, name="task"):
        return store.insert(
            TASKS,
            {
                "name": name,
                "status": status,
                "due_date": due_date,
                "project_id": project["id"],
                "workspace_id": project["workspace_id"],
                "assignee_id": assignee_id,
                "position": 1000,
            },
            created_at=created_at,
        )

    return _add


@pytest.fixture
def client(store):
    from main import app, get_store

    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(store):
    """Insert a user and return (user, auth headers)."""
    from main import create_token

    def _make(name="user", email=None):
        user = store.insert(USERS, {"email": email or f"{name}@example.com", "name": name, "password_hash": "x"})
        token = create_token(user["id"], "access", timedelta(minutes=5))
        return user, {"Authorization": f"Bearer {token}"}

    return _make
