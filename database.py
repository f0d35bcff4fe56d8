"""
Document store adapter over MongoDB (pymongo asyncio client).

Filters are MongoDB query documents. Documents come back as plain dicts with
the ObjectId rendered as a string under "id".
"""

import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import NotFound, StoreError, ValidationError

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "project_camp")

Sort = list[tuple[str, int]]

# Collection names
WORKSPACES = "workspace"
MEMBERS = "member"
PROJECTS = "project"
TASKS = "task"
USERS = "user"


class DocumentList(BaseModel):
    documents: list[dict]
    total: int


def to_object_id(document_id: str) -> Optional[ObjectId]:
    # ObjectId(None) would mint a fresh id
    if not isinstance(document_id, str):
        return None
    try:
        return ObjectId(document_id)
    except (InvalidId, TypeError):
        return None


def serialize(doc: dict) -> dict:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


class DocumentStore:
    """CRUD and filtered listing over a pymongo AsyncDatabase."""

    def __init__(self, database):
        self.database = database

    async def get_document(self, collection: str, document_id: str) -> dict:
        oid = to_object_id(document_id)
        if oid is None:
            raise NotFound(f"{collection} not found")
        try:
            doc = await self.database[collection].find_one({"_id": oid})
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        if doc is None:
            raise NotFound(f"{collection} not found")
        return serialize(doc)

    async def find_one(self, collection: str, filters: dict) -> Optional[dict]:
        try:
            doc = await self.database[collection].find_one(filters)
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return serialize(doc) if doc else None

    async def list_documents(self, collection: str, filters: Optional[dict] = None, sort: Optional[Sort] = None, limit: int = 0, skip: int = 0) -> DocumentList:
        filters = filters or {}
        try:
            cursor = self.database[collection].find(filters)
            if sort:
                cursor = cursor.sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            documents = [serialize(d) async for d in cursor]
            total = await self.database[collection].count_documents(filters)
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return DocumentList(documents=documents, total=total)

    async def count_documents(self, collection: str, filters: dict) -> int:
        try:
            return await self.database[collection].count_documents(filters)
        except PyMongoError as e:
            raise StoreError(str(e)) from e

    async def create_document(self, collection: str, data: Union[BaseModel, dict]) -> dict:
        if isinstance(data, BaseModel):
            data = data.model_dump()
        now = datetime.now(timezone.utc)
        doc = {**data, "created_at": now, "updated_at": now}
        try:
            result = await self.database[collection].insert_one(doc)
        except DuplicateKeyError as e:
            raise ValidationError(f"{collection} already exists") from e
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        doc["_id"] = result.inserted_id
        return serialize(doc)

    async def update_document(self, collection: str, document_id: str, data: dict) -> dict:
        oid = to_object_id(document_id)
        if oid is None:
            raise NotFound(f"{collection} not found")
        update = {k: v for k, v in data.items() if k not in ("id", "_id", "created_at")}
        update["updated_at"] = datetime.now(timezone.utc)
        try:
            res = await self.database[collection].update_one({"_id": oid}, {"$set": update})
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        if res.matched_count == 0:
            raise NotFound(f"{collection} not found")
        return await self.get_document(collection, document_id)

    async def delete_document(self, collection: str, document_id: str) -> None:
        oid = to_object_id(document_id)
        if oid is None:
            raise NotFound(f"{collection} not found")
        try:
            res = await self.database[collection].delete_one({"_id": oid})
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        if res.deleted_count == 0:
            raise NotFound(f"{collection} not found")

    async def delete_documents(self, collection: str, filters: dict) -> int:
        try:
            res = await self.database[collection].delete_many(filters)
        except PyMongoError as e:
            raise StoreError(str(e)) from e
        return res.deleted_count

    async def ping(self) -> bool:
        try:
            await self.database.command("ping")
        except PyMongoError:
            return False
        return True


def create_client(url: str = DATABASE_URL) -> AsyncMongoClient:
    return AsyncMongoClient(url, tz_aware=True)


async def ensure_indexes(store: DocumentStore) -> None:
    db = store.database
    await db[USERS].create_index("email", unique=True)
    await db[MEMBERS].create_index([("workspace_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    await db[PROJECTS].create_index([("workspace_id", ASCENDING), ("created_at", DESCENDING)])
    await db[TASKS].create_index([("project_id", ASCENDING), ("created_at", ASCENDING)])
    await db[WORKSPACES].create_index("invite_code")
