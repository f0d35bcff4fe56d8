import asyncio

import pytest

import authz
from authz import RequestContext
from database import MEMBERS, PROJECTS, TASKS, WORKSPACES
from errors import Unauthorized


def run(coro):
    return asyncio.run(coro)


def test_find_membership(store, seed):
    found = run(authz.find_membership(store, seed["workspace"]["id"], "U"))
    assert found["id"] == seed["member"]["id"]
    assert found["role"] == "admin"
    assert run(authz.find_membership(store, seed["workspace"]["id"], "someone-else")) is None


def test_find_membership_reflects_current_state(store, seed):
    assert run(authz.find_membership(store, seed["workspace"]["id"], "U")) is not None
    run(store.delete_document(MEMBERS, seed["member"]["id"]))
    assert run(authz.find_membership(store, seed["workspace"]["id"], "U")) is None


def test_authorize_returns_membership(store, seed):
    ctx = RequestContext(store=store, user_id="U")
    member = run(authz.authorize(ctx, seed["workspace"]["id"]))
    assert member["id"] == seed["member"]["id"]


@pytest.mark.parametrize("kind", ["workspace", "project", "task"])
def test_non_member_denied_for_every_kind(store, seed, add_task, kind):
    task = add_task(seed["project"], created_at=None)
    ids = {"workspace": seed["workspace"]["id"], "project": seed["project"]["id"], "task": task["id"]}
    ctx = RequestContext(store=store, user_id="U2")
    with pytest.raises(Unauthorized):
        run(authz.authorize_resource(ctx, kind, ids[kind]))


@pytest.mark.parametrize("kind", ["workspace", "project", "task"])
def test_member_allowed_for_every_kind(store, seed, add_task, kind):
    task = add_task(seed["project"], created_at=None)
    ids = {"workspace": seed["workspace"]["id"], "project": seed["project"]["id"], "task": task["id"]}
    ctx = RequestContext(store=store, user_id="U")
    member = run(authz.authorize_resource(ctx, kind, ids[kind]))
    assert member["id"] == seed["member"]["id"]


@pytest.mark.parametrize("kind", ["workspace", "project", "task"])
@pytest.mark.parametrize("resource_id", ["65f000000000000000000000", "not-an-object-id"])
def test_missing_resource_looks_like_missing_membership(store, seed, kind, resource_id):
    ctx = RequestContext(store=store, user_id="U")
    with pytest.raises(Unauthorized) as missing:
        run(authz.authorize_resource(ctx, kind, resource_id))

    outsider = RequestContext(store=store, user_id="U2")
    with pytest.raises(Unauthorized) as denied:
        run(authz.authorize_resource(outsider, "project", seed["project"]["id"]))

    assert missing.value.to_dict() == denied.value.to_dict()


def test_project_reassignment_checks_current_owner(store, seed):
    w2 = store.insert(WORKSPACES, {"name": "W2", "invite_code": "XYZ789", "user_id": "U2"})
    store.insert(MEMBERS, {"workspace_id": w2["id"], "user_id": "U2", "role": "admin"})
    project_id = seed["project"]["id"]
    u1 = RequestContext(store=store, user_id="U")
    u2 = RequestContext(store=store, user_id="U2")

    run(authz.authorize_resource(u1, "project", project_id))
    with pytest.raises(Unauthorized):
        run(authz.authorize_resource(u2, "project", project_id))

    run(store.update_document(PROJECTS, project_id, {"workspace_id": w2["id"]}))

    with pytest.raises(Unauthorized):
        run(authz.authorize_resource(u1, "project", project_id))
    member = run(authz.authorize_resource(u2, "project", project_id))
    assert member["workspace_id"] == w2["id"]


def test_task_authorized_through_its_project(store, seed, add_task):
    w2 = store.insert(WORKSPACES, {"name": "W2", "invite_code": "XYZ789", "user_id": "U2"})
    store.insert(MEMBERS, {"workspace_id": w2["id"], "user_id": "U2", "role": "admin"})
    task = add_task(seed["project"], created_at=None)

    # the copy on the task goes stale when the project moves
    run(store.update_document(PROJECTS, seed["project"]["id"], {"workspace_id": w2["id"]}))
    assert run(store.get_document(TASKS, task["id"]))["workspace_id"] == seed["workspace"]["id"]

    with pytest.raises(Unauthorized):
        run(authz.authorize_resource(RequestContext(store=store, user_id="U"), "task", task["id"]))
    _, project, member = run(authz.authorize_task(RequestContext(store=store, user_id="U2"), task["id"]))
    assert project["workspace_id"] == w2["id"]
    assert member["user_id"] == "U2"


def test_task_with_missing_project_is_denied(store, seed, add_task):
    task = add_task(seed["project"], created_at=None)
    run(store.delete_document(PROJECTS, seed["project"]["id"]))
    with pytest.raises(Unauthorized):
        run(authz.authorize_resource(RequestContext(store=store, user_id="U"), "task", task["id"]))


def test_require_admin(seed):
    assert authz.require_admin(seed["member"]) is seed["member"]
    with pytest.raises(Unauthorized):
        authz.require_admin({**seed["member"], "role": "member"})
