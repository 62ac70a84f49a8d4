# tests/test_api.py

from dataclasses import replace

from fastapi.testclient import TestClient

from taskassist.errors import InternalError
from taskassist.main import create_app

from .helpers import API, bearer, has_password, make_task, make_user, register


# ---- auth ----


def test_register_login_me_scenario(client) -> None:
    created = register(client, "alice", "secret1", email="alice@example.com")
    assert created["user"]["username"] == "alice"
    assert created["token"]
    assert not has_password(created)

    bad = client.post(f"{API}/auth/login", json={"username": "alice", "password": "wrong"})
    assert bad.status_code == 401

    good = client.post(f"{API}/auth/login", json={"username": "alice", "password": "secret1"})
    assert good.status_code == 200
    body = good.json()
    assert body["token"]
    assert body["user"]["lastLogin"] is not None
    assert not has_password(body)

    me = client.get(f"{API}/auth/me", headers=bearer(body["token"]))
    assert me.status_code == 200
    assert me.json()["username"] == "alice"
    assert me.json()["email"] == "alice@example.com"
    assert not has_password(me.json())


def test_register_twice_is_rejected(client, storage) -> None:
    register(client, "alice")

    resp = client.post(f"{API}/auth/register", json={"username": "alice", "password": "another1"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Username already exists"
    assert len(storage.search_users("alice")) == 1


def test_register_validation_errors_are_400(client) -> None:
    resp = client.post(f"{API}/auth/register", json={"username": "bob"})
    assert resp.status_code == 400
    assert resp.json()["errors"] == [{"field": "password", "message": "Field required"}]


def test_login_unknown_user_is_401(client) -> None:
    resp = client.post(f"{API}/auth/login", json={"username": "ghost", "password": "secret1"})
    assert resp.status_code == 401


# ---- tasks ----


def test_summary_scenario(client) -> None:
    register(client, "alice")

    created = client.post(f"{API}/tasks", json={"title": "T1", "userId": 1})
    assert created.status_code == 201
    task = created.json()

    assert client.get(f"{API}/tasks/summary").json() == {"total": 1, "completed": 0, "pending": 1}

    patched = client.patch(f"{API}/tasks/{task['id']}", json={"completed": True})
    assert patched.status_code == 200
    assert patched.json()["completed"] is True

    assert client.get(f"{API}/tasks/summary").json() == {"total": 1, "completed": 1, "pending": 0}


def test_task_crud(client) -> None:
    owner = register(client, "alice")["user"]

    resp = client.post(
        f"{API}/tasks",
        json={"title": "Buy milk", "userId": owner["id"], "priority": "High", "dueDate": "2024-05-01"},
    )
    assert resp.status_code == 201
    task = resp.json()
    assert task["priority"] == "high"
    assert task["dueDate"] == "2024-05-01T00:00:00"
    assert task["completed"] is False
    assert set(task) >= {"id", "createdAt", "updatedAt", "assignedTo", "assignedBy", "projectId"}

    fetched = client.get(f"{API}/tasks/{task['id']}")
    assert fetched.status_code == 200
    assert fetched.json() == task

    assert [t["id"] for t in client.get(f"{API}/tasks").json()] == [task["id"]]

    deleted = client.delete(f"{API}/tasks/{task['id']}")
    assert deleted.status_code == 204
    assert client.get(f"{API}/tasks/{task['id']}").status_code == 404
    assert client.delete(f"{API}/tasks/{task['id']}").status_code == 404


def test_task_filters(client, storage) -> None:
    owner = make_user(storage, "alice")
    make_task(storage, owner.id, title="open")
    make_task(storage, owner.id, title="done", completed=True)

    assert [t["title"] for t in client.get(f"{API}/tasks", params={"filter": "active"}).json()] == ["open"]
    assert [t["title"] for t in client.get(f"{API}/tasks", params={"filter": "completed"}).json()] == ["done"]
    assert len(client.get(f"{API}/tasks", params={"filter": "all"}).json()) == 2
    assert client.get(f"{API}/tasks", params={"filter": "bogus"}).status_code == 400


def test_missing_and_malformed_task_ids(client) -> None:
    assert client.get(f"{API}/tasks/999").status_code == 404
    assert client.patch(f"{API}/tasks/999", json={"completed": True}).status_code == 404
    assert client.get(f"{API}/tasks/abc").status_code == 400


def test_create_task_validates_input_and_references(client, storage) -> None:
    owner = make_user(storage, "alice")

    missing = client.post(f"{API}/tasks", json={"userId": owner.id})
    assert missing.status_code == 400
    assert {e["field"] for e in missing.json()["errors"]} == {"title"}

    bad_priority = client.post(f"{API}/tasks", json={"title": "T", "userId": owner.id, "priority": "urgent"})
    assert bad_priority.status_code == 400

    dangling = client.post(
        f"{API}/tasks",
        json={"title": "T", "userId": owner.id, "projectId": 77, "assignedTo": 88},
    )
    assert dangling.status_code == 400
    assert {e["field"] for e in dangling.json()["errors"]} == {"projectId", "assignedTo"}

    assert storage.get_tasks() == []


def test_patch_changes_only_given_fields(client, storage) -> None:
    owner = make_user(storage, "alice")
    task = make_task(storage, owner.id, title="T1", description="keep")

    resp = client.patch(f"{API}/tasks/{task.id}", json={"starred": True})
    assert resp.status_code == 200
    after = resp.json()
    before = client.get(f"{API}/tasks/{task.id}").json()
    assert after == before
    assert after["starred"] is True
    assert after["description"] == "keep"
    assert after["title"] == "T1"

    invalid = client.patch(f"{API}/tasks/{task.id}", json={"title": None})
    assert invalid.status_code == 400


def test_patch_assignment_records_the_assigner(client, storage) -> None:
    alice = register(client, "alice")
    bob = make_user(storage, "bob")
    carol = make_user(storage, "carol")
    task = make_task(storage, bob.id, title="T1")

    resp = client.patch(f"{API}/tasks/{task.id}", json={"assignedTo": carol.id}, headers=bearer(alice["token"]))
    assert resp.status_code == 200
    assert (resp.json()["assignedTo"], resp.json()["assignedBy"]) == (carol.id, alice["user"]["id"])

    # anonymous reassignment falls back to the owner as assigner
    resp = client.patch(f"{API}/tasks/{task.id}", json={"assignedTo": alice["user"]["id"]})
    assert (resp.json()["assignedTo"], resp.json()["assignedBy"]) == (alice["user"]["id"], bob.id)

    resp = client.patch(f"{API}/tasks/{task.id}", json={"assignedTo": None})
    assert (resp.json()["assignedTo"], resp.json()["assignedBy"]) == (None, None)


def test_assign_endpoint(client, storage) -> None:
    alice = register(client, "alice")
    bob = make_user(storage, "bob")
    task = make_task(storage, alice["user"]["id"])

    resp = client.post(f"{API}/tasks/{task.id}/assign", json={"assignedTo": bob.id}, headers=bearer(alice["token"]))
    assert resp.status_code == 200
    assert (resp.json()["assignedTo"], resp.json()["assignedBy"]) == (bob.id, alice["user"]["id"])

    assert client.post(f"{API}/tasks/{task.id}/assign", json={"assignedTo": 999}).status_code == 400
    assert client.post(f"{API}/tasks/999/assign", json={"assignedTo": bob.id}).status_code == 404
    assert client.post(f"{API}/tasks/{task.id}/assign", json={}).status_code == 400

    cleared = client.post(f"{API}/tasks/{task.id}/assign", json={"assignedTo": None})
    assert (cleared.json()["assignedTo"], cleared.json()["assignedBy"]) == (None, None)


def test_user_task_listing_by_category(client, storage) -> None:
    alice = make_user(storage, "alice")
    bob = make_user(storage, "bob")
    own = make_task(storage, alice.id, title="own")
    incoming = make_task(storage, bob.id, title="incoming", assigned_to=alice.id)
    outgoing = make_task(storage, alice.id, title="outgoing", assigned_to=bob.id)
    make_task(storage, bob.id, title="bob only")

    def ids(**params):
        resp = client.get(f"{API}/tasks/user/{alice.id}", params=params)
        assert resp.status_code == 200
        return [t["id"] for t in resp.json()]

    assert ids() == [outgoing.id, incoming.id, own.id]
    assert ids(category="all") == [outgoing.id, incoming.id, own.id]
    assert ids(category="own") == [own.id]
    assert ids(category="assigned") == [outgoing.id, incoming.id]
    assert client.get(f"{API}/tasks/user/{alice.id}", params={"category": "mine"}).status_code == 400

    by_query = client.get(f"{API}/tasks", params={"userId": alice.id}).json()
    assert [t["id"] for t in by_query] == [outgoing.id, incoming.id, own.id]

    delegated = client.get(f"{API}/tasks/assigned-by/{alice.id}").json()
    assert [t["id"] for t in delegated] == [outgoing.id]


def test_summary_scope(client, storage, settings) -> None:
    alice = register(client, "alice")
    bob = make_user(storage, "bob")
    make_task(storage, alice["user"]["id"], completed=True)
    make_task(storage, bob.id)

    assert client.get(f"{API}/tasks/summary").json()["total"] == 2
    assert client.get(f"{API}/tasks/summary", params={"userId": bob.id}).json() == {
        "total": 1,
        "completed": 0,
        "pending": 1,
    }

    scoped = TestClient(create_app(replace(settings, summary_scope="user"), storage))
    assert scoped.get(f"{API}/tasks/summary", headers=bearer(alice["token"])).json() == {
        "total": 1,
        "completed": 1,
        "pending": 0,
    }
    assert scoped.get(f"{API}/tasks/summary").json()["total"] == 2


# ---- users ----


def test_user_search(client, storage) -> None:
    make_user(storage, "alice", email="alice@example.com", first_name="Alice")
    make_user(storage, "bob", last_name="Alison")

    resp = client.get(f"{API}/users/search", params={"q": "ALI"})
    assert resp.status_code == 200
    assert [u["username"] for u in resp.json()] == ["alice", "bob"]
    assert not has_password(resp.json())

    assert client.get(f"{API}/users/search").status_code == 400
    assert client.get(f"{API}/users/search", params={"q": "  "}).status_code == 400


# ---- projects ----


def test_projects(client, storage) -> None:
    alice = register(client, "alice")
    bob = make_user(storage, "bob")

    created = client.post(f"{API}/projects", json={"name": "Work", "color": "#10B981"}, headers=bearer(alice["token"]))
    assert created.status_code == 201
    project = created.json()
    assert project["userId"] == alice["user"]["id"]
    assert project["isPublic"] is False

    other = client.post(f"{API}/projects", json={"name": "Research", "color": "#EC4899", "userId": bob.id, "isPublic": True})
    assert other.status_code == 201

    assert [p["name"] for p in client.get(f"{API}/projects").json()] == ["Work", "Research"]
    assert [p["name"] for p in client.get(f"{API}/projects", params={"userId": bob.id}).json()] == ["Research"]
    assert client.get(f"{API}/projects/{project['id']}").json() == project
    assert client.get(f"{API}/projects/999").status_code == 404

    assert client.post(f"{API}/projects", json={"name": "No color", "userId": bob.id}).status_code == 400
    assert client.post(f"{API}/projects", json={"name": "Orphan", "color": "#000", "userId": 999}).status_code == 400

    in_project = client.post(f"{API}/tasks", json={"title": "T", "userId": bob.id, "projectId": project["id"]})
    assert in_project.status_code == 201
    assert in_project.json()["projectId"] == project["id"]


# ---- team members ----


def test_team_members(client, storage) -> None:
    alice = make_user(storage, "alice")
    bob = make_user(storage, "bob", email="bob@example.com")

    resp = client.post(f"{API}/team-members", json={"userId1": alice.id, "userId2": bob.id})
    assert resp.status_code == 201
    body = resp.json()
    assert body["connection"]["userId1"] == alice.id
    assert body["connection"]["userId2"] == bob.id
    assert body["user"]["username"] == "bob"
    assert not has_password(body)

    alice_side = client.get(f"{API}/team-members/{alice.id}").json()
    bob_side = client.get(f"{API}/team-members/{bob.id}").json()
    assert [m["user"]["id"] for m in alice_side] == [bob.id]
    assert [m["user"]["id"] for m in bob_side] == [alice.id]
    assert not has_password(alice_side) and not has_password(bob_side)

    again = client.post(f"{API}/team-members", json={"userId1": bob.id, "userId2": alice.id})
    assert again.status_code == 400
    assert len(client.get(f"{API}/team-members/{alice.id}").json()) == 1


def test_team_member_bad_requests(client, storage) -> None:
    alice = make_user(storage, "alice")

    assert client.post(f"{API}/team-members", json={"userId1": alice.id}).status_code == 400
    unknown = client.post(f"{API}/team-members", json={"userId1": alice.id, "userId2": 999})
    assert unknown.status_code == 400
    assert unknown.json()["detail"] == "User 999 not found"
    assert client.post(f"{API}/team-members", json={"userId1": alice.id, "userId2": alice.id}).status_code == 400
    assert client.get(f"{API}/team-members/{alice.id}").json() == []


# ---- error translation ----


class _BrokenStorage:
    def get_tasks(self, task_filter=None):
        raise RuntimeError("database exploded: password=hunter2")

    def close(self):
        pass


def test_unexpected_errors_are_500_without_internals(settings) -> None:
    broken = TestClient(create_app(settings, _BrokenStorage()), raise_server_exceptions=False)

    resp = broken.get(f"{API}/tasks")
    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error"}


def test_internal_errors_hide_their_message(settings) -> None:
    class _Exhausted(_BrokenStorage):
        def get_projects(self):
            raise InternalError("connection pool exhausted")

    broken = TestClient(create_app(settings, _Exhausted()), raise_server_exceptions=False)

    resp = broken.get(f"{API}/projects")
    assert resp.status_code == 500
    assert resp.json() == {"detail": "Internal server error"}


def test_full_object_patch_keeps_the_assigner(client, storage) -> None:
    alice = register(client, "alice")
    bob = make_user(storage, "bob")
    carol = make_user(storage, "carol")
    task = make_task(storage, bob.id, title="T1")
    storage.assign_task(task.id, carol.id, bob.id)

    current = client.get(f"{API}/tasks/{task.id}").json()
    body = {k: v for k, v in current.items() if k not in ("id", "createdAt", "updatedAt")}
    body["title"] = "T1 renamed"

    anonymous = client.patch(f"{API}/tasks/{task.id}", json=body)
    assert anonymous.status_code == 200
    assert (anonymous.json()["assignedTo"], anonymous.json()["assignedBy"]) == (carol.id, bob.id)

    signed_in = client.patch(f"{API}/tasks/{task.id}", json=body, headers=bearer(alice["token"]))
    assert signed_in.json()["assignedBy"] == bob.id
    assert signed_in.json()["title"] == "T1 renamed"


def test_accessible_projects_route(client, storage) -> None:
    alice = make_user(storage, "alice")
    bob = make_user(storage, "bob")
    client.post(f"{API}/projects", json={"name": "Mine", "color": "#111", "userId": alice.id})
    client.post(f"{API}/projects", json={"name": "Shared", "color": "#222", "userId": bob.id, "isPublic": True})
    client.post(f"{API}/projects", json={"name": "Hidden", "color": "#333", "userId": bob.id})
    client.post(f"{API}/team-members", json={"userId1": alice.id, "userId2": bob.id})

    resp = client.get(f"{API}/projects/accessible/{alice.id}")
    assert resp.status_code == 200
    assert [p["name"] for p in resp.json()] == ["Mine", "Shared"]
