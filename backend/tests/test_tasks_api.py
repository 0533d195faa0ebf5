# tests/test_tasks_api.py — Task definition, revision and status endpoints
import asyncio
from datetime import date

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

import deadline
import stores


def flatten(node: dict) -> dict:
    """Map title -> node for a nested requirement tree"""
    found = {node["title"]: node}
    for child in node.get("operands", []):
        found.update(flatten(child))
    return found


async def create_workout(client, headers, payload) -> dict:
    res = await client.post("/api/v1/tasks", json=payload, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


@pytest.mark.asyncio
class TestCreate:
    async def test_create_returns_tree(self, client: AsyncClient, test_user, auth_headers, make_definition):
        data = await create_workout(client, auth_headers(test_user), make_definition())
        assert data["owner_id"] == test_user.id
        assert data["status"] == "active"
        assert data["revision"]["is_current"] is True
        assert data["revision"]["title"] == "Workout"

        nodes = flatten(data["requirement"])
        assert nodes["R"]["operator"] == "AND"
        assert [c["title"] for c in nodes["R"]["operands"]] == ["A", "B"]
        assert nodes["A"]["data_type"] == "int"

    async def test_invalid_tree(self, client: AsyncClient, test_user, auth_headers, make_definition):
        res = await client.post("/api/v1/tasks", json=make_definition(a_target="many"), headers=auth_headers(test_user))
        assert res.status_code == 422
        assert res.json()["code"] == "TF-VAL-001"

    async def test_oversized_duration_target(self, client: AsyncClient, test_user, auth_headers, make_definition):
        payload = make_definition()
        atom = payload["requirement"]["operands"][0]
        atom.update(data_type="duration", target_value="100000000000h")
        res = await client.post("/api/v1/tasks", json=payload, headers=auth_headers(test_user))
        assert res.status_code == 422
        assert res.json()["code"] == "TF-VAL-001"

    async def test_malformed_body(self, client: AsyncClient, test_user, auth_headers):
        res = await client.post("/api/v1/tasks", json={"title": "No tree"}, headers=auth_headers(test_user))
        assert res.status_code == 422

    async def test_guest_cannot_create(self, client: AsyncClient, guest_user, auth_headers, make_definition):
        res = await client.post("/api/v1/tasks", json=make_definition(), headers=auth_headers(guest_user))
        assert res.status_code == 403

    async def test_requires_auth(self, client: AsyncClient, make_definition):
        res = await client.post("/api/v1/tasks", json=make_definition())
        assert res.status_code in (401, 403)


@pytest.mark.asyncio
class TestRead:
    async def test_list_only_own(self, client: AsyncClient, test_user, other_user, auth_headers, make_definition):
        await create_workout(client, auth_headers(test_user), make_definition())
        await create_workout(client, auth_headers(other_user), make_definition())

        res = await client.get("/api/v1/tasks", headers=auth_headers(test_user))
        assert res.status_code == 200
        assert [t["owner_id"] for t in res.json()] == [test_user.id]

    async def test_admin_sees_all(self, client: AsyncClient, test_user, other_user, admin_user, auth_headers, make_definition):
        await create_workout(client, auth_headers(test_user), make_definition())
        await create_workout(client, auth_headers(other_user), make_definition())
        res = await client.get("/api/v1/tasks", headers=auth_headers(admin_user))
        assert len(res.json()) == 2

    async def test_other_user_gets_404(self, client: AsyncClient, test_user, other_user, auth_headers, make_definition):
        task = await create_workout(client, auth_headers(test_user), make_definition())
        res = await client.get(f"/api/v1/tasks/{task['id']}", headers=auth_headers(other_user))
        assert res.status_code == 404

    async def test_get_on_date_includes_values(self, client: AsyncClient, test_user, auth_headers, make_definition):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition(effective_from=date(2024, 1, 1)))
        a_id = flatten(task["requirement"])["A"]["id"]
        await client.put(f"/api/v1/entries/requirements/{a_id}", json={"date": "2024-02-01", "value": "12"}, headers=headers)

        res = await client.get(f"/api/v1/tasks/{task['id']}", params={"on": "2024-02-01"}, headers=headers)
        nodes = flatten(res.json()["requirement"])
        assert nodes["A"]["value"] == "12"
        assert nodes["R"]["value"] == "false"
        assert nodes["B"]["value"] is None


@pytest.mark.asyncio
class TestRevisions:
    async def test_revise_and_roll_back(self, client: AsyncClient, test_user, auth_headers, make_definition):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition())
        ids = {title: node["id"] for title, node in flatten(task["requirement"]).items()}
        first = task["revision"]["revision_uuid"]

        res = await client.put(f"/api/v1/tasks/{task['id']}", json=make_definition(a_target="20", ids=ids), headers=headers)
        assert res.status_code == 200
        revised = res.json()
        assert revised["revision"]["revision_uuid"] != first
        assert flatten(revised["requirement"])["A"]["id"] == ids["A"]
        assert flatten(revised["requirement"])["A"]["target_value"] == "20"

        history = (await client.get(f"/api/v1/tasks/{task['id']}/revisions", headers=headers)).json()
        assert len(history) == 2
        assert [r["is_current"] for r in history if r["revision_uuid"] == first] == [False]

        res = await client.post(f"/api/v1/tasks/{task['id']}/revisions/{first}/current", headers=headers)
        assert res.status_code == 200
        assert res.json()["is_current"] is True

        current = (await client.get(f"/api/v1/tasks/{task['id']}", headers=headers)).json()
        assert current["revision"]["revision_uuid"] == first
        assert flatten(current["requirement"])["A"]["target_value"] == "10"

    async def test_other_user_cannot_revise(self, client: AsyncClient, test_user, other_user, auth_headers, make_definition):
        task = await create_workout(client, auth_headers(test_user), make_definition())
        res = await client.put(f"/api/v1/tasks/{task['id']}", json=make_definition(), headers=auth_headers(other_user))
        assert res.status_code == 404

    async def test_unknown_revision(self, client: AsyncClient, test_user, auth_headers, make_definition):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition())
        res = await client.post(f"/api/v1/tasks/{task['id']}/revisions/nope/current", headers=headers)
        assert res.status_code == 404


@pytest.mark.asyncio
class TestStatusAndDelete:
    async def test_archive_hides_from_default_list(self, client: AsyncClient, test_user, auth_headers, make_definition):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition())

        res = await client.patch(f"/api/v1/tasks/{task['id']}/status", json={"status": "archived"}, headers=headers)
        assert res.status_code == 200
        assert res.json()["status"] == "archived"

        assert (await client.get("/api/v1/tasks", headers=headers)).json() == []
        archived = (await client.get("/api/v1/tasks", params={"archived": "true"}, headers=headers)).json()
        assert [t["id"] for t in archived] == [task["id"]]

    async def test_unknown_status(self, client: AsyncClient, test_user, auth_headers, make_definition):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition())
        res = await client.patch(f"/api/v1/tasks/{task['id']}/status", json={"status": "deleted"}, headers=headers)
        assert res.status_code == 422

    async def test_delete(self, client: AsyncClient, test_user, auth_headers, make_definition):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition())
        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=headers)
        assert res.status_code == 204
        assert (await client.get(f"/api/v1/tasks/{task['id']}", headers=headers)).status_code == 404

    async def test_admin_can_delete_any(self, client: AsyncClient, test_user, admin_user, auth_headers, make_definition):
        task = await create_workout(client, auth_headers(test_user), make_definition())
        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=auth_headers(admin_user))
        assert res.status_code == 204

    async def test_completions(self, client: AsyncClient, test_user, auth_headers, make_definition):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition(effective_from=date(2024, 1, 1)))
        nodes = flatten(task["requirement"])
        for requirement_id, value in ((nodes["A"]["id"], "12"), (nodes["B"]["id"], "true")):
            await client.put(
                f"/api/v1/entries/requirements/{requirement_id}",
                json={"date": "2024-03-05", "value": value}, headers=headers,
            )

        res = await client.get(
            f"/api/v1/tasks/{task['id']}/completions",
            params={"start_date": "2024-03-01", "end_date": "2024-03-31"}, headers=headers,
        )
        assert res.json() == [{"date": "2024-03-05", "completed": True}]


@pytest.mark.asyncio
class TestDeadlines:
    async def test_slow_delete_answers_504_and_keeps_task(
        self, client: AsyncClient, test_user, auth_headers, make_definition, monkeypatch,
    ):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition())
        original_delete = stores.delete_task

        async def stalled_delete(db, task_id):
            await original_delete(db, task_id)
            await asyncio.sleep(5)

        monkeypatch.setattr(stores, "delete_task", stalled_delete)
        monkeypatch.setattr(deadline, "REQUEST_DEADLINE_SECONDS", 0.2)
        res = await client.delete(f"/api/v1/tasks/{task['id']}", headers=headers)
        assert res.status_code == 504
        assert res.json()["code"] == "TF-SYS-002"

        monkeypatch.undo()
        assert (await client.get(f"/api/v1/tasks/{task['id']}", headers=headers)).status_code == 200

    async def test_slow_status_change_answers_504_and_rolls_back(
        self, client: AsyncClient, test_user, auth_headers, make_definition, monkeypatch,
    ):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition())
        original_flush = AsyncSession.flush

        async def stalled_flush(self, *args, **kwargs):
            await original_flush(self, *args, **kwargs)
            await asyncio.sleep(5)

        monkeypatch.setattr(AsyncSession, "flush", stalled_flush)
        monkeypatch.setattr(deadline, "REQUEST_DEADLINE_SECONDS", 0.2)
        res = await client.patch(f"/api/v1/tasks/{task['id']}/status", json={"status": "archived"}, headers=headers)
        assert res.status_code == 504

        monkeypatch.undo()
        res = await client.get(f"/api/v1/tasks/{task['id']}", headers=headers)
        assert res.json()["status"] == "active"

    async def test_slow_listing_answers_504(self, client: AsyncClient, test_user, auth_headers, monkeypatch):
        async def stalled(*args, **kwargs):
            await asyncio.sleep(5)

        monkeypatch.setattr(stores, "list_task_skeletons", stalled)
        monkeypatch.setattr(deadline, "REQUEST_DEADLINE_SECONDS", 0.05)
        res = await client.get("/api/v1/tasks", headers=auth_headers(test_user))
        assert res.status_code == 504

    async def test_slow_revision_history_answers_504(
        self, client: AsyncClient, test_user, auth_headers, make_definition, monkeypatch,
    ):
        headers = auth_headers(test_user)
        task = await create_workout(client, headers, make_definition())

        async def stalled(*args, **kwargs):
            await asyncio.sleep(5)

        monkeypatch.setattr(stores, "list_task_snapshots", stalled)
        monkeypatch.setattr(deadline, "REQUEST_DEADLINE_SECONDS", 0.05)
        res = await client.get(f"/api/v1/tasks/{task['id']}/revisions", headers=headers)
        assert res.status_code == 504
