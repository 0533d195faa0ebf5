# tests/test_entries_api.py — Entry write/read endpoints and request deadlines
import asyncio
from datetime import date

import pytest
from httpx import AsyncClient

import deadline
import stores
from deadline import with_deadline
from exceptions import DeadlineExceededError
from routers import entries as entries_router

DAY = "2024-05-20"


async def workout_ids(client, headers, payload) -> dict:
    res = await client.post("/api/v1/tasks", json=payload, headers=headers)
    assert res.status_code == 201, res.text
    root = res.json()["requirement"]
    ids = {"R": root["id"]}
    ids.update({child["title"]: child["id"] for child in root["operands"]})
    return ids


@pytest.fixture
def early_workout(make_definition):
    return make_definition(effective_from=date(2024, 1, 1))


@pytest.mark.asyncio
class TestRecordEntry:
    async def test_chain_is_returned_leaf_first(self, client: AsyncClient, test_user, auth_headers, early_workout):
        headers = auth_headers(test_user)
        ids = await workout_ids(client, headers, early_workout)

        res = await client.put(f"/api/v1/entries/requirements/{ids['A']}", json={"date": DAY, "value": "12"}, headers=headers)
        assert res.status_code == 202
        chain = res.json()
        assert [e["requirement_id"] for e in chain] == [ids["A"], ids["R"]]
        assert [e["value"] for e in chain] == ["12", "false"]
        assert all(e["date"] == DAY for e in chain)

        res = await client.put(f"/api/v1/entries/requirements/{ids['B']}", json={"date": DAY, "value": "true"}, headers=headers)
        chain = res.json()
        assert [e["requirement_id"] for e in chain] == [ids["B"], ids["R"]]
        assert chain[-1]["value"] == "true"

    async def test_condition_write_is_rejected(self, client: AsyncClient, test_user, auth_headers, early_workout):
        headers = auth_headers(test_user)
        ids = await workout_ids(client, headers, early_workout)
        res = await client.put(f"/api/v1/entries/requirements/{ids['R']}", json={"date": DAY, "value": "true"}, headers=headers)
        assert res.status_code == 409
        assert res.json()["code"] == "TF-REQ-001"

        listed = await client.get("/api/v1/entries", params={"start_date": DAY, "end_date": DAY}, headers=headers)
        assert listed.json() == []

    async def test_bad_value(self, client: AsyncClient, test_user, auth_headers, early_workout):
        headers = auth_headers(test_user)
        ids = await workout_ids(client, headers, early_workout)
        res = await client.put(f"/api/v1/entries/requirements/{ids['A']}", json={"date": DAY, "value": "abc"}, headers=headers)
        assert res.status_code == 422
        body = res.json()
        assert body["code"] == "TF-VAL-001"
        assert body["request_id"]

    @pytest.mark.parametrize("value", ["12\n", "١٢", "9223372036854775808"])
    async def test_int_outside_plain_decimal(self, client: AsyncClient, test_user, auth_headers, early_workout, value):
        headers = auth_headers(test_user)
        ids = await workout_ids(client, headers, early_workout)
        res = await client.put(f"/api/v1/entries/requirements/{ids['A']}", json={"date": DAY, "value": value}, headers=headers)
        assert res.status_code == 422
        assert res.json()["code"] == "TF-VAL-001"

    async def test_other_users_requirement(self, client: AsyncClient, test_user, other_user, auth_headers, early_workout):
        ids = await workout_ids(client, auth_headers(test_user), early_workout)
        res = await client.put(
            f"/api/v1/entries/requirements/{ids['A']}", json={"date": DAY, "value": "12"}, headers=auth_headers(other_user),
        )
        assert res.status_code == 403
        assert res.json()["code"] == "TF-AUTH-001"

    async def test_unknown_requirement(self, client: AsyncClient, test_user, auth_headers):
        res = await client.put("/api/v1/entries/requirements/777", json={"date": DAY, "value": "1"}, headers=auth_headers(test_user))
        assert res.status_code == 404


@pytest.mark.asyncio
class TestReadEntries:
    async def test_list_and_detail(self, client: AsyncClient, test_user, auth_headers, early_workout):
        headers = auth_headers(test_user)
        ids = await workout_ids(client, headers, early_workout)
        chain = (await client.put(
            f"/api/v1/entries/requirements/{ids['A']}", json={"date": DAY, "value": "12"}, headers=headers,
        )).json()

        listed = (await client.get("/api/v1/entries", params={"start_date": DAY, "end_date": DAY}, headers=headers)).json()
        assert {e["id"] for e in listed} == {e["id"] for e in chain}

        leaf = (await client.get(f"/api/v1/entries/{chain[0]['id']}", headers=headers)).json()
        assert leaf["value"] == "12"
        assert leaf["satisfied"] is True
        assert leaf["revision_uuid"] == chain[0]["revision_uuid"]

        root = (await client.get(f"/api/v1/entries/{chain[1]['id']}", headers=headers)).json()
        assert root["satisfied"] is False

    async def test_detail_hidden_from_others(self, client: AsyncClient, test_user, other_user, auth_headers, early_workout):
        headers = auth_headers(test_user)
        ids = await workout_ids(client, headers, early_workout)
        chain = (await client.put(
            f"/api/v1/entries/requirements/{ids['A']}", json={"date": DAY, "value": "12"}, headers=headers,
        )).json()
        res = await client.get(f"/api/v1/entries/{chain[0]['id']}", headers=auth_headers(other_user))
        assert res.status_code == 404

    async def test_default_range_is_today(self, client: AsyncClient, test_user, auth_headers, early_workout):
        headers = auth_headers(test_user)
        ids = await workout_ids(client, headers, early_workout)
        await client.put(f"/api/v1/entries/requirements/{ids['A']}", json={"date": DAY, "value": "12"}, headers=headers)
        assert (await client.get("/api/v1/entries", headers=headers)).json() == []


@pytest.mark.asyncio
class TestDeadline:
    async def test_with_deadline_raises(self):
        with pytest.raises(DeadlineExceededError) as exc:
            await with_deadline(asyncio.sleep(1), seconds=0.01)
        assert exc.value.http_status == 504

    async def test_with_deadline_returns_result(self):
        async def quick():
            return 7
        assert await with_deadline(quick(), seconds=1) == 7

    async def test_slow_write_answers_504(self, client: AsyncClient, test_user, auth_headers, monkeypatch):
        async def stalled(*args, **kwargs):
            await asyncio.sleep(1)

        monkeypatch.setattr(entries_router, "upsert_leaf_entry", stalled)
        monkeypatch.setattr(deadline, "REQUEST_DEADLINE_SECONDS", 0.01)
        res = await client.put("/api/v1/entries/requirements/1", json={"date": DAY, "value": "1"}, headers=auth_headers(test_user))
        assert res.status_code == 504
        assert res.json()["code"] == "TF-SYS-002"

    async def test_slow_listing_answers_504(self, client: AsyncClient, test_user, auth_headers, monkeypatch):
        async def stalled(*args, **kwargs):
            await asyncio.sleep(1)

        monkeypatch.setattr(stores, "list_requirement_entries", stalled)
        monkeypatch.setattr(deadline, "REQUEST_DEADLINE_SECONDS", 0.01)
        res = await client.get("/api/v1/entries", headers=auth_headers(test_user))
        assert res.status_code == 504
