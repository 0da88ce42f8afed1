"""Owner decision and acceptance listing endpoint tests."""

from __future__ import annotations

import pytest

from tests.unit.routers.conftest import (
    ALICE_ID,
    BOB_ID,
    OWNER_ID,
    accept_task,
    bearer,
    open_task_with_applicant,
    respond,
)


class TestRespond:
    @pytest.mark.unit
    async def test_confirm_assigns_and_rejects_siblings(self, client, owner_keypair, alice_keypair, bob_keypair):
        task_id, alice = await open_task_with_applicant(client, owner_keypair, alice_keypair)
        bob = (await accept_task(client, bob_keypair, BOB_ID, task_id)).json()

        response = await respond(client, owner_keypair, alice["acceptance_id"], "confirmed")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["acceptance"]["status"] == "confirmed"
        assert body["task"]["status"] == "assigned"
        assert body["task"]["assigned_to"] == ALICE_ID

        listing = await client.get(
            f"/tasks/{task_id}/acceptances",
            headers=bearer(owner_keypair, OWNER_ID, "list_acceptances"),
        )
        statuses = {a["acceptance_id"]: a["status"] for a in listing.json()["acceptances"]}
        assert statuses == {alice["acceptance_id"]: "confirmed", bob["acceptance_id"]: "rejected"}

    @pytest.mark.unit
    async def test_repeat_confirm_is_idempotent(self, client, owner_keypair, alice_keypair):
        _task_id, alice = await open_task_with_applicant(client, owner_keypair, alice_keypair)

        first = await respond(client, owner_keypair, alice["acceptance_id"], "confirmed")
        second = await respond(client, owner_keypair, alice["acceptance_id"], "confirmed")

        assert second.status_code == 200
        assert second.json()["acceptance"] == first.json()["acceptance"]

    @pytest.mark.unit
    async def test_confirming_a_sibling_after_assignment(self, client, owner_keypair, alice_keypair, bob_keypair):
        task_id, alice = await open_task_with_applicant(client, owner_keypair, alice_keypair)
        bob = (await accept_task(client, bob_keypair, BOB_ID, task_id)).json()
        await respond(client, owner_keypair, alice["acceptance_id"], "confirmed")

        response = await respond(client, owner_keypair, bob["acceptance_id"], "confirmed")
        assert response.status_code == 409
        assert response.json()["error"] == "ALREADY_ASSIGNED"

    @pytest.mark.unit
    async def test_reject_then_confirm_is_already_resolved(self, client, owner_keypair, alice_keypair):
        _task_id, alice = await open_task_with_applicant(client, owner_keypair, alice_keypair)

        rejected = await respond(
            client, owner_keypair, alice["acceptance_id"], "rejected", response_message="Not this time"
        )
        assert rejected.status_code == 200
        assert rejected.json()["acceptance"]["response_message"] == "Not this time"
        assert rejected.json()["task"]["status"] == "open"

        response = await respond(client, owner_keypair, alice["acceptance_id"], "confirmed")
        assert response.status_code == 409
        assert response.json()["error"] == "ALREADY_RESOLVED"

    @pytest.mark.unit
    async def test_only_owner_may_respond(self, client, owner_keypair, alice_keypair, bob_keypair):
        _task_id, alice = await open_task_with_applicant(client, owner_keypair, alice_keypair)

        response = await respond(client, bob_keypair, alice["acceptance_id"], "confirmed", BOB_ID)
        assert response.status_code == 403
        assert response.json()["error"] == "NOT_OWNER"

    @pytest.mark.unit
    async def test_unknown_decision(self, client, owner_keypair, alice_keypair):
        _task_id, alice = await open_task_with_applicant(client, owner_keypair, alice_keypair)

        response = await respond(client, owner_keypair, alice["acceptance_id"], "maybe")
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.unit
    async def test_unknown_acceptance(self, client, owner_keypair):
        response = await respond(client, owner_keypair, "acc-missing", "confirmed")
        assert response.status_code == 404
        assert response.json()["error"] == "ACCEPTANCE_NOT_FOUND"


class TestListings:
    @pytest.mark.unit
    async def test_role_listings(self, client, owner_keypair, alice_keypair):
        _task_id, alice = await open_task_with_applicant(client, owner_keypair, alice_keypair)

        received = await client.get(
            "/acceptances",
            params={"role": "owner"},
            headers=bearer(owner_keypair, OWNER_ID, "list_my_acceptances"),
        )
        submitted = await client.get(
            "/acceptances",
            params={"role": "acceptor"},
            headers=bearer(alice_keypair, ALICE_ID, "list_my_acceptances"),
        )

        assert [a["acceptance_id"] for a in received.json()["acceptances"]] == [alice["acceptance_id"]]
        assert [a["acceptance_id"] for a in submitted.json()["acceptances"]] == [alice["acceptance_id"]]

    @pytest.mark.unit
    async def test_unknown_role(self, client, owner_keypair):
        response = await client.get(
            "/acceptances",
            params={"role": "admin"},
            headers=bearer(owner_keypair, OWNER_ID, "list_my_acceptances"),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.unit
    async def test_pending_summary(self, client, owner_keypair, alice_keypair, bob_keypair):
        task_id, _ = await open_task_with_applicant(client, owner_keypair, alice_keypair)
        await accept_task(client, bob_keypair, BOB_ID, task_id)

        response = await client.get(
            "/acceptances/pending-summary",
            headers=bearer(owner_keypair, OWNER_ID, "list_my_acceptances"),
        )
        assert response.status_code == 200
        [entry] = response.json()["tasks"]
        assert entry["task_id"] == task_id
        assert entry["task_title"] == "Paint the fence"
        assert entry["pending_count"] == 2

    @pytest.mark.unit
    async def test_listing_requires_bearer(self, client):
        response = await client.get("/acceptances", params={"role": "owner"})
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_JWS"
