import pytest

from conftest import auth_headers, identity
from errors import TransactionConflict
from settlement import SettlementEngine
from api import settle
from models import Tournament, User


@pytest.mark.asyncio
async def test_deposit_join_and_win(async_client, make_user, make_tournament):
    staff = await make_user("staff", role="staff")
    player = await make_user("player")
    rival = await make_user("rival", coin_balance=100)
    tournament = await make_tournament(entry_fee=100, prize_pool_first=1000, prize_pool_second=500)

    # Deposit and approval
    response = await async_client.post(
        "/api/wallet/requests/add",
        json={"amount_coins": 150, "amount_paid": 15, "transaction_id": "UTR-555"},
        headers=auth_headers(player),
    )
    request_id = response.json()["id"]

    response = await async_client.post(
        f"/api/wallet/requests/{request_id}/decision",
        json={"decision": "approved"},
        headers=auth_headers(staff),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "approved"
    assert response.json()["decided_by"] == staff.id

    response = await async_client.post(
        f"/api/wallet/requests/{request_id}/decision",
        json={"decision": "denied"},
        headers=auth_headers(staff),
    )
    assert response.status_code == 409
    assert response.json()["code"] == "already_decided"

    response = await async_client.get("/api/wallet", headers=auth_headers(player))
    assert response.json()["coin_balance"] == 150

    # Join
    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/join",
        json={"team_name": "Lone Wolf"},
        headers=auth_headers(player),
    )
    assert response.status_code == 200
    assert response.json()["slot_number"] == 1
    assert response.json()["team_name"] == "Lone Wolf"

    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/join", headers=auth_headers(player)
    )
    assert response.status_code == 409
    assert response.json()["reason"] == "already_joined"

    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/join", headers=auth_headers(rival)
    )
    assert response.json()["slot_number"] == 2

    response = await async_client.get("/api/me/tournaments", headers=auth_headers(player))
    joined = response.json()
    assert [(j["tournament_id"], j["slot_number"], j["status"]) for j in joined] == [
        (tournament.id, 1, "upcoming")
    ]

    # Finalize
    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/winners",
        json={"first": player.id, "second": rival.id},
        headers=auth_headers(player),
    )
    assert response.status_code == 403

    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/winners",
        json={"first": player.id, "second": player.id},
        headers=auth_headers(staff),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "duplicate_winner"

    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/winners",
        json={"first": player.id, "second": rival.id},
        headers=auth_headers(staff),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["winners"]["second"]["username"] == "rival"

    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/winners",
        json={"first": rival.id},
        headers=auth_headers(staff),
    )
    assert response.status_code == 409
    assert response.json()["code"] == "already_finalized"

    response = await async_client.get("/api/auth/me", headers=auth_headers(player))
    assert response.json()["coin_balance"] == 1050
    response = await async_client.get("/api/auth/me", headers=auth_headers(rival))
    assert response.json()["coin_balance"] == 500

    response = await async_client.get("/api/me/tournaments", headers=auth_headers(player))
    assert response.json() == []
    response = await async_client.get("/api/me/wins", headers=auth_headers(player))
    assert [(w["place"], w["prize_won"]) for w in response.json()] == [("1st", 1000)]

    response = await async_client.get("/api/me/history", headers=auth_headers(player))
    assert {i["type"] for i in response.json()} == {"Deposit", "Tournament Prize"}


@pytest.mark.asyncio
async def test_overdrawn_withdrawal_over_http(async_client, make_user, session_factory):
    staff = await make_user("staff", role="staff")
    player = await make_user("player", coin_balance=200)

    response = await async_client.post(
        "/api/wallet/requests/withdraw",
        json={"amount_coins": 150, "withdrawal_details": "IBAN DE00 1234 5678"},
        headers=auth_headers(player),
    )
    request_id = response.json()["id"]

    # The balance drops after the request was queued
    async with SettlementEngine(session_factory).transaction() as db:
        (await db.get(User, player.id)).coin_balance = 100

    response = await async_client.post(
        f"/api/wallet/requests/{request_id}/decision",
        json={"decision": "approved"},
        headers=auth_headers(staff),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "insufficient_funds"

    response = await async_client.get("/api/wallet/requests", headers=auth_headers(player))
    assert [(r["id"], r["status"]) for r in response.json()] == [(request_id, "pending")]
    response = await async_client.get("/api/wallet", headers=auth_headers(player))
    assert response.json()["coin_balance"] == 100


@pytest.mark.asyncio
async def test_unknown_ids_are_404(async_client, make_user):
    staff = await make_user("staff", role="staff")
    player = await make_user("player")

    response = await async_client.post(
        "/api/wallet/requests/missing/decision", json={"decision": "approved"}, headers=auth_headers(staff)
    )
    assert response.status_code == 404
    assert response.json()["code"] == "request_not_found"

    response = await async_client.post("/api/tournaments/missing/join", headers=auth_headers(player))
    assert response.status_code == 404
    assert response.json()["code"] == "tournament_not_found"


@pytest.mark.asyncio
async def test_staff_management(async_client, make_user):
    admin = await make_user("admin", role="admin")
    player = await make_user("player")

    staff_body = {"username": "newstaff", "email": "newstaff@example.com", "password": "password123"}
    response = await async_client.post("/api/admin/staff", json=staff_body, headers=auth_headers(player))
    assert response.status_code == 403

    response = await async_client.post("/api/admin/staff", json=staff_body, headers=auth_headers(admin))
    assert response.status_code == 200
    staff = response.json()
    assert staff["role"] == "staff"

    response = await async_client.post("/api/admin/staff", json=staff_body, headers=auth_headers(admin))
    assert response.status_code == 409

    response = await async_client.post(
        f"/api/admin/staff/{staff['id']}/status", json={"status": "blocked"}, headers=auth_headers(admin)
    )
    assert response.json()["status"] == "blocked"

    response = await async_client.post(
        "/api/auth/token", json={"username": "newstaff", "password": "password123"}
    )
    assert response.status_code == 403

    response = await async_client.post(
        f"/api/admin/staff/{staff['id']}/status", json={"status": "active"}, headers=auth_headers(admin)
    )
    assert response.json()["status"] == "active"

    response = await async_client.post(
        f"/api/admin/staff/{player.id}/status", json={"status": "blocked"}, headers=auth_headers(admin)
    )
    assert response.status_code == 404

    response = await async_client.get("/api/admin/staff", headers=auth_headers(admin))
    assert [s["username"] for s in response.json()] == ["newstaff"]


@pytest.mark.asyncio
async def test_settle_retries_conflicts_once():
    calls = []

    async def flaky(value):
        calls.append(value)
        if len(calls) == 1:
            raise TransactionConflict("lost compare-and-set")
        return value

    assert await settle(flaky, 7) == 7
    assert calls == [7, 7]

    async def always_conflicts():
        calls.append(None)
        raise TransactionConflict()

    calls.clear()
    with pytest.raises(TransactionConflict):
        await settle(always_conflicts)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_blank_first_place_is_rejected(async_client, settlement, make_user, make_tournament, fetch):
    tournament = await make_tournament(entry_fee=0)
    staff = await make_user("staff", role="staff")
    player = await make_user("player")
    await settlement.join(identity(player), tournament.id)

    for winners in ({"first": ""}, {"first": player.id, "second": ""}):
        response = await async_client.post(
            f"/api/tournaments/{tournament.id}/winners", json=winners, headers=auth_headers(staff)
        )
        assert response.status_code == 422

    stored = await fetch(Tournament, tournament.id)
    assert stored.status == "upcoming"
    assert (await fetch(User, player.id)).coin_balance == 0
