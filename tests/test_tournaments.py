import datetime

import pytest

import tournament_logic
from conftest import auth_headers, identity
from models import PointsTableEntry, TournamentStatus, utcnow


def tournament_payload(category_id, **overrides):
    start = utcnow() + datetime.timedelta(days=2)
    payload = {
        "name": "Friday Scrims",
        "category_id": category_id,
        "description": "Four rounds, Erangel and Miramar",
        "start_date": start.isoformat(),
        "end_date": (start + datetime.timedelta(hours=2)).isoformat(),
        "entry_fee": 25,
        "max_players": 50,
        "prize_pool_first": 600,
        "prize_pool_second": 300,
        "prize_pool_third": 100,
    }
    payload.update(overrides)
    return payload


# ──────────────────────────────────────────────
# LIFECYCLE
# ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_and_list_tournaments(async_client, make_user):
    admin = await make_user("admin", role="admin")
    headers = auth_headers(admin)

    response = await async_client.post("/api/categories", json={"name": "BGMI"}, headers=headers)
    assert response.status_code == 200
    category_id = response.json()["id"]

    response = await async_client.post("/api/categories", json={"name": "BGMI"}, headers=headers)
    assert response.status_code == 400

    response = await async_client.post(
        "/api/tournaments", json=tournament_payload(category_id), headers=headers
    )
    assert response.status_code == 200
    created = response.json()
    assert created["status"] == "upcoming"
    assert created["registered_count"] == 0
    assert created["rules"] == "Standard tournament rules apply."
    assert created["created_by"] == admin.id
    assert "room_id" not in created

    response = await async_client.get("/api/tournaments", params={"status": "upcoming"})
    assert [t["id"] for t in response.json()] == [created["id"]]
    response = await async_client.get("/api/tournaments", params={"status": "live"})
    assert response.json() == []


@pytest.mark.asyncio
async def test_tournament_form_rules(async_client, make_user):
    admin = await make_user("admin", role="admin")
    headers = auth_headers(admin)
    response = await async_client.post("/api/categories", json={"name": "Valorant"}, headers=headers)
    category_id = response.json()["id"]

    start = utcnow() + datetime.timedelta(days=2)
    bad_dates = tournament_payload(
        category_id, end_date=(start - datetime.timedelta(hours=1)).isoformat(), start_date=start.isoformat()
    )
    assert (await async_client.post("/api/tournaments", json=bad_dates, headers=headers)).status_code == 422

    no_prize = tournament_payload(category_id, prize_pool_third=0)
    assert (await async_client.post("/api/tournaments", json=no_prize, headers=headers)).status_code == 422

    negative_fee = tournament_payload(category_id, entry_fee=-5)
    assert (await async_client.post("/api/tournaments", json=negative_fee, headers=headers)).status_code == 422

    unknown = tournament_payload("no-such-category")
    assert (await async_client.post("/api/tournaments", json=unknown, headers=headers)).status_code == 404


@pytest.mark.asyncio
async def test_only_admins_create_tournaments(async_client, make_user):
    staff = await make_user("staff", role="staff")
    response = await async_client.post(
        "/api/tournaments", json=tournament_payload("whatever"), headers=auth_headers(staff)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_room_info_sets_live_and_is_private(async_client, settlement, make_user, make_tournament):
    tournament = await make_tournament(entry_fee=0)
    staff = await make_user("staff", role="staff")
    player = await make_user("player")
    stranger = await make_user("stranger")
    await settlement.join(identity(player), tournament.id)

    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/room",
        json={"room_id": "ROOM-42", "room_password": "hunter2"},
        headers=auth_headers(staff),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "live"

    response = await async_client.get(f"/api/tournaments/{tournament.id}", headers=auth_headers(player))
    assert response.json()["room_id"] == "ROOM-42"
    assert response.json()["room_password"] == "hunter2"

    response = await async_client.get(f"/api/tournaments/{tournament.id}", headers=auth_headers(stranger))
    assert "room_password" not in response.json()

    response = await async_client.get(f"/api/tournaments/{tournament.id}")
    assert response.status_code == 200
    assert "room_id" not in response.json()

    # Live tournaments are closed for registration
    response = await async_client.post(
        f"/api/tournaments/{tournament.id}/join", headers=auth_headers(stranger)
    )
    assert response.status_code == 400
    assert response.json()["reason"] == "closed"


@pytest.mark.asyncio
async def test_cancel(db, make_tournament):
    tournament = await make_tournament()

    cancelled = await tournament_logic.cancel_tournament(db, tournament.id)
    assert cancelled.status == TournamentStatus.cancelled.value

    with pytest.raises(ValueError, match="Cannot cancel a cancelled tournament"):
        await tournament_logic.cancel_tournament(db, tournament.id)
    with pytest.raises(ValueError):
        await tournament_logic.set_room_info(db, tournament.id, "r", "p")


@pytest.mark.asyncio
async def test_missing_tournament(db, async_client):
    with pytest.raises(LookupError):
        await tournament_logic.get_tournament(db, "missing")
    response = await async_client.get("/api/tournaments/missing")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_registrations_listing(async_client, settlement, make_user, make_tournament):
    tournament = await make_tournament(entry_fee=0)
    staff = await make_user("staff", role="staff")
    players = [await make_user(f"p{i}") for i in range(3)]
    for player in players:
        await settlement.join(identity(player), tournament.id)

    response = await async_client.get(
        f"/api/tournaments/{tournament.id}/registrations", headers=auth_headers(staff)
    )
    assert response.status_code == 200
    assert [r["slot_number"] for r in response.json()] == [1, 2, 3]

    response = await async_client.get(
        f"/api/tournaments/{tournament.id}/registrations", headers=auth_headers(players[0])
    )
    assert response.status_code == 403


# ──────────────────────────────────────────────
# POINTS TABLE
# ──────────────────────────────────────────────

def test_ranking_ties_keep_input_order():
    entries = [
        PointsTableEntry(user_id="a", player_name="A", wins=1, kills=3, total_points=20, entry_order=0),
        PointsTableEntry(user_id="b", player_name="B", wins=2, kills=9, total_points=35, entry_order=1),
        PointsTableEntry(user_id="c", player_name="C", wins=1, kills=4, total_points=20, entry_order=2),
        PointsTableEntry(user_id="d", player_name="D", wins=0, kills=1, total_points=5, entry_order=3),
    ]
    ranked = tournament_logic.ranked_points_table(list(reversed(entries)))
    assert [(r["rank"], r["user_id"]) for r in ranked] == [(1, "b"), (2, "a"), (3, "c"), (4, "d")]


@pytest.mark.asyncio
async def test_points_upsert_overwrites_by_player(db, settlement, make_user, make_tournament):
    tournament = await make_tournament(entry_fee=0)
    alice = await make_user("alice")
    bob = await make_user("bob")
    for player in (alice, bob):
        await settlement.join(identity(player), tournament.id)

    await tournament_logic.upsert_points(db, tournament.id, [
        {"user_id": alice.id, "player_name": "Alice", "wins": 1, "kills": 5, "total_points": 15},
        {"user_id": bob.id, "player_name": "Bob", "wins": 0, "kills": 2, "total_points": 4},
    ])
    table = await tournament_logic.upsert_points(db, tournament.id, [
        {"user_id": bob.id, "player_name": "Bob", "wins": 2, "kills": 10, "total_points": 30},
    ])

    assert [(r["rank"], r["player_name"], r["total_points"]) for r in table] == [
        (1, "Bob", 30), (2, "Alice", 15),
    ]


@pytest.mark.asyncio
async def test_points_ties_follow_submission_order(db, settlement, make_user, make_tournament):
    tournament = await make_tournament(entry_fee=0)
    alice = await make_user("alice")
    bob = await make_user("bob")
    carol = await make_user("carol")
    for player in (alice, bob, carol):
        await settlement.join(identity(player), tournament.id)

    def row(user, name):
        return {"user_id": user.id, "player_name": name, "total_points": 10}

    await tournament_logic.upsert_points(db, tournament.id, [row(alice, "Alice"), row(bob, "Bob")])
    table = await tournament_logic.upsert_points(db, tournament.id, [row(carol, "Carol")])
    # A later batch ranks after everything already submitted
    assert [r["player_name"] for r in table] == ["Alice", "Bob", "Carol"]

    table = await tournament_logic.upsert_points(
        db, tournament.id, [row(bob, "Bob"), row(alice, "Alice"), row(carol, "Carol")]
    )
    assert [(r["rank"], r["player_name"]) for r in table] == [(1, "Bob"), (2, "Alice"), (3, "Carol")]


@pytest.mark.asyncio
async def test_points_rejects_unregistered_player(db, make_user, make_tournament):
    tournament = await make_tournament()
    outsider = await make_user("outsider")
    with pytest.raises(ValueError):
        await tournament_logic.upsert_points(db, tournament.id, [
            {"user_id": outsider.id, "player_name": "Outsider", "total_points": 3},
        ])
    assert await tournament_logic.get_points_table(db, tournament.id) == []


@pytest.mark.asyncio
async def test_points_api(async_client, settlement, make_user, make_tournament):
    tournament = await make_tournament(entry_fee=0)
    staff = await make_user("staff", role="staff")
    alice = await make_user("alice")
    await settlement.join(identity(alice), tournament.id)

    body = {"entries": [{"user_id": alice.id, "player_name": "Alice", "kills": 7, "total_points": 12}]}
    response = await async_client.put(
        f"/api/tournaments/{tournament.id}/points", json=body, headers=auth_headers(alice)
    )
    assert response.status_code == 403

    response = await async_client.put(
        f"/api/tournaments/{tournament.id}/points", json=body, headers=auth_headers(staff)
    )
    assert response.status_code == 200

    duplicate = {"entries": body["entries"] * 2}
    response = await async_client.put(
        f"/api/tournaments/{tournament.id}/points", json=duplicate, headers=auth_headers(staff)
    )
    assert response.status_code == 422

    response = await async_client.get(f"/api/tournaments/{tournament.id}/points")
    assert response.json() == [{
        "rank": 1, "user_id": alice.id, "player_name": "Alice",
        "wins": 0, "kills": 7, "total_points": 12,
    }]
