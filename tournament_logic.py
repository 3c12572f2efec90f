# tournament_logic.py — Tournament lifecycle, points table & serialization
# Money never moves here: joins and payouts go through settlement.py.
import datetime
import logging
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from models import (
    Category, JoinedTournament, PointsTableEntry, Registration, Tournament,
    TournamentStatus, WonTournament,
)

logger = logging.getLogger(__name__)

OPEN_STATUSES = (TournamentStatus.upcoming.value, TournamentStatus.live.value)


def as_naive_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════
# CATEGORIES
# ══════════════════════════════════════════════════════════════

async def create_category(db: AsyncSession, name: str, image_url: str | None = None) -> Category:
    result = await db.execute(select(Category).filter(Category.name == name))
    if result.scalars().first():
        raise ValueError(f"Category '{name}' already exists")
    category = Category(name=name, image_url=image_url)
    db.add(category)
    await db.commit()
    await db.refresh(category)
    return category


async def list_categories(db: AsyncSession) -> list[Category]:
    result = await db.execute(select(Category).order_by(Category.name))
    return list(result.scalars().all())


# ══════════════════════════════════════════════════════════════
# LIFECYCLE: upcoming → live → completed, or → cancelled
# ══════════════════════════════════════════════════════════════

async def get_tournament(db: AsyncSession, tournament_id: str) -> Tournament:
    result = await db.execute(
        select(Tournament)
        .filter(Tournament.id == tournament_id)
        .execution_options(populate_existing=True)
    )
    tournament = result.scalars().first()
    if not tournament:
        raise LookupError("Tournament not found")
    return tournament


async def list_tournaments(db: AsyncSession, status: str | None = None) -> list[Tournament]:
    query = select(Tournament).order_by(Tournament.start_date.desc())
    if status:
        query = query.filter(Tournament.status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def create_tournament(db: AsyncSession, data: dict, created_by: str | None = None) -> Tournament:
    """Create an upcoming tournament. ``data`` holds TournamentCreate fields."""
    result = await db.execute(select(Category).filter(Category.id == data["category_id"]))
    if not result.scalars().first():
        raise LookupError("Category not found")

    tournament = Tournament(
        name=data["name"],
        category_id=data["category_id"],
        description=data.get("description"),
        rules=data.get("rules") or "Standard tournament rules apply.",
        start_date=as_naive_utc(data["start_date"]),
        end_date=as_naive_utc(data["end_date"]),
        entry_fee=data["entry_fee"],
        max_players=data["max_players"],
        registered_count=0,
        prize_pool_first=data["prize_pool_first"],
        prize_pool_second=data["prize_pool_second"],
        prize_pool_third=data["prize_pool_third"],
        status=TournamentStatus.upcoming.value,
        created_by=created_by,
    )
    db.add(tournament)
    await db.commit()
    await db.refresh(tournament)
    logger.info(f"Created tournament {tournament.name} ({tournament.id})")
    return tournament


async def _transition(db: AsyncSession, tournament_id: str, action: str, **values) -> Tournament:
    """Apply ``values`` only while the tournament is still upcoming or live."""
    result = await db.execute(
        update(Tournament)
        .where(Tournament.id == tournament_id, Tournament.status.in_(OPEN_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        tournament = await get_tournament(db, tournament_id)
        raise ValueError(f"Cannot {action} a {tournament.status} tournament")
    await db.commit()
    return await get_tournament(db, tournament_id)


async def set_room_info(db: AsyncSession, tournament_id: str, room_id: str, room_password: str) -> Tournament:
    """Publish room credentials; the tournament goes live."""
    tournament = await _transition(
        db, tournament_id, "set room info on",
        room_id=room_id, room_password=room_password, status=TournamentStatus.live.value,
    )
    logger.info(f"Tournament {tournament.name} is live in room {room_id}")
    return tournament


async def cancel_tournament(db: AsyncSession, tournament_id: str) -> Tournament:
    # TODO: refund entry fees once cancellation refunds are agreed (see DESIGN.md)
    tournament = await _transition(
        db, tournament_id, "cancel", status=TournamentStatus.cancelled.value,
    )
    logger.info(f"Tournament {tournament.name} cancelled with {tournament.registered_count} registrations")
    return tournament


async def is_registered(db: AsyncSession, tournament_id: str, user_id: str) -> bool:
    return await db.get(Registration, (tournament_id, user_id)) is not None


async def list_registrations(db: AsyncSession, tournament_id: str) -> list[Registration]:
    await get_tournament(db, tournament_id)
    result = await db.execute(
        select(Registration)
        .filter(Registration.tournament_id == tournament_id)
        .order_by(Registration.registration_date.asc(), Registration.slot_number.asc())
    )
    return list(result.scalars().all())


async def list_joined(db: AsyncSession, user_id: str) -> list[dict]:
    """The player's active entries, with live status and room credentials."""
    result = await db.execute(
        select(JoinedTournament, Tournament)
        .join(Tournament, Tournament.id == JoinedTournament.tournament_id)
        .filter(JoinedTournament.user_id == user_id)
        .order_by(JoinedTournament.start_date.desc())
    )
    joined = []
    for j, t in result.all():
        joined.append({
            "tournament_id": j.tournament_id,
            "name": j.name,
            "category_id": j.category_id,
            "start_date": _iso(j.start_date),
            "end_date": _iso(j.end_date),
            "entry_fee": j.entry_fee,
            "slot_number": j.slot_number,
            "joined_at": _iso(j.joined_at),
            "status": t.status,
            "room_id": t.room_id,
            "room_password": t.room_password,
        })
    return joined


async def list_wins(db: AsyncSession, user_id: str) -> list[dict]:
    result = await db.execute(
        select(WonTournament)
        .filter(WonTournament.user_id == user_id)
        .order_by(WonTournament.completion_date.desc())
    )
    return [
        {
            "tournament_id": w.tournament_id,
            "name": w.name,
            "prize_won": w.prize_won,
            "place": w.place,
            "completion_date": _iso(w.completion_date),
        }
        for w in result.scalars().all()
    ]


# ══════════════════════════════════════════════════════════════
# POINTS TABLE
# ══════════════════════════════════════════════════════════════

async def upsert_points(db: AsyncSession, tournament_id: str, entries: list[dict]) -> list[dict]:
    """
    Overwrite the points of each submitted player, keyed by user id.

    Entries for players not in ``entries`` are left untouched. Submitted
    entries are ordered after every stored one, in the order given, so equal
    totals rank by when and where each player was last submitted.
    """
    await get_tournament(db, tournament_id)

    last_order = await db.scalar(
        select(func.max(PointsTableEntry.entry_order))
        .filter(PointsTableEntry.tournament_id == tournament_id)
    )
    start = 0 if last_order is None else last_order + 1

    for order, entry in enumerate(entries, start=start):
        user_id = entry["user_id"]
        if not await is_registered(db, tournament_id, user_id):
            await db.rollback()
            raise ValueError(f"Player {user_id} is not registered in this tournament")

        row = await db.get(PointsTableEntry, (tournament_id, user_id))
        if row is None:
            row = PointsTableEntry(tournament_id=tournament_id, user_id=user_id)
            db.add(row)
        row.player_name = entry["player_name"]
        row.wins = entry.get("wins", 0)
        row.kills = entry.get("kills", 0)
        row.total_points = entry.get("total_points", 0)
        row.entry_order = order

    await db.commit()
    logger.info(f"Points table for {tournament_id} updated ({len(entries)} entries)")
    return await get_points_table(db, tournament_id)


def ranked_points_table(entries: list[PointsTableEntry]) -> list[dict]:
    """
    Derive ranks: highest total_points first. Equal totals keep their input
    order; Python's sort is stable, so ordering by entry_order first and then
    by points gives exactly that.
    """
    by_input = sorted(entries, key=lambda e: e.entry_order)
    ranked = sorted(by_input, key=lambda e: e.total_points, reverse=True)
    return [
        {"rank": i + 1, **serialize_points_entry(e)}
        for i, e in enumerate(ranked)
    ]


async def get_points_table(db: AsyncSession, tournament_id: str) -> list[dict]:
    await get_tournament(db, tournament_id)
    result = await db.execute(
        select(PointsTableEntry).filter(PointsTableEntry.tournament_id == tournament_id)
    )
    return ranked_points_table(list(result.scalars().all()))


# ══════════════════════════════════════════════════════════════
# SERIALIZATION HELPERS
# ══════════════════════════════════════════════════════════════

def _iso(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_tournament(t: Tournament, include_room: bool = False) -> dict:
    data = {
        "id": t.id,
        "name": t.name,
        "category_id": t.category_id,
        "description": t.description,
        "rules": t.rules,
        "start_date": _iso(t.start_date),
        "end_date": _iso(t.end_date),
        "entry_fee": t.entry_fee,
        "max_players": t.max_players,
        "registered_count": t.registered_count,
        "is_full": t.registered_count >= t.max_players,
        "prize_pool_first": t.prize_pool_first,
        "prize_pool_second": t.prize_pool_second,
        "prize_pool_third": t.prize_pool_third,
        "status": t.status,
        "winners": t.winners,
        "created_by": t.created_by,
        "created_at": _iso(t.created_at),
    }
    if include_room:
        data["room_id"] = t.room_id
        data["room_password"] = t.room_password
    return data


def serialize_registration(r: Registration) -> dict:
    return {
        "tournament_id": r.tournament_id,
        "user_id": r.user_id,
        "team_name": r.team_name,
        "player_ids": r.player_ids or [],
        "slot_number": r.slot_number,
        "registration_date": _iso(r.registration_date),
    }


def serialize_points_entry(e: PointsTableEntry) -> dict:
    return {
        "user_id": e.user_id,
        "player_name": e.player_name,
        "wins": e.wins,
        "kills": e.kills,
        "total_points": e.total_points,
    }
