# ledger.py — Coin request intake and wallet history
#
# Requests are only *created* here. Their one-way pending → approved/denied
# transition and every balance change belong to settlement.py.
import datetime
import logging
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from models import (
    CoinRequest, JoinedTournament, RequestKind, RequestStatus, Tournament,
    TournamentStatus, User, WonTournament, utcnow,
)

logger = logging.getLogger(__name__)

HISTORY_FILTERS = ("all", "deposits", "withdrawals", "entries", "prizes")

_TYPE_BY_FILTER = {
    "deposits": "Deposit",
    "withdrawals": "Withdrawal",
    "entries": "Tournament Entry",
    "prizes": "Tournament Prize",
}

# Callers keep sessions open across engine commits; reads must not reuse stale rows.
FRESH = {"populate_existing": True}


async def submit_add_request(
    db: AsyncSession, user: User, amount_coins: int, amount_paid: int, transaction_id: str,
) -> CoinRequest:
    request = CoinRequest(
        user_id=user.id,
        username=user.username,
        kind=RequestKind.add.value,
        amount_coins=amount_coins,
        amount_paid=amount_paid,
        transaction_id=transaction_id,
        status=RequestStatus.pending.value,
        request_date=utcnow(),
    )
    db.add(request)
    await db.commit()
    await db.refresh(request)
    logger.info(f"{user.username} requested to add {amount_coins} coins (txn {transaction_id})")
    return request


async def submit_withdraw_request(
    db: AsyncSession, user: User, amount_coins: int, withdrawal_details: str,
) -> CoinRequest:
    """
    Queue a withdrawal. The balance check here only spares staff an obviously
    doomed request; approval re-checks the balance inside its transaction.
    """
    await db.refresh(user)
    if user.coin_balance < amount_coins:
        raise ValueError("You do not have enough coins to make this withdrawal.")

    request = CoinRequest(
        user_id=user.id,
        username=user.username,
        kind=RequestKind.withdraw.value,
        amount_coins=amount_coins,
        withdrawal_details=withdrawal_details,
        status=RequestStatus.pending.value,
        request_date=utcnow(),
    )
    db.add(request)
    await db.commit()
    await db.refresh(request)
    logger.info(f"{user.username} requested to withdraw {amount_coins} coins")
    return request


async def list_user_requests(db: AsyncSession, user_id: str, kind: str | None = None) -> list[CoinRequest]:
    query = (
        select(CoinRequest)
        .filter(CoinRequest.user_id == user_id)
        .order_by(CoinRequest.request_date.desc())
        .execution_options(**FRESH)
    )
    if kind:
        query = query.filter(CoinRequest.kind == kind)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_pending_requests(db: AsyncSession) -> list[CoinRequest]:
    result = await db.execute(
        select(CoinRequest)
        .filter(CoinRequest.status == RequestStatus.pending.value)
        .order_by(CoinRequest.request_date.asc())
        .execution_options(**FRESH)
    )
    return list(result.scalars().all())


async def list_decided_requests(db: AsyncSession, kind: str | None = None) -> list[CoinRequest]:
    query = (
        select(CoinRequest)
        .filter(CoinRequest.status != RequestStatus.pending.value)
        .order_by(CoinRequest.decision_date.desc())
        .execution_options(**FRESH)
    )
    if kind:
        query = query.filter(CoinRequest.kind == kind)
    result = await db.execute(query)
    return list(result.scalars().all())


# ──────────────────────────────────────────────
# HISTORY
# ──────────────────────────────────────────────

def _request_item(r: CoinRequest, with_user: bool = False) -> dict:
    deposit = r.kind == RequestKind.add.value
    item = {
        "id": r.id,
        "date": r.request_date,
        "type": "Deposit" if deposit else "Withdrawal",
        "amount": r.amount_coins if deposit else -r.amount_coins,
        "status": r.status.capitalize(),
    }
    if with_user:
        item["user"] = r.username
    return item


def _newest_first(items: list[dict]) -> list[dict]:
    items.sort(key=lambda i: i["date"] or datetime.datetime.min, reverse=True)
    for item in items:
        item["date"] = item["date"].isoformat() if item["date"] else None
    return items


async def user_history(db: AsyncSession, user_id: str) -> list[dict]:
    """Deposits, withdrawals, active entries and prizes for one player, newest first."""
    history = [_request_item(r) for r in await list_user_requests(db, user_id)]

    result = await db.execute(
        select(JoinedTournament)
        .filter(JoinedTournament.user_id == user_id)
        .execution_options(**FRESH)
    )
    for j in result.scalars().all():
        history.append({
            "id": f"joined-{j.tournament_id}",
            "date": j.start_date,
            "type": "Tournament Entry",
            "amount": -j.entry_fee,
            "status": "Completed",
            "title": j.name,
        })

    result = await db.execute(
        select(WonTournament)
        .filter(WonTournament.user_id == user_id)
        .execution_options(**FRESH)
    )
    for w in result.scalars().all():
        history.append({
            "id": f"won-{w.tournament_id}",
            "date": w.completion_date,
            "type": "Tournament Prize",
            "amount": w.prize_won,
            "status": "Completed",
            "title": f"{w.name} ({w.place} Place)",
        })

    return _newest_first(history)


async def admin_history(db: AsyncSession, filter_type: str = "all") -> list[dict]:
    """
    Platform-wide money movements: coin requests, entry-fee income per
    tournament and prize payouts. Entry fees count as income (positive) and
    prizes as outflow (negative).
    """
    if filter_type not in HISTORY_FILTERS:
        raise ValueError(f"Unknown history filter: {filter_type}")

    result = await db.execute(select(CoinRequest).execution_options(**FRESH))
    history = [_request_item(r, with_user=True) for r in result.scalars().all()]

    result = await db.execute(select(Tournament).execution_options(**FRESH))
    for t in result.scalars().all():
        if t.registered_count > 0 and t.entry_fee > 0:
            history.append({
                "id": f"entry-{t.id}",
                "date": t.start_date,
                "type": "Tournament Entry",
                "amount": t.entry_fee * t.registered_count,
                "status": t.status.capitalize(),
                "user": f"{t.name} ({t.registered_count} players)",
            })
        if t.status == TournamentStatus.completed.value and t.winners:
            for place, prize in (("first", t.prize_pool_first), ("second", t.prize_pool_second),
                                  ("third", t.prize_pool_third)):
                winner = t.winners.get(place)
                if winner:
                    history.append({
                        "id": f"prize-{place}-{t.id}",
                        "date": t.end_date,
                        "type": "Tournament Prize",
                        "amount": -prize,
                        "status": "Completed",
                        "user": winner["username"],
                    })

    if filter_type != "all":
        wanted = _TYPE_BY_FILTER[filter_type]
        history = [item for item in history if item["type"] == wanted]
    return _newest_first(history)
