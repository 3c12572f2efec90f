# settlement.py — Atomic coin-ledger and prize-settlement operations
#
# Every public method opens its own session from the injected factory and runs
# inside exactly one database transaction. All reads that feed a decision are
# made inside that transaction; every state transition is a compare-and-set
# UPDATE so that a concurrent writer is detected instead of overwritten.
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import (
    AccountNotFound, AlreadyDecided, AlreadyFinalized, DuplicateWinner,
    InsufficientFunds, InvalidTournamentState, JoinRejected, NotRegistered,
    RequestNotFound, SettlementError, TournamentNotFound, TransactionConflict,
    WinnerRequired,
)
from models import (
    CoinRequest, JoinedTournament, Registration, RequestKind, RequestStatus,
    Role, Tournament, TournamentStatus, User, WonTournament, utcnow,
)

logger = logging.getLogger(__name__)

# Finishing places in payout order: (winners key, tournament prize column, label)
PLACES = (
    ("first", "prize_pool_first", "1st"),
    ("second", "prize_pool_second", "2nd"),
    ("third", "prize_pool_third", "3rd"),
)

NO_UPDATE = {"synchronize_session": False}


@dataclass(frozen=True)
class Identity:
    """A resolved caller: who is acting and with which role."""
    user_id: str
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.staff.value, Role.admin.value)


class SettlementEngine:
    """Applies wallet decisions, tournament joins and prize payouts all-or-nothing."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One session, one transaction. Storage aborts become TransactionConflict."""
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    yield db
            except SettlementError:
                raise
            except (OperationalError, IntegrityError) as e:
                logger.warning(f"Settlement transaction aborted by storage: {e.orig}")
                raise TransactionConflict(str(e.orig)) from e

    # ──────────────────────────────────────────────
    # LOCKING READS
    # ──────────────────────────────────────────────

    @staticmethod
    async def _lock_user(db: AsyncSession, user_id: str) -> Optional[User]:
        result = await db.execute(select(User).where(User.id == user_id).with_for_update())
        return result.scalars().first()

    @staticmethod
    async def _lock_tournament(db: AsyncSession, tournament_id: str) -> Optional[Tournament]:
        result = await db.execute(
            select(Tournament).where(Tournament.id == tournament_id).with_for_update()
        )
        return result.scalars().first()

    # ──────────────────────────────────────────────
    # COIN REQUEST DECISION
    # ──────────────────────────────────────────────

    async def decide(self, identity: Identity, request_id: str, decision: str) -> CoinRequest:
        """
        Approve or deny a pending coin request.

        Approving an ``add`` credits the owner; approving a ``withdraw`` debits
        them and fails with InsufficientFunds when the balance would go
        negative. Denying only closes the request.
        """
        decision = RequestStatus(decision)
        if decision == RequestStatus.pending:
            raise ValueError("Decision must be 'approved' or 'denied'")

        async with self.transaction() as db:
            result = await db.execute(
                select(CoinRequest).where(CoinRequest.id == request_id).with_for_update()
            )
            request = result.scalars().first()
            if request is None:
                raise RequestNotFound(request_id)
            if request.status != RequestStatus.pending.value:
                raise AlreadyDecided(request_id, request.status)

            user = await self._lock_user(db, request.user_id)
            if user is None:
                raise AccountNotFound(request.user_id)

            delta = 0
            if decision == RequestStatus.approved:
                if request.kind == RequestKind.add.value:
                    delta = request.amount_coins
                else:
                    delta = -request.amount_coins
                if user.coin_balance + delta < 0:
                    logger.warning(
                        f"Rejected withdrawal {request_id}: balance {user.coin_balance} < {request.amount_coins}"
                    )
                    raise InsufficientFunds(user.coin_balance, request.amount_coins)

            claimed = await db.execute(
                update(CoinRequest)
                .where(
                    CoinRequest.id == request_id,
                    CoinRequest.status == RequestStatus.pending.value,
                )
                .values(status=decision.value, decision_date=utcnow(), decided_by=identity.user_id)
                .execution_options(**NO_UPDATE)
            )
            if claimed.rowcount != 1:
                current = await db.scalar(select(CoinRequest.status).where(CoinRequest.id == request_id))
                raise AlreadyDecided(request_id, current)

            if delta:
                moved = await db.execute(
                    update(User)
                    .where(User.id == user.id, User.coin_balance + delta >= 0)
                    .values(coin_balance=User.coin_balance + delta)
                    .execution_options(**NO_UPDATE)
                )
                if moved.rowcount != 1:
                    balance = await db.scalar(select(User.coin_balance).where(User.id == user.id))
                    raise InsufficientFunds(balance, request.amount_coins)

            await db.refresh(request)

        logger.info(
            f"Coin request {request_id} ({request.kind} {request.amount_coins}) "
            f"{decision.value} by {identity.user_id}"
        )
        return request

    # ──────────────────────────────────────────────
    # TOURNAMENT JOIN
    # ──────────────────────────────────────────────

    @staticmethod
    def _check_join(tournament: Tournament, user: User, existing: Optional[Registration]):
        if tournament.status != TournamentStatus.upcoming.value:
            raise JoinRejected(JoinRejected.CLOSED)
        if existing is not None:
            raise JoinRejected(JoinRejected.ALREADY_JOINED)
        if tournament.registered_count >= tournament.max_players:
            raise JoinRejected(JoinRejected.FULL)
        if user.coin_balance < tournament.entry_fee:
            raise JoinRejected(JoinRejected.INSUFFICIENT_FUNDS)

    async def join(
        self,
        identity: Identity,
        tournament_id: str,
        team_name: Optional[str] = None,
        player_ids: Optional[list[str]] = None,
    ) -> Registration:
        """
        Enter the caller into an upcoming tournament and charge the entry fee.

        The slot number is taken from the registered count read inside the
        transaction. Returns the new Registration.
        """
        async with self.transaction() as db:
            tournament = await self._lock_tournament(db, tournament_id)
            if tournament is None:
                raise TournamentNotFound(tournament_id)
            user = await self._lock_user(db, identity.user_id)
            if user is None:
                raise AccountNotFound(identity.user_id)

            existing = await db.get(Registration, (tournament_id, user.id))
            try:
                self._check_join(tournament, user, existing)
            except JoinRejected as e:
                logger.warning(f"Join rejected for {user.username} in {tournament_id}: {e.reason}")
                raise

            seen = tournament.registered_count
            bumped = await db.execute(
                update(Tournament)
                .where(
                    Tournament.id == tournament_id,
                    Tournament.status == TournamentStatus.upcoming.value,
                    Tournament.registered_count == seen,
                )
                .values(registered_count=seen + 1)
                .execution_options(**NO_UPDATE)
            )
            if bumped.rowcount != 1:
                # Someone else registered first; report what changed
                await db.refresh(tournament)
                existing = await db.get(Registration, (tournament_id, user.id), populate_existing=True)
                self._check_join(tournament, user, existing)
                raise TransactionConflict(f"registered_count moved from {seen}")

            fee = tournament.entry_fee
            if fee:
                charged = await db.execute(
                    update(User)
                    .where(User.id == user.id, User.coin_balance >= fee)
                    .values(coin_balance=User.coin_balance - fee)
                    .execution_options(**NO_UPDATE)
                )
                if charged.rowcount != 1:
                    raise JoinRejected(JoinRejected.INSUFFICIENT_FUNDS)

            now = utcnow()
            slot_number = seen + 1
            registration = Registration(
                tournament_id=tournament_id,
                user_id=user.id,
                team_name=team_name or user.username,
                player_ids=list(player_ids or []),
                slot_number=slot_number,
                registration_date=now,
            )
            db.add(registration)
            db.add(JoinedTournament(
                user_id=user.id,
                tournament_id=tournament_id,
                name=tournament.name,
                category_id=tournament.category_id,
                start_date=tournament.start_date,
                end_date=tournament.end_date,
                entry_fee=fee,
                slot_number=slot_number,
                joined_at=now,
            ))
            await db.flush()

        logger.info(f"{user.username} joined {tournament.name} in slot {slot_number} (fee {fee})")
        return registration

    # ──────────────────────────────────────────────
    # TOURNAMENT FINALIZATION
    # ──────────────────────────────────────────────

    async def finalize(self, identity: Identity, tournament_id: str, winners: dict) -> Tournament:
        """
        Record up to three winners, pay their prize tiers and swap each
        winner's joined-tournament entry for a trophy record. Runs once per
        tournament; a second call fails with AlreadyFinalized.
        """
        placed = [
            (key, column, label, winners[key])
            for key, column, label in PLACES
            if winners.get(key)
        ]
        if not winners.get("first"):
            raise WinnerRequired()
        seen_ids: set[str] = set()
        for _, _, _, user_id in placed:
            if user_id in seen_ids:
                raise DuplicateWinner(user_id)
            seen_ids.add(user_id)

        async with self.transaction() as db:
            tournament = await self._lock_tournament(db, tournament_id)
            if tournament is None:
                raise TournamentNotFound(tournament_id)
            if tournament.status == TournamentStatus.completed.value:
                raise AlreadyFinalized(tournament_id)
            if tournament.status == TournamentStatus.cancelled.value:
                raise InvalidTournamentState(tournament_id, tournament.status)

            for _, _, _, user_id in placed:
                if await db.get(Registration, (tournament_id, user_id)) is None:
                    raise NotRegistered(user_id, tournament_id)

            # Lock winner rows in a stable order
            accounts: dict[str, User] = {}
            for user_id in sorted(seen_ids):
                user = await self._lock_user(db, user_id)
                if user is None:
                    raise AccountNotFound(user_id)
                accounts[user_id] = user

            resolved = {
                key: {"user_id": user_id, "username": accounts[user_id].username}
                for key, _, _, user_id in placed
            }
            claimed = await db.execute(
                update(Tournament)
                .where(
                    Tournament.id == tournament_id,
                    Tournament.status.in_(
                        [TournamentStatus.upcoming.value, TournamentStatus.live.value]
                    ),
                )
                .values(status=TournamentStatus.completed.value, winners=resolved)
                .execution_options(**NO_UPDATE)
            )
            if claimed.rowcount != 1:
                await db.refresh(tournament)
                if tournament.status == TournamentStatus.completed.value:
                    raise AlreadyFinalized(tournament_id)
                raise InvalidTournamentState(tournament_id, tournament.status)

            now = utcnow()
            for _, column, label, user_id in placed:
                prize = getattr(tournament, column) or 0
                await db.execute(
                    update(User)
                    .where(User.id == user_id)
                    .values(coin_balance=User.coin_balance + prize)
                    .execution_options(**NO_UPDATE)
                )
                await db.execute(
                    delete(JoinedTournament)
                    .where(
                        JoinedTournament.user_id == user_id,
                        JoinedTournament.tournament_id == tournament_id,
                    )
                    .execution_options(**NO_UPDATE)
                )
                db.add(WonTournament(
                    user_id=user_id,
                    tournament_id=tournament_id,
                    name=tournament.name,
                    prize_won=prize,
                    place=label,
                    completion_date=now,
                ))
            await db.flush()
            await db.refresh(tournament)

        payout = ", ".join(
            f"{label}={accounts[user_id].username}" for _, _, label, user_id in placed
        )
        logger.info(f"Finalized {tournament.name} by {identity.user_id}: {payout}")
        return tournament
