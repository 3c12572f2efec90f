from sqlalchemy import (
    JSON, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
import uuid
import datetime
import enum

Base = declarative_base()


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so we never store it."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────
# ENUMS
# ──────────────────────────────────────────────

class Role(str, enum.Enum):
    player = "player"
    staff = "staff"
    admin = "admin"


class AccountStatus(str, enum.Enum):
    active = "active"
    blocked = "blocked"


class RequestKind(str, enum.Enum):
    add = "add"
    withdraw = "withdraw"


class RequestStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    denied = "denied"


class TournamentStatus(str, enum.Enum):
    upcoming = "upcoming"
    live = "live"
    completed = "completed"
    cancelled = "cancelled"


class InvitationStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    declined = "declined"


# ──────────────────────────────────────────────
# ACCOUNTS & WALLET
# ──────────────────────────────────────────────

class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("coin_balance >= 0", name="ck_users_coin_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=new_id)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=True)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False, default=Role.player.value)  # "player", "staff", "admin"
    coin_balance = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=AccountStatus.active.value)
    created_at = Column(DateTime, default=utcnow)
    last_login = Column(DateTime, nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status != AccountStatus.blocked.value


class CoinRequest(Base):
    __tablename__ = "coin_requests"
    __table_args__ = (
        CheckConstraint("amount_coins > 0", name="ck_coin_requests_amount_positive"),
    )

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    username = Column(String, nullable=False)  # snapshot at request time
    kind = Column(String, nullable=False)  # "add" | "withdraw"
    amount_coins = Column(Integer, nullable=False)
    amount_paid = Column(Integer, nullable=True)  # add only
    transaction_id = Column(String, nullable=True)  # add only
    withdrawal_details = Column(Text, nullable=True)  # withdraw only
    status = Column(String, nullable=False, default=RequestStatus.pending.value, index=True)
    request_date = Column(DateTime, nullable=False, default=utcnow)
    decision_date = Column(DateTime, nullable=True)
    decided_by = Column(String, ForeignKey("users.id"), nullable=True)


# ──────────────────────────────────────────────
# TOURNAMENT SYSTEM
# ──────────────────────────────────────────────

class Category(Base):
    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, unique=True, nullable=False)
    image_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Tournament(Base):
    __tablename__ = "tournaments"
    __table_args__ = (
        CheckConstraint(
            "registered_count >= 0 AND registered_count <= max_players",
            name="ck_tournaments_capacity",
        ),
    )

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    category_id = Column(String, ForeignKey("categories.id"), nullable=True)
    description = Column(Text, nullable=True)
    rules = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    entry_fee = Column(Integer, nullable=False, default=0)
    max_players = Column(Integer, nullable=False)
    registered_count = Column(Integer, nullable=False, default=0)
    prize_pool_first = Column(Integer, nullable=False, default=0)
    prize_pool_second = Column(Integer, nullable=False, default=0)
    prize_pool_third = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=TournamentStatus.upcoming.value, index=True)
    room_id = Column(String, nullable=True)
    room_password = Column(String, nullable=True)
    winners = Column(JSON, nullable=True)  # {"first": {"user_id", "username"}, "second": ..., "third": ...}
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint("tournament_id", "slot_number", name="uq_registrations_slot"),
    )

    tournament_id = Column(String, ForeignKey("tournaments.id"), primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    team_name = Column(String, nullable=False)
    player_ids = Column(JSON, nullable=False, default=list)
    slot_number = Column(Integer, nullable=False)
    registration_date = Column(DateTime, nullable=False, default=utcnow)


class JoinedTournament(Base):
    """Per-user snapshot of a tournament the user is actively entered in."""
    __tablename__ = "joined_tournaments"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    tournament_id = Column(String, ForeignKey("tournaments.id"), primary_key=True)
    name = Column(String, nullable=False)
    category_id = Column(String, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    entry_fee = Column(Integer, nullable=False)
    slot_number = Column(Integer, nullable=False)
    joined_at = Column(DateTime, nullable=False, default=utcnow)


class WonTournament(Base):
    __tablename__ = "won_tournaments"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    tournament_id = Column(String, ForeignKey("tournaments.id"), primary_key=True)
    name = Column(String, nullable=False)
    prize_won = Column(Integer, nullable=False)
    place = Column(String, nullable=False)  # "1st" | "2nd" | "3rd"
    completion_date = Column(DateTime, nullable=False, default=utcnow)


class PointsTableEntry(Base):
    __tablename__ = "points_table"

    tournament_id = Column(String, ForeignKey("tournaments.id"), primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    player_name = Column(String, nullable=False)
    wins = Column(Integer, nullable=False, default=0)
    kills = Column(Integer, nullable=False, default=0)
    total_points = Column(Integer, nullable=False, default=0)
    entry_order = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ──────────────────────────────────────────────
# TEAMS
# ──────────────────────────────────────────────

class Team(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=False)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    members = relationship(
        "TeamMember", back_populates="team", lazy="selectin", cascade="all, delete-orphan",
    )


class TeamMember(Base):
    __tablename__ = "team_members"

    team_id = Column(String, ForeignKey("teams.id"), primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), primary_key=True, index=True)
    username = Column(String, nullable=False)  # display snapshot
    joined_at = Column(DateTime, default=utcnow)

    team = relationship("Team", back_populates="members")


class TeamInvitation(Base):
    __tablename__ = "team_invitations"

    id = Column(String, primary_key=True, default=new_id)
    team_id = Column(String, ForeignKey("teams.id"), nullable=False, index=True)
    team_name = Column(String, nullable=False)
    from_user_id = Column(String, ForeignKey("users.id"), nullable=False)
    from_username = Column(String, nullable=False)
    to_user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    to_username = Column(String, nullable=False)
    status = Column(String, nullable=False, default=InvitationStatus.pending.value)
    request_date = Column(DateTime, nullable=False, default=utcnow)
    decision_date = Column(DateTime, nullable=True)
