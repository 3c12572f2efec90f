from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from typing import List, Literal, Optional
from datetime import datetime


class UserBase(BaseModel):
    username: str = Field(min_length=2)
    email: EmailStr


class UserCreate(UserBase):
    password: str = Field(min_length=6)
    role_key: Optional[str] = None


class StaffCreate(UserBase):
    password: str = Field(min_length=6)


class UserLogin(BaseModel):
    username: str
    password: str


class ProfileUpdate(BaseModel):
    username: str = Field(min_length=2)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: Optional[str] = None
    role: str
    coin_balance: int
    status: str
    created_at: datetime
    last_login: Optional[datetime] = None


class StaffStatusUpdate(BaseModel):
    status: Literal["active", "blocked"]


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    user_id: Optional[str] = None
    role: Optional[str] = None


# ──────────────────────────────────────────────
# WALLET
# ──────────────────────────────────────────────

class AddCoinsRequest(BaseModel):
    amount_coins: int = Field(gt=0)
    amount_paid: int = Field(gt=0)
    transaction_id: str = Field(min_length=1)


class WithdrawCoinsRequest(BaseModel):
    amount_coins: int = Field(gt=0)
    withdrawal_details: str = Field(min_length=10)


class CoinDecisionRequest(BaseModel):
    decision: Literal["approved", "denied"]


class CoinRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    username: str
    kind: str
    amount_coins: int
    amount_paid: Optional[int] = None
    transaction_id: Optional[str] = None
    withdrawal_details: Optional[str] = None
    status: str
    request_date: datetime
    decision_date: Optional[datetime] = None
    decided_by: Optional[str] = None


# ──────────────────────────────────────────────
# TOURNAMENTS
# ──────────────────────────────────────────────

class CategoryCreate(BaseModel):
    name: str = Field(min_length=2)
    image_url: Optional[str] = None


class TournamentCreate(BaseModel):
    name: str = Field(min_length=3)
    category_id: str
    description: str = Field(min_length=10)
    rules: Optional[str] = None
    start_date: datetime
    end_date: datetime
    entry_fee: int = Field(ge=0)
    max_players: int = Field(gt=0)
    prize_pool_first: int = Field(gt=0)
    prize_pool_second: int = Field(gt=0)
    prize_pool_third: int = Field(gt=0)

    @model_validator(mode="after")
    def check_dates(self):
        if self.end_date <= self.start_date:
            raise ValueError("End date and time must be after start date and time.")
        return self


class RoomInfo(BaseModel):
    room_id: str = Field(min_length=1)
    room_password: str = Field(min_length=1)


class JoinRequest(BaseModel):
    team_name: Optional[str] = Field(default=None, min_length=1)
    player_ids: List[str] = Field(default_factory=list)


class WinnersRequest(BaseModel):
    first: str = Field(min_length=1)
    second: Optional[str] = Field(default=None, min_length=1)
    third: Optional[str] = Field(default=None, min_length=1)


class PointsEntryIn(BaseModel):
    user_id: str
    player_name: str = Field(min_length=1)
    wins: int = Field(default=0, ge=0)
    kills: int = Field(default=0, ge=0)
    total_points: int = Field(default=0, ge=0)


class PointsTableUpdate(BaseModel):
    entries: List[PointsEntryIn]

    @field_validator("entries")
    @classmethod
    def unique_players(cls, entries):
        ids = [e.user_id for e in entries]
        if len(ids) != len(set(ids)):
            raise ValueError("Each player may appear only once")
        return entries


# ──────────────────────────────────────────────
# TEAMS
# ──────────────────────────────────────────────

class TeamCreate(BaseModel):
    name: str = Field(min_length=3, max_length=20)


class InviteRequest(BaseModel):
    username: str = Field(min_length=1)


class InvitationDecision(BaseModel):
    decision: Literal["accepted", "declined"]
