import os
import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Dict, List, Literal, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from auth import (
    ACCESS_TOKEN_EXPIRE_HOURS, SESSION_COOKIE_NAME, create_access_token,
    get_current_active_user, get_current_user_optional, get_db,
    get_role_resolver, get_settlement_engine, hash_password, identity_of,
    init_user_accounts, require_admin, require_player, require_staff,
    verify_password,
)
from database import engine, init_async_db
from errors import JoinRejected, SettlementError, TransactionConflict
from migrations import run_async_migrations
from models import AccountStatus, Role, User, utcnow
from schemas import (
    AddCoinsRequest, CategoryCreate, CoinDecisionRequest, CoinRequestOut,
    InvitationDecision, InviteRequest, JoinRequest, PointsTableUpdate,
    ProfileUpdate, RoomInfo, StaffCreate, StaffStatusUpdate, TeamCreate, Token,
    TournamentCreate, UserCreate, UserLogin, UserOut, WinnersRequest,
    WithdrawCoinsRequest,
)
from settlement import SettlementEngine
import ledger
import teams
import tournament_logic

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


# --- Lifespan for Async Init ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await init_async_db()
    added = await run_async_migrations(engine)
    if added:
        logger.info(f"Applied column migrations: {', '.join(added)}")
    await init_user_accounts()
    yield
    # Shutdown
    await engine.dispose()

app = FastAPI(title="Coin Arena API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials="*" not in CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────
# ERROR MAPPING
# ──────────────────────────────────────────────

@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    content = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, JoinRejected):
        content["reason"] = exc.reason
    return JSONResponse(status_code=exc.status_code, content=content)


@contextmanager
def http_errors():
    """Translate lifecycle-module exceptions into HTTP errors."""
    try:
        yield
    except PermissionError as e:
        raise HTTPException(403, str(e))
    except LookupError as e:
        raise HTTPException(404, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


async def settle(operation, *args, **kwargs):
    """Run a settlement operation, retrying once if storage reported a conflict."""
    try:
        return await operation(*args, **kwargs)
    except TransactionConflict as e:
        logger.info(f"Retrying {operation.__name__} after conflict: {e.detail}")
        return await operation(*args, **kwargs)


# ──────────────────────────────────────────────
# AUTH ENDPOINTS
# ──────────────────────────────────────────────

@app.post("/api/auth/register", response_model=UserOut)
async def register(
    req: UserCreate,
    db: AsyncSession = Depends(get_db),
    resolve_role=Depends(get_role_resolver),
):
    role = resolve_role(req.role_key)
    if role is None:
        raise HTTPException(400, "Invalid Role Key. Leave it blank to register as a player.")

    result = await db.execute(select(User).filter(User.username == req.username))
    if result.scalars().first():
        raise HTTPException(409, "Username already exists")
    result = await db.execute(select(User).filter(User.email == req.email))
    if result.scalars().first():
        raise HTTPException(409, "Email already registered")

    new_user = User(
        username=req.username,
        email=req.email,
        hashed_password=hash_password(req.password),
        role=role,
        status=AccountStatus.active.value,
    )
    db.add(new_user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(409, "Username or email already registered")
    await db.refresh(new_user)
    logger.info(f"Registered {role} account {new_user.username}")
    return new_user

@app.post("/api/auth/token", response_model=Token)
async def login_for_access_token(
    req: UserLogin, response: Response, db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(User).filter(or_(User.username == req.username, User.email == req.username))
    )
    user = result.scalars().first()

    if not user or not verify_password(req.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(403, "Your account has been blocked.")

    # Update last login
    user.last_login = utcnow()
    await db.commit()

    access_token = create_access_token(data={"sub": user.id, "role": user.role})
    response.set_cookie(
        SESSION_COOKIE_NAME,
        access_token,
        max_age=ACCESS_TOKEN_EXPIRE_HOURS * 3600,
        httponly=True,
        samesite="lax",
    )
    return {"access_token": access_token, "token_type": "bearer"}

@app.post("/api/auth/logout")
async def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE_NAME)
    return {"status": "ok"}

@app.get("/api/auth/me", response_model=UserOut)
async def read_users_me(current_user: User = Depends(get_current_active_user)):
    return current_user

@app.patch("/api/auth/me", response_model=UserOut)
async def update_profile(
    req: ProfileUpdate,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    if req.username != current_user.username:
        result = await db.execute(select(User).filter(User.username == req.username))
        if result.scalars().first():
            raise HTTPException(409, "Username already exists")
        current_user.username = req.username
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise HTTPException(409, "Username already exists")
        await db.refresh(current_user)
    return current_user


# ──────────────────────────────────────────────
# ADMIN
# ──────────────────────────────────────────────

@app.get("/api/admin/staff", response_model=List[UserOut])
async def list_staff(
    admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(User).filter(User.role == Role.staff.value).order_by(User.created_at.desc())
    )
    return result.scalars().all()

@app.post("/api/admin/staff", response_model=UserOut)
async def hire_staff(
    req: StaffCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(User).filter(or_(User.username == req.username, User.email == req.email))
    )
    if result.scalars().first():
        raise HTTPException(409, "Username or email already registered")

    staff = User(
        username=req.username,
        email=req.email,
        hashed_password=hash_password(req.password),
        role=Role.staff.value,
        status=AccountStatus.active.value,
    )
    db.add(staff)
    await db.commit()
    await db.refresh(staff)
    logger.info(f"{admin.username} hired staff member {staff.username}")
    return staff

@app.post("/api/admin/staff/{user_id}/status", response_model=UserOut)
async def set_staff_status(
    user_id: str,
    req: StaffStatusUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    staff = await db.get(User, user_id)
    if not staff or staff.role != Role.staff.value:
        raise HTTPException(404, "Staff member not found")
    staff.status = req.status
    await db.commit()
    await db.refresh(staff)
    logger.info(f"{admin.username} set {staff.username} to {req.status}")
    return staff

@app.get("/api/admin/history")
async def platform_history(
    filter_type: str = Query("all", alias="filter"),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await ledger.admin_history(db, filter_type)


# ──────────────────────────────────────────────
# CATEGORIES
# ──────────────────────────────────────────────

@app.get("/api/categories")
async def list_categories(db: AsyncSession = Depends(get_db)):
    categories = await tournament_logic.list_categories(db)
    return [{"id": c.id, "name": c.name, "image_url": c.image_url} for c in categories]

@app.post("/api/categories")
async def create_category(
    req: CategoryCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        category = await tournament_logic.create_category(db, req.name, req.image_url)
    return {"id": category.id, "name": category.name, "image_url": category.image_url}


# ──────────────────────────────────────────────
# TOURNAMENTS
# ──────────────────────────────────────────────

@app.get("/api/tournaments")
async def list_tournaments(
    status: Optional[Literal["upcoming", "live", "completed", "cancelled"]] = None,
    db: AsyncSession = Depends(get_db),
):
    """List tournaments, newest start first, optionally filtered by status."""
    tournaments = await tournament_logic.list_tournaments(db, status)
    return [tournament_logic.serialize_tournament(t) for t in tournaments]

@app.post("/api/tournaments")
async def create_tournament(
    req: TournamentCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        tournament = await tournament_logic.create_tournament(db, req.model_dump(), admin.id)
    return tournament_logic.serialize_tournament(tournament)

@app.get("/api/tournaments/{tournament_id}")
async def get_tournament(
    tournament_id: str,
    current_user: Optional[User] = Depends(get_current_user_optional),
    db: AsyncSession = Depends(get_db),
):
    """Tournament details. Room credentials are shown to its players and to staff."""
    with http_errors():
        tournament = await tournament_logic.get_tournament(db, tournament_id)

    include_room = False
    if current_user is not None:
        include_room = identity_of(current_user).is_staff or await tournament_logic.is_registered(
            db, tournament_id, current_user.id
        )
    return tournament_logic.serialize_tournament(tournament, include_room=include_room)

@app.post("/api/tournaments/{tournament_id}/room")
async def set_room_info(
    tournament_id: str,
    req: RoomInfo,
    staff: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        tournament = await tournament_logic.set_room_info(
            db, tournament_id, req.room_id, req.room_password
        )
    return tournament_logic.serialize_tournament(tournament, include_room=True)

@app.post("/api/tournaments/{tournament_id}/cancel")
async def cancel_tournament(
    tournament_id: str,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        tournament = await tournament_logic.cancel_tournament(db, tournament_id)
    return tournament_logic.serialize_tournament(tournament)

@app.post("/api/tournaments/{tournament_id}/join")
async def join_tournament(
    tournament_id: str,
    req: Optional[JoinRequest] = None,
    player: User = Depends(require_player),
    settlement: SettlementEngine = Depends(get_settlement_engine),
):
    """Pay the entry fee and take the next slot."""
    req = req or JoinRequest()
    registration = await settle(
        settlement.join,
        identity_of(player),
        tournament_id,
        team_name=req.team_name,
        player_ids=req.player_ids,
    )
    return tournament_logic.serialize_registration(registration)

@app.get("/api/tournaments/{tournament_id}/registrations")
async def list_registrations(
    tournament_id: str,
    staff: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        registrations = await tournament_logic.list_registrations(db, tournament_id)
    return [tournament_logic.serialize_registration(r) for r in registrations]

@app.post("/api/tournaments/{tournament_id}/winners")
async def set_winners(
    tournament_id: str,
    req: WinnersRequest,
    staff: User = Depends(require_staff),
    settlement: SettlementEngine = Depends(get_settlement_engine),
):
    """Record the podium and pay out the prize tiers."""
    tournament = await settle(
        settlement.finalize, identity_of(staff), tournament_id, req.model_dump()
    )
    return tournament_logic.serialize_tournament(tournament, include_room=True)

@app.get("/api/tournaments/{tournament_id}/points")
async def get_points_table(tournament_id: str, db: AsyncSession = Depends(get_db)):
    with http_errors():
        return await tournament_logic.get_points_table(db, tournament_id)

@app.put("/api/tournaments/{tournament_id}/points")
async def update_points_table(
    tournament_id: str,
    req: PointsTableUpdate,
    staff: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await tournament_logic.upsert_points(
            db, tournament_id, [e.model_dump() for e in req.entries]
        )


# ──────────────────────────────────────────────
# WALLET
# ──────────────────────────────────────────────

@app.get("/api/wallet")
async def get_wallet(current_user: User = Depends(get_current_active_user)):
    return {"user_id": current_user.id, "coin_balance": current_user.coin_balance}

@app.post("/api/wallet/requests/add", response_model=CoinRequestOut)
async def request_add_coins(
    req: AddCoinsRequest,
    player: User = Depends(require_player),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.submit_add_request(
        db, player, req.amount_coins, req.amount_paid, req.transaction_id
    )

@app.post("/api/wallet/requests/withdraw", response_model=CoinRequestOut)
async def request_withdraw_coins(
    req: WithdrawCoinsRequest,
    player: User = Depends(require_player),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        return await ledger.submit_withdraw_request(
            db, player, req.amount_coins, req.withdrawal_details
        )

@app.get("/api/wallet/requests", response_model=List[CoinRequestOut])
async def my_coin_requests(
    kind: Optional[Literal["add", "withdraw"]] = None,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.list_user_requests(db, current_user.id, kind)

@app.get("/api/wallet/requests/pending", response_model=List[CoinRequestOut])
async def pending_coin_requests(
    staff: User = Depends(require_staff), db: AsyncSession = Depends(get_db)
):
    return await ledger.list_pending_requests(db)

@app.get("/api/wallet/requests/decided", response_model=List[CoinRequestOut])
async def decided_coin_requests(
    kind: Optional[Literal["add", "withdraw"]] = None,
    staff: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.list_decided_requests(db, kind)

@app.post("/api/wallet/requests/{request_id}/decision", response_model=CoinRequestOut)
async def decide_coin_request(
    request_id: str,
    req: CoinDecisionRequest,
    staff: User = Depends(require_staff),
    settlement: SettlementEngine = Depends(get_settlement_engine),
):
    return await settle(settlement.decide, identity_of(staff), request_id, req.decision)


# ──────────────────────────────────────────────
# MY DASHBOARD
# ──────────────────────────────────────────────

@app.get("/api/me/tournaments")
async def my_tournaments(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    return await tournament_logic.list_joined(db, current_user.id)

@app.get("/api/me/wins")
async def my_wins(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    return await tournament_logic.list_wins(db, current_user.id)

@app.get("/api/me/history", response_model=List[Dict[str, Any]])
async def my_history(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    return await ledger.user_history(db, current_user.id)

@app.get("/api/me/invitations")
async def my_invitations(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    invitations = await teams.list_pending_invitations(db, current_user.id)
    return [teams.serialize_invitation(i) for i in invitations]


# ──────────────────────────────────────────────
# TEAMS
# ──────────────────────────────────────────────

@app.get("/api/teams")
async def my_teams(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    return [teams.serialize_team(t) for t in await teams.list_user_teams(db, current_user.id)]

@app.post("/api/teams")
async def create_team(
    req: TeamCreate,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    team = await teams.create_team(db, current_user, req.name)
    return teams.serialize_team(team)

@app.post("/api/teams/{team_id}/invitations")
async def invite_to_team(
    team_id: str,
    req: InviteRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        invitation = await teams.invite_member(db, team_id, current_user, req.username)
    return teams.serialize_invitation(invitation)

@app.post("/api/invitations/{invitation_id}/decision")
async def answer_invitation(
    invitation_id: str,
    req: InvitationDecision,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    with http_errors():
        invitation = await teams.respond_to_invitation(db, invitation_id, current_user, req.decision)
    return teams.serialize_invitation(invitation)


# ──────────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
