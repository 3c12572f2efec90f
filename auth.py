# auth.py — JWT authentication, role gating & account seeding (Async/SQLAlchemy)
import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from dotenv import load_dotenv
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.future import select
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from database import async_session
from models import AccountStatus, Role, User
from schemas import TokenData
from settlement import Identity, SettlementEngine

load_dotenv()

logger = logging.getLogger(__name__)

SECRET_KEY = os.getenv("JWT_SECRET", "coin-arena-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = int(os.getenv("ACCESS_TOKEN_EXPIRE_HOURS", "72"))
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")

# Registration role keys. An empty key registers a player; any key not listed
# here is rejected. Staff accounts are only created by an admin.
ROLE_KEYS = {
    "": Role.player.value,
    os.getenv("ADMIN_ROLE_KEY", "ADMIN_DPS#1"): Role.admin.value,
}

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)

# ──────────────────────────────────────────────
# SECURITY UTILS
# ──────────────────────────────────────────────

def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)

def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)

def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def decode_access_token(token: str) -> TokenData | None:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    if user_id is None:
        return None
    return TokenData(user_id=user_id, role=payload.get("role"))

def role_from_key(key: Optional[str]) -> Optional[str]:
    """Map a registration role key to a role, or None when the key is invalid."""
    return ROLE_KEYS.get((key or "").strip())

# ──────────────────────────────────────────────
# DEPENDENCIES
# ──────────────────────────────────────────────

async def get_db():
    async with async_session() as session:
        yield session

def get_session_factory():
    return async_session

def get_settlement_engine(session_factory=Depends(get_session_factory)) -> SettlementEngine:
    return SettlementEngine(session_factory)

def get_role_resolver() -> Callable[[Optional[str]], Optional[str]]:
    return role_from_key

async def get_current_user(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    token = token or request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        raise credentials_exception

    token_data = decode_access_token(token)
    if token_data is None:
        raise credentials_exception

    result = await db.execute(select(User).filter(User.id == token_data.user_id))
    user = result.scalars().first()

    if user is None:
        raise credentials_exception
    return user

async def get_current_user_optional(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    token = token or request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None
    token_data = decode_access_token(token)
    if token_data is None:
        return None

    result = await db.execute(select(User).filter(User.id == token_data.user_id))
    user = result.scalars().first()
    if user is None or not user.is_active:
        return None
    return user

async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_active:
        raise HTTPException(status_code=403, detail="Account is blocked")
    return current_user

def require_roles(*roles: str):
    """Dependency factory: the caller must be active and hold one of ``roles``."""
    async def checker(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(status_code=403, detail="You do not have permission to do this")
        return current_user
    return checker

require_staff = require_roles(Role.staff.value, Role.admin.value)
require_admin = require_roles(Role.admin.value)
require_player = require_roles(Role.player.value)

def identity_of(user: User) -> Identity:
    return Identity(user_id=user.id, role=user.role)

# ──────────────────────────────────────────────
# INIT / SEEDING
# ──────────────────────────────────────────────

async def init_user_accounts(session_factory=None):
    """Seed an admin account from the environment when no users exist."""
    username = os.getenv("SEED_ADMIN_USERNAME")
    password = os.getenv("SEED_ADMIN_PASSWORD")
    if not username or not password:
        return

    async with (session_factory or async_session)() as db:
        result = await db.execute(select(func.count(User.id)))
        count = result.scalar()

        if count == 0:
            logger.info(f"[AUTH] Seeding admin account '{username}'")
            db.add(User(
                username=username,
                email=os.getenv("SEED_ADMIN_EMAIL"),
                hashed_password=hash_password(password),
                role=Role.admin.value,
                status=AccountStatus.active.value,
            ))
            await db.commit()
