import datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from api import app
from auth import create_access_token, get_db, get_session_factory, hash_password
from database import init_async_db, make_engine, make_session_factory
from models import Category, Tournament, User, new_id, utcnow
from settlement import Identity, SettlementEngine


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    # A file database so concurrent sessions see each other's commits
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_async_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return make_session_factory(test_engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settlement(session_factory):
    return SettlementEngine(session_factory)


@pytest_asyncio.fixture
async def async_client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}


@pytest.fixture
def make_user(session_factory):
    async def _make_user(username, role="player", coin_balance=0, status="active", password="password123"):
        async with session_factory() as session:
            user = User(
                username=username,
                email=f"{username}@example.com",
                hashed_password=hash_password(password),
                role=role,
                coin_balance=coin_balance,
                status=status,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user
    return _make_user


@pytest.fixture
def make_tournament(session_factory):
    async def _make_tournament(**overrides):
        async with session_factory() as session:
            category = Category(name=overrides.pop("category_name", f"PUBG {new_id()[:8]}"))
            session.add(category)
            await session.flush()
            start = utcnow() + datetime.timedelta(days=1)
            fields = dict(
                name="Weekend Showdown",
                category_id=category.id,
                description="Squad battle royale, best of three",
                start_date=start,
                end_date=start + datetime.timedelta(hours=3),
                entry_fee=50,
                max_players=10,
                prize_pool_first=1000,
                prize_pool_second=500,
                prize_pool_third=250,
            )
            fields.update(overrides)
            tournament = Tournament(**fields)
            session.add(tournament)
            await session.commit()
            await session.refresh(tournament)
            return tournament
    return _make_tournament


@pytest.fixture
def fetch(session_factory):
    """Load a fresh copy of a row by primary key."""
    async def _fetch(model, key):
        async with session_factory() as session:
            return await session.get(model, key)
    return _fetch


def identity(user) -> Identity:
    return Identity(user_id=user.id, role=user.role)


def auth_headers(user) -> dict:
    token = create_access_token(data={"sub": user.id, "role": user.role})
    return {"Authorization": f"Bearer {token}"}
