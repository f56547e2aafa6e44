"""Test fixtures."""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.database import Base, get_db
from app.main import app, rate_limiter
from app.models import Shipment, User
from app.services.auth import hash_password, token_for_user
from app.services.notification import notification_service

# Use SQLite for tests (no external DB needed for unit tests)
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"

test_engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=NullPool)
test_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session() as session:
        yield session


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Fresh rate limiter buckets and notification history per test."""
    rate_limiter.reset()
    notification_service.clear()
    yield
    notification_service.clear()


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with test_session() as session:
        yield session


async def make_user(
    db: AsyncSession,
    username: str,
    role: str = "user",
    balance: int = 0,
    is_approved: bool = True,
    **kwargs,
) -> User:
    user = User(
        username=username,
        name=kwargs.pop("name", username.title()),
        email=kwargs.pop("email", f"{username}@example.com"),
        password_hash=hash_password(kwargs.pop("password", "password123")),
        role=role,
        is_approved=is_approved,
        balance=balance,
        **kwargs,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_shipment(db: AsyncSession, user: User, **kwargs) -> Shipment:
    values = {
        "receiver_name": "Omar Haddad",
        "receiver_address": "Al Wasl Road 12",
        "receiver_city": "Dubai",
        "receiver_country_code": "AE",
        "receiver_phone": "+971501234567",
        "package_length": 30,
        "package_width": 20,
        "package_height": 15,
        "package_weight": 1.5,
        "piece_count": 1,
        "package_contents": "Cotton socks",
        "provider_service_code": "aramex-ppx",
    }
    values.update(kwargs)
    shipment = Shipment(user_id=user.id, status="pending", **values)
    db.add(shipment)
    await db.commit()
    await db.refresh(shipment)
    return shipment


@pytest_asyncio.fixture
async def customer(db: AsyncSession) -> User:
    return await make_user(db, "ayse", balance=-12500, company_name="Ayse Tekstil")


@pytest_asyncio.fixture
async def admin(db: AsyncSession) -> User:
    return await make_user(db, "admin", role="admin")


@pytest.fixture
def user_headers(customer: User) -> dict:
    return {"Authorization": f"Bearer {token_for_user(customer)}"}


@pytest.fixture
def admin_headers(admin: User) -> dict:
    return {"Authorization": f"Bearer {token_for_user(admin)}"}


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def create_user(db: AsyncSession):
    async def _create(username: str, **kwargs) -> User:
        return await make_user(db, username, **kwargs)
    return _create


@pytest.fixture
def create_shipment(db: AsyncSession):
    async def _create(user: User, **kwargs) -> Shipment:
        return await make_shipment(db, user, **kwargs)
    return _create
