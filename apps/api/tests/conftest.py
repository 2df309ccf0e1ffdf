from datetime import datetime
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.user import User
from models.video_project import VideoProject
from routers import rate_limit
from services.session_token import create_session_token


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def ledger_session_maker(tmp_path):
    """File-backed SQLite database so concurrent sessions really contend."""
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"timeout": 30},
    )
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield session_maker
    await engine.dispose()


@pytest_asyncio.fixture
async def ledger_client(ledger_session_maker):
    """HTTP client bound to the app with ``get_db`` pointed at the test database."""

    async def override_get_db():
        async with ledger_session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def auth_headers(user_id: str, email: Optional[str] = None) -> dict:
    token = create_session_token(user_id, email or f"{user_id}@example.com")["token"]
    return {"Authorization": f"Bearer {token}"}


async def seed_user(
    session_maker,
    user_id: str,
    *,
    credits: int = 3,
    status: str = "free",
    end_date: Optional[datetime] = None,
    customer_ref: Optional[str] = None,
    email: Optional[str] = None,
) -> None:
    async with session_maker() as session:
        session.add(
            User(
                id=user_id,
                email=email or f"{user_id}@example.com",
                credits=credits,
                subscription_status=status,
                subscription_end_date=end_date,
                payment_customer_ref=customer_ref,
                ledger_version=0,
            )
        )
        await session.commit()


async def seed_project(session_maker, user_id: str, project_id: str) -> None:
    async with session_maker() as session:
        session.add(
            VideoProject(
                id=project_id,
                user_id=user_id,
                original_video_url="https://cdn.example.com/raw.mp4",
                prompt="Cut the silences and add captions",
                status="processing",
            )
        )
        await session.commit()
