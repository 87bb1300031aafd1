"""测试公共夹具

配置与数据库引擎在导入 credit_gateway 时即被创建，环境变量必须先于导入设置。
"""

import os

os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SESSION_SECRET"] = "test-session-secret-0123456789abcdef"
os.environ["IP_HASH_SECRET"] = "test-ip-hash-secret-0123456789abcdef"
os.environ["ADMIN_PASSWORD"] = "correct horse battery staple"
os.environ["ADMIN_PASSWORD_SECRET"] = "test-admin-password-secret-0123456789"
os.environ["TRUSTED_PROXY_IPS"] = ""
os.environ.pop("TRUST_PROXY_PLATFORM", None)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import credit_gateway.models  # noqa: F401
from credit_gateway.core.config import get_settings
from credit_gateway.core.database import Base, get_db
from credit_gateway.core.security import hash_ip, ip_hash_secret_from_settings
from credit_gateway.main import app
from credit_gateway.services.ledger import credit_ledger
from credit_gateway.services.session_identity import create_session

CLIENT_IP = "203.0.113.7"


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def ip_hash(settings):
    return hash_ip(CLIENT_IP, ip_hash_secret_from_settings(settings))


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def make_session(db, settings, ip_hash):
    """创建会话并按需充值"""
    async def factory(credits: int = 0, hashed_ip: str = None):
        session = await create_session(db, hashed_ip or ip_hash, settings)
        if credits:
            await credit_ledger.add_credits(db, session.id, credits)
        return session.id

    return factory


def build_client(session_maker, client_ip: str = CLIENT_IP) -> AsyncClient:
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app, client=(client_ip, 50000))
    return AsyncClient(transport=transport, base_url="http://testserver")


@pytest_asyncio.fixture
async def client(session_maker):
    async with build_client(session_maker) as ac:
        yield ac
    app.dependency_overrides.clear()
