from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


_signing_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

os.environ["APP_ENV"] = "test"
os.environ["DATABASE_DSN"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_PRIVATE_KEY"] = _signing_key.private_bytes(
    encoding=serialization.Encoding.PEM,
    format=serialization.PrivateFormat.PKCS8,
    encryption_algorithm=serialization.NoEncryption(),
).decode("ascii")
os.environ["JWT_PUBLIC_KEY"] = (
    _signing_key.public_key()
    .public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    .decode("ascii")
)
os.environ["MFA_ENCRYPTION_KEY"] = base64.b64encode(b"k" * 32).decode("ascii")
os.environ["RECOVERY_CODE_PEPPER"] = "test-recovery-pepper-value"
os.environ["RECOVERY_CODE_BCRYPT_ROUNDS"] = "4"
os.environ["PASSWORD_HASH_ITERATIONS"] = "1000"
os.environ["REGISTER_RATE_LIMIT"] = "100"
os.environ["LOGIN_RATE_LIMIT"] = "100"

import uuid  # noqa: E402
from collections.abc import AsyncIterator  # noqa: E402

import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.db import model_registry as _model_registry  # noqa: E402,F401
from app.db.base import Base  # noqa: E402
from app.db.session import get_db_session  # noqa: E402
from app.db.store import CredentialStore  # noqa: E402
from app.main import app  # noqa: E402
from app.schemas.auth import RegisterRequest  # noqa: E402
from app.services.activity import activity_recorder  # noqa: E402
from app.services.auth import RegisterResult, register_user  # noqa: E402
from app.services.rate_limit import counter_store  # noqa: E402


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # file backed so concurrent sessions really contend for the same rows
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'kindling.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    activity_recorder.bind(factory)
    counter_store.bind(factory)
    try:
        yield factory
    finally:
        await activity_recorder.drain()
        await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory) -> AsyncIterator[CredentialStore]:
    async with session_factory() as session:
        yield CredentialStore(session)


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncIterator[AsyncClient]:
    async def override_get_db_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
            yield http
    finally:
        app.dependency_overrides.clear()


async def register(
    store: CredentialStore,
    email: str | None = None,
    *,
    password: str = "correct horse battery",
    org_name: str = "Acme",
) -> RegisterResult:
    payload = RegisterRequest(
        email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
        password=password,
        name="Test User",
        org_name=org_name,
    )
    return await register_user(store, payload, client_ip="10.0.0.1", user_agent="pytest")


def bearer(access_token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {access_token}"}
