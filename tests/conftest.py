import os
import tempfile

os.environ["ACCESS_TOKEN_SECRET"] = "test-access-secret-0123456789abcdef"
os.environ["REFRESH_TOKEN_SECRET"] = "test-refresh-secret-0123456789abcdef"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["ENCRYPTION_KEY"] = "0123456789abcdef0123456789abcdef"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="serialboxd-uploads-")
os.environ["MAIL_PROVIDER"] = "mock"
os.environ["TMDB_API_KEY"] = "test-tmdb-key"

import pytest
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from httpx import ASGITransport, AsyncClient
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from serialboxd.auth import security
from serialboxd.auth.security import TokenIssuer
from serialboxd.config import settings
from serialboxd.core.crypto import KeyCustodian, SymmetricCipher
from serialboxd.core.rate_limit import reset_rate_limiter_state
from serialboxd.database import Base, get_db
from serialboxd.main import app
from serialboxd.models.user import User
from serialboxd.services.session_service import SessionManager
from serialboxd.services.session_store import SessionLockRegistry


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _generate_keypair() -> tuple[bytes, bytes]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


@pytest.fixture(scope="session")
def rsa_keypair() -> tuple[bytes, bytes]:
    return _generate_keypair()


@pytest.fixture(scope="session")
def other_rsa_keypair() -> tuple[bytes, bytes]:
    return _generate_keypair()


@pytest.fixture(scope="session")
def custodian(rsa_keypair) -> KeyCustodian:
    private_pem, public_pem = rsa_keypair
    return KeyCustodian.from_keypair(settings.ENCRYPTION_KEY.encode("utf-8"), private_pem, public_pem)


@pytest.fixture(scope="session")
def cipher(custodian) -> SymmetricCipher:
    return SymmetricCipher(custodian)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 10, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def issuer(clock) -> TokenIssuer:
    return TokenIssuer.from_settings(settings, clock=clock)


@pytest.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    async_session = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )
    async with async_session() as session:
        yield session


@pytest.fixture
def session_manager(db_session, cipher, issuer) -> SessionManager:
    return SessionManager(db_session, cipher=cipher, issuer=issuer, locks=SessionLockRegistry())


@pytest.fixture
async def create_user(db_session):
    async def _create(email: str = "ana@x.com", password: str = "senha123", username: str = "Ana") -> User:
        user = User(username=username, email=email, hashed_password=security.hash_password(password))
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create


@pytest.fixture(scope="function")
async def client(db_session, cipher) -> AsyncGenerator[AsyncClient, None]:
    await reset_rate_limiter_state()

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.cipher = cipher
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    await reset_rate_limiter_state()


@pytest.fixture
async def login_tokens(client, create_user):
    async def _login(email: str = "ana@x.com", password: str = "senha123") -> dict:
        await create_user(email=email, password=password)
        response = await client.post("/login", json={"email": email, "senha": password})
        assert response.status_code == 200
        return response.json()

    return _login
