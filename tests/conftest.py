"""Shared fixtures: in-memory sqlite, fake clock, recording mailer."""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

os.environ.setdefault("JWT_SECRET", "test-secret-0123456789abcdef")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from nubstudio.core.config import Settings
from nubstudio.core.db import Database
from nubstudio.core.security import PasswordHasher, utcnow
from nubstudio.main import create_app
from nubstudio.models import AccountStatus, TwoFactorMethod, User
from nubstudio.repositories import (
    LoginHistoryRepository,
    RecoveryCodeRepository,
    SessionRepository,
    UserRepository,
    VerificationCodeRepository,
)
from nubstudio.services.auth import AuthService
from nubstudio.services.codes import VerificationCodeService
from nubstudio.services.mail import MailDeliveryError, MailSender
from nubstudio.services.recovery import RecoveryService
from nubstudio.services.sessions import SessionRegistry
from nubstudio.services.tokens import TokenIssuer
from nubstudio.services.two_factor import EmailCodeFactor, TotpFactor, TwoFactorVerifier

TEST_SECRET = "test-secret-0123456789abcdef"
PASSWORD = "Galeria#2024x"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMailer(MailSender):
    def __init__(self) -> None:
        self.codes: list[tuple[str, str, str]] = []
        self.welcomes: list[str] = []
        self.fail = False

    async def send_code(self, to: str, code: str, purpose: str) -> None:
        if self.fail:
            raise MailDeliveryError("smtp caído")
        self.codes.append((to, code, purpose))

    async def send_welcome(self, to: str, nombre: str) -> None:
        self.welcomes.append(to)

    def last_code(self, to: str, purpose: str) -> str:
        for sent_to, code, sent_purpose in reversed(self.codes):
            if sent_to == to and sent_purpose == purpose:
                return code
        raise AssertionError(f"no se envió código {purpose} a {to}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def hasher() -> PasswordHasher:
    # 4 rondas: el mínimo de bcrypt, para que los tests sean rápidos
    return PasswordHasher(rounds=4)


@pytest.fixture
def tokens() -> TokenIssuer:
    return TokenIssuer(TEST_SECRET)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        JWT_SECRET=TEST_SECRET,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        BCRYPT_ROUNDS=4,
        MAINTENANCE_INTERVAL_SECONDS=0,
        LOG_JSON=False,
        LOG_LEVEL="WARNING",
    )


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[Database, None]:
    database = Database("sqlite+aiosqlite:///:memory:")
    await database.create_all()
    yield database
    await database.dispose()


@pytest_asyncio.fixture
async def db(database: Database) -> AsyncGenerator[AsyncSession, None]:
    async with database.sessionmaker() as session:
        yield session


@pytest.fixture
def make_user(db: AsyncSession, hasher: PasswordHasher):
    async def _make(
        email: str = "ana@galeria.mx",
        password: str = PASSWORD,
        *,
        status: AccountStatus = AccountStatus.active,
        method: str = TwoFactorMethod.none.value,
        requires_2fa: bool = False,
        totp_secret: str | None = None,
    ) -> User:
        user = User(
            nombre="Ana Torres",
            email=email,
            hashed_password=hasher.hash(password),
            status=status.value,
            two_factor_method=method,
            requires_2fa=requires_2fa,
            totp_secret=totp_secret,
        )
        await UserRepository(db).add(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
def registry(db: AsyncSession, clock: FakeClock) -> SessionRegistry:
    return SessionRegistry(SessionRepository(db), clock)


@pytest.fixture
def auth_service(db, registry, tokens, hasher, mailer, clock) -> AuthService:
    users = UserRepository(db)
    codes = VerificationCodeService(VerificationCodeRepository(db), clock)
    verifier = TwoFactorVerifier(users, TotpFactor(clock), EmailCodeFactor(db, codes, mailer))
    return AuthService(
        db, users, LoginHistoryRepository(db), codes, registry, tokens, hasher, mailer, verifier, clock
    )


@pytest.fixture
def recovery_service(db, registry, hasher, mailer, clock) -> RecoveryService:
    return RecoveryService(db, UserRepository(db), RecoveryCodeRepository(db), registry, hasher, mailer, clock)


@pytest_asyncio.fixture
async def app(settings: Settings, mailer: FakeMailer, clock: FakeClock):
    app = create_app(settings, mailer=mailer, clock=clock)
    await app.state.db.create_all()
    yield app
    await app.state.db.dispose()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
