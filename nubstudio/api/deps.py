from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from nubstudio.core.config import Settings
from nubstudio.core.db import Database, get_db
from nubstudio.core.errors import AuthenticationError, ForbiddenError, SessionRevokedError
from nubstudio.core.security import PasswordHasher
from nubstudio.models import User
from nubstudio.repositories import (
    LoginHistoryRepository,
    RecoveryCodeRepository,
    SessionRepository,
    UserRepository,
    VerificationCodeRepository,
)
from nubstudio.services.auth import AuthService
from nubstudio.services.codes import VerificationCodeService
from nubstudio.services.mail import MailSender
from nubstudio.services.recovery import RecoveryService
from nubstudio.services.sessions import SessionRegistry
from nubstudio.services.tokens import TokenClaims, TokenIssuer
from nubstudio.services.two_factor import EmailCodeFactor, TotpFactor, TwoFactorEnrollment, TwoFactorVerifier


@dataclass
class AppContext:
    """Lo que vive una vez por proceso; se guarda en app.state.ctx."""

    settings: Settings
    database: Database
    mailer: MailSender
    hasher: PasswordHasher
    tokens: TokenIssuer
    clock: Callable[[], datetime]


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


# --- fábricas de servicios (una instancia por request) ---

def get_session_registry(
    db: AsyncSession = Depends(get_db), ctx: AppContext = Depends(get_ctx)
) -> SessionRegistry:
    return SessionRegistry(SessionRepository(db), ctx.clock)


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    sessions: SessionRegistry = Depends(get_session_registry),
) -> AuthService:
    users = UserRepository(db)
    codes = VerificationCodeService(VerificationCodeRepository(db), ctx.clock)
    verifier = TwoFactorVerifier(users, TotpFactor(ctx.clock), EmailCodeFactor(db, codes, ctx.mailer))
    return AuthService(
        db, users, LoginHistoryRepository(db), codes, sessions,
        ctx.tokens, ctx.hasher, ctx.mailer, verifier, ctx.clock,
    )


def get_recovery_service(
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    sessions: SessionRegistry = Depends(get_session_registry),
) -> RecoveryService:
    return RecoveryService(
        db, UserRepository(db), RecoveryCodeRepository(db), sessions, ctx.hasher, ctx.mailer, ctx.clock
    )


def get_enrollment_service(
    db: AsyncSession = Depends(get_db), ctx: AppContext = Depends(get_ctx)
) -> TwoFactorEnrollment:
    codes = VerificationCodeService(VerificationCodeRepository(db), ctx.clock)
    return TwoFactorEnrollment(db, UserRepository(db), codes, ctx.mailer, ctx.hasher, ctx.clock)


# --- sesión actual ---

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentSession:
    user: User
    raw_token: str
    claims: TokenClaims


async def get_current_session(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    sessions: SessionRegistry = Depends(get_session_registry),
) -> CurrentSession:
    if creds is None or not creds.credentials:
        raise AuthenticationError("No se proporcionó token de autenticación", code="NO_TOKEN")
    token = creds.credentials

    # firma, iss, aud y algoritmo; después la whitelist
    claims = ctx.tokens.verify(token)
    if not await sessions.is_valid(token):
        raise SessionRevokedError()

    user = await UserRepository(db).get_by_id(claims.sub)
    if user is None:
        raise SessionRevokedError()
    await db.commit()  # last_activity_at
    if not user.is_active:
        raise ForbiddenError("Usuario inactivo", code="USER_INACTIVE")
    return CurrentSession(user=user, raw_token=token, claims=claims)


async def get_current_user(current: CurrentSession = Depends(get_current_session)) -> User:
    return current.user
