"""Registration, password login and the second login step.

Flow of a login: user lookup, lockout check, password, status, second
factor (if any, with its own lockout counters), then token + whitelisted
session. Every outcome leaves a row in ``login_history``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from nubstudio.core.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InternalError,
    LockedError,
    NotFoundError,
)
from nubstudio.core.logging import get_logger, mask_email, security_event
from nubstudio.core.retry import with_retry
from nubstudio.core.security import PasswordHasher, utcnow
from nubstudio.models import AccountStatus, CodePurpose, LoginKind, TwoFactorMethod, User
from nubstudio.repositories import LoginHistoryRepository, UserRepository
from nubstudio.services.codes import VerificationCodeService
from nubstudio.services.lockout import LOGIN_POLICY, TWO_FACTOR_POLICY, LockoutDecision, LockoutEngine
from nubstudio.services.mail import MailDeliveryError, MailSender, spawn_background
from nubstudio.services.sessions import ClientMeta, SessionRegistry
from nubstudio.services.tokens import IssuedToken, TokenIssuer
from nubstudio.services.two_factor import SecondFactor, TwoFactorMisconfigured, TwoFactorVerifier

logger = get_logger(__name__)

MISCONFIGURED_MESSAGE = (
    "La verificación en dos pasos de tu cuenta requiere revisión. Contacta a soporte."
)


@dataclass(frozen=True)
class AuthenticatedSession:
    user: User
    token: IssuedToken


@dataclass(frozen=True)
class TwoFactorChallenge:
    user: User
    method: TwoFactorMethod


def _plural(n: int, singular: str, plural: str) -> str:
    return singular if n == 1 else plural


class AuthService:
    def __init__(
        self,
        db: AsyncSession,
        users: UserRepository,
        history: LoginHistoryRepository,
        codes: VerificationCodeService,
        sessions: SessionRegistry,
        tokens: TokenIssuer,
        hasher: PasswordHasher,
        mailer: MailSender,
        two_factor: TwoFactorVerifier,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.users = users
        self.history = history
        self.codes = codes
        self.sessions = sessions
        self.tokens = tokens
        self.hasher = hasher
        self.mailer = mailer
        self.two_factor = two_factor
        self.clock = clock
        self.lockout = LockoutEngine(users, LOGIN_POLICY, clock)
        self.second_step_lockout = LockoutEngine(users, TWO_FACTOR_POLICY, clock)

    # ---------- registro ----------
    async def register(self, nombre: str, correo: str, contrasena: str) -> User:
        if await self.users.email_exists(correo):
            raise ConflictError()

        user = User(
            nombre=nombre.strip(),
            email=correo,
            hashed_password=self.hasher.hash(contrasena),
            status=AccountStatus.pending.value,
        )
        try:
            await self.users.add(user)
            raw = await self.codes.issue(user.id, CodePurpose.registration)
            await self.db.commit()
        except IntegrityError:
            # otro registro con el mismo correo ganó la carrera
            await self.db.rollback()
            raise ConflictError()

        try:
            await self.mailer.send_code(user.email, raw, CodePurpose.registration.value)
        except MailDeliveryError:
            # borrado compensatorio: sin correo no hay forma de verificar la cuenta
            await self.users.delete(user.id)
            await self.db.commit()
            logger.error("registration_mail_failed", user_id=user.id, to=mask_email(user.email))
            raise InternalError("No se pudo enviar el correo de verificación. Intenta nuevamente.")

        security_event(logger, "USER_REGISTERED", user.id)
        return user

    async def _pending_user(self, correo: str) -> User:
        user = await self.users.get_by_email(correo)
        if user is None or user.status != AccountStatus.pending.value:
            raise NotFoundError("Usuario no encontrado o ya verificado")
        return user

    async def verify_email(self, correo: str, codigo: str) -> None:
        user = await self._pending_user(correo)
        if not await self.codes.verify(user.id, CodePurpose.registration, codigo):
            raise AuthenticationError("Código de verificación incorrecto o expirado")
        await self.users.update_fields(user, status=AccountStatus.active.value)
        await self.db.commit()
        security_event(logger, "EMAIL_VERIFIED", user.id)
        spawn_background(self.mailer.send_welcome(user.email, user.nombre), label="welcome_email")

    async def resend_verification(self, correo: str) -> None:
        user = await self._pending_user(correo)
        raw = await self.codes.issue(user.id, CodePurpose.registration)
        await self.db.commit()
        try:
            await self.mailer.send_code(user.email, raw, CodePurpose.registration.value)
        except MailDeliveryError:
            raise InternalError("No se pudo enviar el correo de verificación. Intenta nuevamente.")

    # ---------- login ----------
    async def _lookup(self, correo: str, not_found: str) -> User:
        user = await with_retry(
            lambda: self.users.get_by_email(correo), on_retry=self.db.rollback, label="login_lookup"
        )
        if user is None:
            await self.history.record(None, correo, LoginKind.failed, "usuario inexistente")
            await self.db.commit()
            raise NotFoundError(not_found)
        return user

    async def _ensure_not_locked(self, user: User, engine: LockoutEngine | None = None) -> None:
        engine = engine or self.lockout
        decision = await engine.check(user)
        if decision.allowed:
            return
        await self.history.record(
            user, user.email, LoginKind.blocked, f"intento durante bloqueo ({engine.policy.name})"
        )
        await self.db.commit()
        security_event(
            logger, "LOGIN_BLOCKED", user.id, flow=engine.policy.name, minutes_remaining=decision.minutes_remaining
        )
        minutes = decision.minutes_remaining or 1
        raise LockedError(
            f"Cuenta bloqueada por seguridad. Intenta de nuevo en {minutes} "
            f"{_plural(minutes, 'minuto', 'minutos')}.",
            minutes_remaining=minutes,
            minutes_blocked=decision.minutes_blocked,
            unlock_at=decision.locked_until,
        )

    async def _record_failure(
        self, user: User, reason: str, engine: LockoutEngine | None = None
    ) -> LockoutDecision:
        engine = engine or self.lockout
        user_id, email = user.id, user.email

        async def unit() -> LockoutDecision:
            # se relee el usuario: tras un rollback la instancia anterior queda expirada
            fresh = await self.users.get_by_id(user_id)
            decision = await engine.register_failure(fresh)
            await self.history.record(
                fresh, email, LoginKind.failed, "bloqueo activado" if decision.just_locked else reason
            )
            await self.db.commit()
            return decision

        return await with_retry(unit, on_retry=self.db.rollback, label="login_failure")

    def _failure_error(
        self, decision: LockoutDecision, prefix: str, engine: LockoutEngine | None = None
    ) -> AuthenticationError:
        total = (engine or self.lockout).policy.threshold
        if decision.just_locked:
            return AuthenticationError(
                f"{prefix}. Tu cuenta ha sido bloqueada por {decision.minutes_blocked} minutos "
                "debido a múltiples intentos fallidos.",
                attemptsRemaining=0,
                totalAttempts=total,
                minutesBlocked=decision.minutes_blocked,
            )
        left = decision.attempts_remaining or 0
        return AuthenticationError(
            f"{prefix}. Te {_plural(left, 'queda', 'quedan')} {left} "
            f"{_plural(left, 'intento', 'intentos')}.",
            attemptsRemaining=left,
            totalAttempts=total,
        )

    async def _ensure_can_sign_in(self, user: User) -> None:
        if user.status == AccountStatus.pending.value:
            await self.db.commit()
            raise ForbiddenError(
                "Cuenta pendiente de verificación. Revisa tu correo",
                requiresVerification=True,
                correo=user.email,
            )
        if not user.is_active:
            await self.db.commit()
            raise ForbiddenError("Cuenta inactiva o suspendida.")

    async def _factor_for(self, user: User) -> SecondFactor | None:
        try:
            return self.two_factor.factor_for(user)
        except TwoFactorMisconfigured:
            await self.two_factor.quarantine(user)
            await self.history.record(user, user.email, LoginKind.failed, "2FA mal configurado")
            await self.db.commit()
            raise AuthenticationError(MISCONFIGURED_MESSAGE, code="2FA_MISCONFIGURED")

    async def login(
        self, correo: str, contrasena: str, meta: ClientMeta
    ) -> AuthenticatedSession | TwoFactorChallenge:
        user = await self._lookup(correo, "Usuario no encontrado.")
        await self._ensure_not_locked(user)

        if not self.hasher.verify(contrasena, user.hashed_password):
            user_id = user.id
            decision = await self._record_failure(user, "contraseña incorrecta")
            security_event(
                logger, "LOGIN_FAILED", user_id, attempts=decision.attempts, locked=decision.just_locked
            )
            raise self._failure_error(decision, "Contraseña incorrecta")

        await self.lockout.record_success(user)
        await self._ensure_can_sign_in(user)

        factor = await self._factor_for(user)
        if factor is None:
            return await self._establish_session(user, meta, "login directo")

        # con el segundo paso bloqueado no se manda otro código
        await self._ensure_not_locked(user, self.second_step_lockout)
        await self.history.record(user, user.email, LoginKind.success, f"2FA {factor.method.value} requerido")
        await self.db.commit()
        try:
            await factor.begin(user)
        except MailDeliveryError:
            raise InternalError("No se pudo enviar el código de acceso. Intenta nuevamente.")
        security_event(logger, "2FA_CHALLENGE", user.id, method=factor.method.value)
        return TwoFactorChallenge(user=user, method=factor.method)

    async def _second_step(
        self, correo: str, codigo: str, method: TwoFactorMethod, meta: ClientMeta, not_found: str
    ) -> AuthenticatedSession:
        user = await self._lookup(correo, not_found)
        await self._ensure_not_locked(user)
        await self._ensure_not_locked(user, self.second_step_lockout)
        await self._ensure_can_sign_in(user)

        factor = await self._factor_for(user)
        if factor is None or factor.method is not method:
            await self.db.commit()
            raise NotFoundError(not_found)

        if not await factor.verify(user, codigo):
            user_id = user.id
            decision = await self._record_failure(
                user, f"código 2FA {method.value} incorrecto", self.second_step_lockout
            )
            security_event(
                logger, "2FA_FAILED", user_id, attempts=decision.attempts, locked=decision.just_locked
            )
            raise self._failure_error(decision, "Código 2FA incorrecto", self.second_step_lockout)

        await self.second_step_lockout.record_success(user)
        return await self._establish_session(user, meta, f"login con 2FA {method.value}")

    async def login_totp(self, correo: str, codigo2fa: str, meta: ClientMeta) -> AuthenticatedSession:
        return await self._second_step(
            correo, codigo2fa, TwoFactorMethod.totp, meta, "Usuario no encontrado o sin 2FA TOTP"
        )

    async def login_email_code(self, correo: str, codigo: str, meta: ClientMeta) -> AuthenticatedSession:
        return await self._second_step(
            correo, codigo, TwoFactorMethod.email_otp, meta, "Usuario no encontrado o sin 2FA por correo"
        )

    async def _establish_session(self, user: User, meta: ClientMeta, reason: str) -> AuthenticatedSession:
        issued = self.tokens.issue(user.id)
        await self.sessions.save(user.id, issued.token, meta, issued.expires_at)
        await self.history.record(user, user.email, LoginKind.success, reason)
        await self.db.commit()
        security_event(logger, "LOGIN_SUCCESS", user.id, ip=meta.ip_address)
        return AuthenticatedSession(user=user, token=issued)

    # ---------- sesiones ----------
    async def logout(self, user_id: str, raw_token: str) -> None:
        await self.sessions.revoke_one(raw_token)
        await self.db.commit()
        security_event(logger, "LOGOUT", user_id)

    async def close_other_sessions(self, user_id: str, raw_token: str) -> int:
        count = await self.sessions.revoke_all_except(user_id, raw_token)
        await self.db.commit()
        return count
