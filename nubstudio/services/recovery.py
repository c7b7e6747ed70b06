"""Password recovery by e-mailed code.

The request step answers the same way for known and unknown addresses. Only
a locked account shows through (429), and only for an address that exists.
"""

from __future__ import annotations

import hmac
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from nubstudio.core.errors import AuthenticationError, LockedError, ValidationError
from nubstudio.core.logging import get_logger, mask_email, security_event
from nubstudio.core.retry import with_retry
from nubstudio.core.security import PasswordHasher, fingerprint, generate_numeric_code, utcnow
from nubstudio.models import RecoveryCode, User
from nubstudio.repositories import RecoveryCodeRepository, UserRepository
from nubstudio.services.lockout import LOGIN_POLICY, RECOVERY_POLICY, TWO_FACTOR_POLICY, LockoutEngine
from nubstudio.services.mail import MailDeliveryError, MailSender, spawn_background
from nubstudio.services.sessions import SessionRegistry

logger = get_logger(__name__)

RECOVERY_CODE_TTL = timedelta(minutes=15)
GENERIC_MESSAGE = "Si el correo existe, recibirás un código de recuperación"
INVALID_CODE_MESSAGE = "Código inválido o expirado"


class RecoveryService:
    def __init__(
        self,
        db: AsyncSession,
        users: UserRepository,
        codes: RecoveryCodeRepository,
        sessions: SessionRegistry,
        hasher: PasswordHasher,
        mailer: MailSender,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.users = users
        self.codes = codes
        self.sessions = sessions
        self.hasher = hasher
        self.mailer = mailer
        self.clock = clock
        self.recovery_lockout = LockoutEngine(users, RECOVERY_POLICY, clock)
        self.login_lockout = LockoutEngine(users, LOGIN_POLICY, clock)
        self.second_step_lockout = LockoutEngine(users, TWO_FACTOR_POLICY, clock)

    async def request(self, email: str) -> dict:
        generic = {"message": GENERIC_MESSAGE, "correo": mask_email(email)}

        raw_code = await with_retry(
            lambda: self._issue_code(email), on_retry=self.db.rollback, label="recovery_request"
        )
        if raw_code is None:
            return generic

        # en segundo plano: la respuesta no puede tardar más para un correo existente
        spawn_background(self._send_code(email.strip().lower(), raw_code), label="recovery_mail")
        return generic

    async def _send_code(self, to: str, raw_code: str) -> None:
        try:
            await self.mailer.send_code(to, raw_code, "recovery")
        except MailDeliveryError:
            # el código ya quedó guardado; el usuario puede volver a pedirlo
            logger.warning("recovery_mail_failed", to=mask_email(to))

    async def _issue_code(self, email: str) -> str | None:
        """One retryable unit: re-reads the user, so a rollback in between is harmless."""
        user = await self.users.get_by_email(email)
        if user is None:
            logger.info("recovery_unknown_email", to=mask_email(email))
            return None

        decision = await self.recovery_lockout.check(user)
        if not decision.allowed:
            await self.db.commit()
            security_event(logger, "RECOVERY_BLOCKED", user.id, minutes_remaining=decision.minutes_remaining)
            raise self._locked(
                f"Demasiados intentos de recuperación. Por favor espera {decision.minutes_remaining} "
                f"minuto{'s' if decision.minutes_remaining != 1 else ''} antes de intentar de nuevo.",
                decision.minutes_remaining, decision.minutes_blocked, decision.locked_until,
            )

        slot = await self.recovery_lockout.consume(user)
        if not slot.allowed:
            await self.db.commit()
            raise self._locked(
                f"Has excedido el límite de intentos de recuperación. Tu cuenta ha sido bloqueada "
                f"por {slot.minutes_blocked} minutos por seguridad.",
                slot.minutes_remaining, slot.minutes_blocked, slot.locked_until,
            )

        now = self.clock()
        await self.codes.invalidate_for_user(user.id, now)
        raw = generate_numeric_code()
        await self.codes.add(RecoveryCode(
            user_id=user.id,
            code_hash=fingerprint(raw),
            expires_at=now + RECOVERY_CODE_TTL,
            used=False,
        ))
        await self.db.commit()
        security_event(logger, "RECOVERY_CODE_ISSUED", user.id, attempts=slot.attempts)
        return raw

    @staticmethod
    def _locked(message: str, remaining, blocked, until) -> LockedError:
        return LockedError(
            message, status_code=429,
            minutes_remaining=remaining, minutes_blocked=blocked, unlock_at=until,
        )

    async def _usable_code(self, email: str, raw_code: str) -> tuple[User, RecoveryCode] | None:
        user = await self.users.get_by_email(email)
        if user is None:
            return None
        code_hash = fingerprint(raw_code.strip())
        record = await self.codes.find_usable(user.id, code_hash, self.clock())
        if record is None or not hmac.compare_digest(record.code_hash, code_hash):
            return None
        return user, record

    async def validate(self, email: str, raw_code: str) -> bool:
        """Read-only check; does not consume the code."""
        return await self._usable_code(email, raw_code) is not None

    async def reset(self, email: str, raw_code: str, new_password: str) -> None:
        """All-or-nothing: any failure rolls back every change."""
        try:
            found = await self._usable_code(email, raw_code)
            if found is None:
                raise AuthenticationError(INVALID_CODE_MESSAGE)
            user, _record = found

            if self.hasher.verify(new_password, user.hashed_password):
                raise ValidationError("La nueva contraseña no puede ser igual a la anterior")

            await self.users.update_fields(user, hashed_password=self.hasher.hash(new_password))
            await self.codes.invalidate_for_user(user.id, self.clock())
            await self.login_lockout.reset(user)
            await self.recovery_lockout.reset(user)
            await self.second_step_lockout.reset(user)
            revoked = await self.sessions.revoke_all(user.id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        security_event(logger, "PASSWORD_RESET", user.id, sessions_revoked=revoked)

    async def cleanup_expired_codes(self) -> int:
        return await self.codes.delete_stale(self.clock())
