"""Second factor: TOTP (authenticator app) or a one-time code by e-mail.

The login never persists an "awaiting 2FA" state. Each call rebuilds it
from the stored TOTP secret or from the latest unresolved e-mail code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from nubstudio.core.errors import AuthenticationError, ForbiddenError, ValidationError
from nubstudio.core.logging import get_logger, security_event
from nubstudio.core.security import (
    PasswordHasher,
    generate_2fa_secret,
    qr_png_base64_from_text,
    totp_uri_from_secret,
    utcnow,
    verify_totp,
)
from nubstudio.models import CodePurpose, TwoFactorMethod, User
from nubstudio.repositories import UserRepository
from nubstudio.services.codes import VerificationCodeService
from nubstudio.services.mail import MailSender

logger = get_logger(__name__)


class TwoFactorMisconfigured(Exception):
    """requires_2fa is set but the stored method cannot be used."""


class SecondFactor(ABC):
    method: TwoFactorMethod

    async def begin(self, user: User) -> None:
        """Hook run right after the password step (e-mail factor dispatches its code)."""

    @abstractmethod
    async def verify(self, user: User, code: str) -> bool: ...


class TotpFactor(SecondFactor):
    method = TwoFactorMethod.totp

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    async def verify(self, user: User, code: str) -> bool:
        return verify_totp(code.strip(), user.totp_secret or "", at=self.clock())


class EmailCodeFactor(SecondFactor):
    method = TwoFactorMethod.email_otp

    def __init__(self, db: AsyncSession, codes: VerificationCodeService, mailer: MailSender) -> None:
        self.db = db
        self.codes = codes
        self.mailer = mailer

    async def begin(self, user: User) -> None:
        raw = await self.codes.issue(user.id, CodePurpose.login_2fa)
        # el código tiene que estar guardado antes de que llegue al usuario
        await self.db.commit()
        await self.mailer.send_code(user.email, raw, CodePurpose.login_2fa.value)

    async def verify(self, user: User, code: str) -> bool:
        return await self.codes.verify(user.id, CodePurpose.login_2fa, code)


class TwoFactorVerifier:
    def __init__(self, users: UserRepository, totp: TotpFactor, email: EmailCodeFactor) -> None:
        self.users = users
        self._factors: dict[TwoFactorMethod, SecondFactor] = {
            TwoFactorMethod.totp: totp,
            TwoFactorMethod.email_otp: email,
        }

    def factor_for(self, user: User) -> SecondFactor | None:
        """None when the account has no second factor; raises when it should but can't."""
        if not user.requires_2fa:
            return None
        method = TwoFactorMethod.parse(user.two_factor_method)
        if method is None or method is TwoFactorMethod.none:
            raise TwoFactorMisconfigured(user.two_factor_method)
        if method is TwoFactorMethod.totp and not user.totp_secret:
            raise TwoFactorMisconfigured("totp sin secreto")
        return self._factors[method]

    async def quarantine(self, user: User) -> None:
        """Fail closed: method back to none while requires_2fa stays set."""
        await self.users.update_fields(
            user, two_factor_method=TwoFactorMethod.none.value, requires_2fa=True
        )
        security_event(logger, "2FA_MISCONFIGURED", user.id)


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    otpauth_url: str
    qr_base64_png: str


class TwoFactorEnrollment:
    """Activación / desactivación del segundo factor para un usuario autenticado."""

    def __init__(
        self,
        db: AsyncSession,
        users: UserRepository,
        codes: VerificationCodeService,
        mailer: MailSender,
        hasher: PasswordHasher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.users = users
        self.codes = codes
        self.mailer = mailer
        self.hasher = hasher
        self.clock = clock

    @staticmethod
    def _active_method(user: User) -> TwoFactorMethod | None:
        if not user.requires_2fa:
            return None
        return TwoFactorMethod.parse(user.two_factor_method)

    def _reject_quarantined(self, user: User) -> None:
        if user.requires_2fa and self._active_method(user) in (None, TwoFactorMethod.none):
            raise ForbiddenError(
                "La verificación en dos pasos de tu cuenta requiere revisión. Contacta a soporte.",
                code="2FA_MISCONFIGURED",
            )

    # ---------- TOTP ----------
    async def setup_totp(self, user: User) -> TotpEnrollment:
        self._reject_quarantined(user)
        if self._active_method(user) is TwoFactorMethod.totp:
            raise ValidationError("La autenticación TOTP ya está activa.")
        secret = generate_2fa_secret()
        # queda pendiente hasta verify_totp; two_factor_method no cambia todavía
        await self.users.update_fields(user, totp_secret=secret)
        await self.db.commit()
        otpauth = totp_uri_from_secret(secret, email=user.email)
        return TotpEnrollment(secret=secret, otpauth_url=otpauth, qr_base64_png=qr_png_base64_from_text(otpauth))

    async def verify_totp(self, user: User, codigo: str) -> None:
        self._reject_quarantined(user)
        if not user.totp_secret:
            raise ValidationError("No hay secreto 2FA configurado. Ejecuta /2fa/setup-totp primero.")
        if not verify_totp(codigo.strip(), user.totp_secret, at=self.clock()):
            raise AuthenticationError("Código 2FA inválido")
        await self.users.update_fields(user, two_factor_method=TwoFactorMethod.totp.value, requires_2fa=True)
        await self.db.commit()
        security_event(logger, "2FA_ENABLED", user.id, method="totp")

    # ---------- correo ----------
    async def configure_email(self, user: User) -> None:
        self._reject_quarantined(user)
        raw = await self.codes.issue(user.id, CodePurpose.enable_email_2fa)
        await self.db.commit()
        await self.mailer.send_code(user.email, raw, CodePurpose.enable_email_2fa.value)

    async def verify_email(self, user: User, codigo: str) -> None:
        self._reject_quarantined(user)
        if not await self.codes.verify(user.id, CodePurpose.enable_email_2fa, codigo):
            await self.db.commit()
            raise AuthenticationError("Código inválido o expirado")
        await self.users.update_fields(
            user, two_factor_method=TwoFactorMethod.email_otp.value, requires_2fa=True, totp_secret=None
        )
        await self.db.commit()
        security_event(logger, "2FA_ENABLED", user.id, method="email_otp")

    # ---------- desactivar ----------
    async def disable(self, user: User, contrasena: str, codigo: str | None = None) -> None:
        self._reject_quarantined(user)
        if not self.hasher.verify(contrasena, user.hashed_password):
            raise AuthenticationError("Contraseña incorrecta")
        if self._active_method(user) is TwoFactorMethod.totp:
            if not codigo or not verify_totp(codigo.strip(), user.totp_secret or "", at=self.clock()):
                raise AuthenticationError("Código 2FA inválido")
        await self.users.update_fields(
            user, two_factor_method=TwoFactorMethod.none.value, requires_2fa=False, totp_secret=None
        )
        await self.db.commit()
        security_event(logger, "2FA_DISABLED", user.id)
