import datetime as dt
import enum
import uuid

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nubstudio.core.db import Base
from nubstudio.core.security import utcnow


class AccountStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    suspended = "suspended"


class TwoFactorMethod(str, enum.Enum):
    none = "none"
    totp = "totp"
    email_otp = "email_otp"

    @classmethod
    def parse(cls, value: str | None) -> "TwoFactorMethod | None":
        """None si el valor guardado no es un método conocido."""
        try:
            return cls(value or cls.none.value)
        except ValueError:
            return None


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    nombre: Mapped[str] = mapped_column(String(100))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), default=AccountStatus.pending.value)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)

    # --- bloqueo de login ---
    failed_login_count: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    total_lockouts: Mapped[int] = mapped_column(Integer, default=0)
    last_failed_login_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)

    # --- bloqueo de recuperación (contador independiente) ---
    recovery_attempts: Mapped[int] = mapped_column(Integer, default=0)
    recovery_locked_until: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    recovery_total_lockouts: Mapped[int] = mapped_column(Integer, default=0)
    last_recovery_attempt_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)

    # --- bloqueo del segundo paso (un password correcto no lo limpia) ---
    failed_2fa_count: Mapped[int] = mapped_column(Integer, default=0)
    two_factor_locked_until: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    two_factor_total_lockouts: Mapped[int] = mapped_column(Integer, default=0)
    last_failed_2fa_at: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)

    # --- 2FA ---
    # string y no Enum: un valor desconocido en BD tiene que poder leerse para fallar cerrado
    two_factor_method: Mapped[str] = mapped_column(String(16), default=TwoFactorMethod.none.value)
    totp_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requires_2fa: Mapped[bool] = mapped_column(Boolean, default=False)

    sessions = relationship("ActiveSession", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    recovery_codes = relationship("RecoveryCode", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    verification_codes = relationship("VerificationCode", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.active.value
