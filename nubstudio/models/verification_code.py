# nubstudio/models/verification_code.py
from __future__ import annotations
import datetime as dt
import enum
from typing import TYPE_CHECKING
from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from nubstudio.core.db import Base
from nubstudio.core.security import utcnow

if TYPE_CHECKING:
    from nubstudio.models.user import User


class CodePurpose(str, enum.Enum):
    registration = "registration"
    login_2fa = "login_2fa"
    enable_email_2fa = "enable_email_2fa"


class VerificationCode(Base):
    """Código corto por correo: verificación de registro y 2FA por email."""

    __tablename__ = "verification_codes"
    __table_args__ = (
        Index("ix_verification_codes_user_purpose", "user_id", "purpose"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"))
    purpose: Mapped[CodePurpose] = mapped_column(Enum(CodePurpose, native_enum=False, length=32))
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="verification_codes")
