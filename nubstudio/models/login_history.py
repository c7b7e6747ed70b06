# nubstudio/models/login_history.py
import datetime as dt
import enum
from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from nubstudio.core.db import Base
from nubstudio.core.security import utcnow


class LoginKind(str, enum.Enum):
    success = "success"
    failed = "failed"
    blocked = "blocked"


class LoginHistory(Base):
    """Rastro de auditoría de intentos de login (sin datos sensibles)."""

    __tablename__ = "login_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )
    email: Mapped[str] = mapped_column(String(255))
    kind: Mapped[LoginKind] = mapped_column(Enum(LoginKind, native_enum=False, length=16))
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
