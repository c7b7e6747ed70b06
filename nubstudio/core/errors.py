"""Error taxonomy for the auth core.

Services raise these; the HTTP boundary (``nubstudio.api.errors``) turns
them into ``{"message": ..., **extra}`` JSON responses.

Usage:
    from nubstudio.core.errors import AuthenticationError, LockedError

    raise AuthenticationError("Código inválido o expirado")
    raise LockedError("Cuenta bloqueada", minutes_remaining=12)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class AppError(Exception):
    """Base exception. ``extra`` is merged into the response body."""

    status_code: int = 500
    default_message: str = "Error interno del servidor."

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        **extra: Any,
    ) -> None:
        self.message = message or self.default_message
        self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        if self.code:
            body["code"] = self.code
        body.update(self.extra)
        return body


class ValidationError(AppError):
    """400 - malformed or rejected input."""

    status_code = 400
    default_message = "Datos inválidos."


class ConflictError(AppError):
    """Duplicate unique field (e-mail already registered)."""

    status_code = 400
    default_message = "El correo ya está registrado."


class NotFoundError(AppError):
    status_code = 404
    default_message = "Recurso no encontrado."


class AuthenticationError(AppError):
    """401 - bad credentials, bad code or bad token."""

    status_code = 401
    default_message = "No autorizado."


class TokenExpiredError(AuthenticationError):
    default_message = "Tu sesión ha expirado. Por favor inicia sesión nuevamente."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        super().__init__(message, code="TOKEN_EXPIRED", expired=True, **extra)


class InvalidTokenError(AuthenticationError):
    default_message = "Token inválido o manipulado"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        super().__init__(message, code="INVALID_TOKEN", **extra)


class SessionRevokedError(AuthenticationError):
    default_message = "Tu sesión ya no es válida. Por favor inicia sesión nuevamente."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        super().__init__(message, code="SESSION_REVOKED", **extra)


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Permiso denegado"


class LockedError(AppError):
    """Lockout active. 403 for login, 429 for recovery."""

    status_code = 403
    default_message = "Cuenta bloqueada por seguridad."

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        minutes_remaining: int | None = None,
        minutes_blocked: int | None = None,
        unlock_at: datetime | None = None,
        **extra: Any,
    ) -> None:
        body: dict[str, Any] = {"blocked": True}
        if minutes_remaining is not None:
            body["minutesRemaining"] = minutes_remaining
        if minutes_blocked is not None:
            body["minutesBlocked"] = minutes_blocked
        if unlock_at is not None:
            body["unlockTime"] = unlock_at.strftime("%H:%M")
        body.update(extra)
        super().__init__(message, status_code=status_code, **body)
        self.minutes_remaining = minutes_remaining
        self.minutes_blocked = minutes_blocked
        self.unlock_at = unlock_at


class InternalError(AppError):
    """500 - detail is logged, never returned."""

    status_code = 500
    default_message = "Error interno del servidor."
