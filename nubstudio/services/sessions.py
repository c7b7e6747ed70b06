from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Request

from nubstudio.core.logging import get_logger, security_event
from nubstudio.core.security import fingerprint, utcnow
from nubstudio.models import ActiveSession
from nubstudio.repositories import SessionRepository

logger = get_logger(__name__)

# sesiones sin actividad por más de esto se barren aunque el token no haya vencido
SESSION_IDLE_LIMIT = timedelta(days=30)


@dataclass(frozen=True)
class ClientMeta:
    ip_address: str = "unknown"
    user_agent: str = "Desconocido"

    @classmethod
    def from_request(cls, request: Request) -> "ClientMeta":
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
        else:
            ip = request.client.host if request.client else "unknown"
        user_agent = request.headers.get("user-agent") or "Desconocido"
        return cls(ip_address=(ip or "unknown")[:64], user_agent=user_agent[:255])


class SessionRegistry:
    """Whitelist de tokens emitidos.

    Un token firmado y vigente no alcanza: tiene que estar registrado aquí,
    activo y sin vencer. Nada de lo de acá hace commit; lo hace el llamador.
    """

    def __init__(self, sessions: SessionRepository, clock: Callable[[], datetime] = utcnow) -> None:
        self.sessions = sessions
        self.clock = clock

    async def save(self, user_id: str, raw_token: str, meta: ClientMeta, expires_at: datetime) -> ActiveSession:
        now = self.clock()
        return await self.sessions.add(ActiveSession(
            user_id=user_id,
            token_fingerprint=fingerprint(raw_token),
            expires_at=expires_at,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            is_active=True,
            created_at=now,
            last_activity_at=now,
        ))

    async def is_valid(self, raw_token: str) -> bool:
        now = self.clock()
        session = await self.sessions.find_valid(fingerprint(raw_token), now)
        if session is None:
            return False
        await self.sessions.touch(session.id, now)
        return True

    async def revoke_one(self, raw_token: str) -> int:
        return await self.sessions.delete_by_fingerprint(fingerprint(raw_token))

    async def revoke_all_except(self, user_id: str, raw_token: str) -> int:
        count = await self.sessions.delete_for_user_except(user_id, fingerprint(raw_token))
        security_event(logger, "SESSIONS_REVOKED", user_id, count=count, kept_current=True)
        return count

    async def revoke_all(self, user_id: str) -> int:
        count = await self.sessions.delete_for_user(user_id)
        security_event(logger, "SESSIONS_REVOKED", user_id, count=count, kept_current=False)
        return count

    async def sweep_expired(self) -> int:
        now = self.clock()
        return await self.sessions.delete_stale(now, now - SESSION_IDLE_LIMIT)
