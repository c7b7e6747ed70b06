import datetime as dt

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nubstudio.models import ActiveSession


class SessionRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def add(self, session: ActiveSession) -> ActiveSession:
        self.db.add(session)
        await self.db.flush()
        return session

    async def get_by_fingerprint(self, token_fingerprint: str) -> ActiveSession | None:
        result = await self.db.execute(
            select(ActiveSession).where(ActiveSession.token_fingerprint == token_fingerprint)
        )
        return result.scalar_one_or_none()

    async def find_valid(self, token_fingerprint: str, now: dt.datetime) -> ActiveSession | None:
        # las tres condiciones, no solo existencia
        result = await self.db.execute(
            select(ActiveSession).where(
                ActiveSession.token_fingerprint == token_fingerprint,
                ActiveSession.is_active.is_(True),
                ActiveSession.expires_at > now,
            )
        )
        return result.scalar_one_or_none()

    async def touch(self, session_id: int, now: dt.datetime) -> None:
        await self.db.execute(
            update(ActiveSession)
            .where(ActiveSession.id == session_id)
            .values(last_activity_at=now)
            .execution_options(synchronize_session=False)
        )

    async def delete_by_fingerprint(self, token_fingerprint: str) -> int:
        result = await self.db.execute(
            delete(ActiveSession).where(ActiveSession.token_fingerprint == token_fingerprint)
        )
        return result.rowcount or 0

    async def delete_for_user_except(self, user_id: str, keep_fingerprint: str) -> int:
        result = await self.db.execute(
            delete(ActiveSession).where(
                ActiveSession.user_id == user_id,
                ActiveSession.token_fingerprint != keep_fingerprint,
            )
        )
        return result.rowcount or 0

    async def delete_for_user(self, user_id: str) -> int:
        result = await self.db.execute(delete(ActiveSession).where(ActiveSession.user_id == user_id))
        return result.rowcount or 0

    async def delete_stale(self, now: dt.datetime, idle_cutoff: dt.datetime) -> int:
        result = await self.db.execute(
            delete(ActiveSession).where(
                or_(
                    ActiveSession.expires_at <= now,
                    ActiveSession.is_active.is_(False),
                    ActiveSession.last_activity_at < idle_cutoff,
                )
            )
        )
        return result.rowcount or 0

