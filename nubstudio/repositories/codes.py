import datetime as dt

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nubstudio.models import CodePurpose, RecoveryCode, VerificationCode


class RecoveryCodeRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def add(self, code: RecoveryCode) -> RecoveryCode:
        self.db.add(code)
        await self.db.flush()
        return code

    async def find_usable(self, user_id: str, code_hash: str, now: dt.datetime) -> RecoveryCode | None:
        result = await self.db.execute(
            select(RecoveryCode)
            .where(
                RecoveryCode.user_id == user_id,
                RecoveryCode.code_hash == code_hash,
                RecoveryCode.used.is_(False),
                RecoveryCode.expires_at > now,
            )
            .order_by(RecoveryCode.created_at.desc(), RecoveryCode.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def invalidate_for_user(self, user_id: str, now: dt.datetime) -> int:
        result = await self.db.execute(
            update(RecoveryCode)
            .where(RecoveryCode.user_id == user_id, RecoveryCode.used.is_(False))
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_stale(self, now: dt.datetime) -> int:
        result = await self.db.execute(
            delete(RecoveryCode).where(or_(RecoveryCode.expires_at < now, RecoveryCode.used.is_(True)))
        )
        return result.rowcount or 0


class VerificationCodeRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def add(self, code: VerificationCode) -> VerificationCode:
        self.db.add(code)
        await self.db.flush()
        return code

    async def find_latest_unresolved(self, user_id: str, purpose: CodePurpose) -> VerificationCode | None:
        result = await self.db.execute(
            select(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose,
                VerificationCode.used.is_(False),
            )
            .order_by(VerificationCode.created_at.desc(), VerificationCode.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def invalidate(self, user_id: str, purpose: CodePurpose) -> int:
        result = await self.db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.user_id == user_id,
                VerificationCode.purpose == purpose,
                VerificationCode.used.is_(False),
            )
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def mark_used(self, code_id: int) -> int:
        # condición used=False: si dos requests compiten, solo uno gana
        result = await self.db.execute(
            update(VerificationCode)
            .where(VerificationCode.id == code_id, VerificationCode.used.is_(False))
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_stale(self, now: dt.datetime) -> int:
        result = await self.db.execute(
            delete(VerificationCode).where(or_(VerificationCode.expires_at < now, VerificationCode.used.is_(True)))
        )
        return result.rowcount or 0
