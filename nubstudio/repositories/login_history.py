from sqlalchemy.ext.asyncio import AsyncSession

from nubstudio.models import LoginHistory, LoginKind, User


class LoginHistoryRepository:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def record(self, user: User | None, email: str, kind: LoginKind, reason: str | None = None) -> None:
        self.db.add(LoginHistory(
            user_id=user.id if user else None,
            email=user.email if user else email,
            kind=kind,
            reason=reason,
        ))
        await self.db.flush()
