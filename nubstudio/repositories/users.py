from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from nubstudio.models import User


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserRepository:
    """Acceso a `users`. Los contadores se actualizan con UPDATE atómicos."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_id(self, user_id: str) -> User | None:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> User | None:
        result = await self.db.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    async def email_exists(self, email: str) -> bool:
        result = await self.db.execute(select(User.id).where(User.email == normalize_email(email)).limit(1))
        return result.scalar_one_or_none() is not None

    async def add(self, user: User) -> User:
        user.email = normalize_email(user.email)
        self.db.add(user)
        await self.db.flush()
        return user

    async def delete(self, user_id: str) -> None:
        await self.db.execute(delete(User).where(User.id == user_id))

    async def update_fields(self, user: User, **values: Any) -> None:
        """UPDATE directo + espejo en memoria sin marcar el objeto como sucio."""
        await self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        for key, value in values.items():
            set_committed_value(user, key, value)

    async def increment(self, user: User, field: str, **values: Any) -> int:
        """`field = field + 1` en la BD; devuelve el valor esperado tras el incremento."""
        column = getattr(User, field)
        await self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values({field: column + 1, **values})
            .execution_options(synchronize_session=False)
        )
        new_value = (getattr(user, field) or 0) + 1
        set_committed_value(user, field, new_value)
        for key, value in values.items():
            set_committed_value(user, key, value)
        return new_value
