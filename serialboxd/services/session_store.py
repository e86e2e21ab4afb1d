import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from serialboxd.models.user import User


@dataclass
class StoredSession:
    user_id: int
    username: str
    envelope: str | None


class SessionStore:
    """Reads and writes the single encrypted refresh token kept on each user row."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: int) -> StoredSession | None:
        result = await self.db.execute(
            select(User.id, User.username, User.refresh_token).where(User.id == user_id)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return StoredSession(user_id=row.id, username=row.username, envelope=row.refresh_token)

    async def replace(self, user_id: int, envelope: str | None) -> None:
        await self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(refresh_token=envelope)
            .execution_options(synchronize_session=False)
        )

    async def swap(self, user_id: int, expected: str, envelope: str) -> bool:
        """Overwrite the stored envelope only if it is still ``expected``."""
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id, User.refresh_token == expected)
            .values(refresh_token=envelope)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def clear(self, user_id: int) -> bool:
        result = await self.db.execute(
            update(User)
            .where(User.id == user_id, User.refresh_token.is_not(None))
            .values(refresh_token=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


class SessionLockRegistry:
    """Per-account asyncio locks; an entry lives only while someone holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._users: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[user_id] -= 1
            if not self._users[user_id]:
                del self._users[user_id]
                del self._locks[user_id]

    def __len__(self) -> int:
        return len(self._locks)
