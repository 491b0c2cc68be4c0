"""
Role-resolution collaborators: answer "who holds role X in tenant T" and
"is U an active member of T" for approver resolution and delegation.
"""

from dataclasses import dataclass
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from approval_engine.models.user import User

logger = structlog.get_logger()


class RoleResolver(Protocol):
    async def list_active_users_with_role(self, tenant_id: str, role: str) -> set[str]: ...

    async def is_active_tenant_user(self, tenant_id: str, user_id: str) -> bool: ...


@dataclass(frozen=True)
class DirectoryUser:
    id: str
    tenant_id: str
    role: str
    is_active: bool = True


class StaticRoleResolver:
    """Fixed in-memory directory."""

    def __init__(self, users: Iterable[DirectoryUser] = ()):
        self._users: dict[str, DirectoryUser] = {u.id: u for u in users}

    def add(self, user: DirectoryUser) -> None:
        self._users[user.id] = user

    def deactivate(self, user_id: str) -> None:
        user = self._users[user_id]
        self._users[user_id] = DirectoryUser(
            id=user.id, tenant_id=user.tenant_id, role=user.role, is_active=False
        )

    async def list_active_users_with_role(self, tenant_id: str, role: str) -> set[str]:
        return {
            u.id
            for u in self._users.values()
            if u.tenant_id == tenant_id and u.role == role and u.is_active
        }

    async def is_active_tenant_user(self, tenant_id: str, user_id: str) -> bool:
        user = self._users.get(user_id)
        return bool(user and user.tenant_id == tenant_id and user.is_active)


class SqlAlchemyRoleResolver:
    """Reads the ``users`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_active_users_with_role(self, tenant_id: str, role: str) -> set[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(User.id).where(
                    User.tenant_id == tenant_id,
                    User.role == role,
                    User.is_active == True,  # noqa: E712
                    User.deleted_at.is_(None),
                )
            )
            return {str(row[0]) for row in result.all()}

    async def is_active_tenant_user(self, tenant_id: str, user_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(User.id).where(
                    User.id == user_id,
                    User.tenant_id == tenant_id,
                    User.is_active == True,  # noqa: E712
                    User.deleted_at.is_(None),
                )
            )
            return result.scalar_one_or_none() is not None
