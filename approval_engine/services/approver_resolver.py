"""
Approver resolution: expands a level's approver settings into the set
of user ids eligible to act on it.

  USER              → the configured user, if still an active tenant member
  ROLE              → every active tenant user holding the role
  MANAGER           → every active tenant user holding any of MANAGER_ROLES
  ORGANIZATION_HEAD → every active tenant user holding any of ORGANIZATION_HEAD_ROLES

An empty result is a hard failure (NoEligibleApproversError).
"""

from typing import Optional

import structlog

from approval_engine.config import Settings, get_settings
from approval_engine.domain import ApprovalChainLevel, ApproverType
from approval_engine.errors import InvalidChainStructureError, NoEligibleApproversError
from approval_engine.services.role_resolver import RoleResolver

logger = structlog.get_logger()


class ApproverResolver:
    def __init__(self, role_resolver: RoleResolver, settings: Optional[Settings] = None):
        self._roles = role_resolver
        self._settings = settings or get_settings()

    async def _users_with_any_role(self, tenant_id: str, roles: list[str]) -> set[str]:
        users: set[str] = set()
        for role in roles:
            users |= await self._roles.list_active_users_with_role(tenant_id, role)
        return users

    async def resolve(self, level: ApprovalChainLevel, tenant_id: str) -> set[str]:
        if level.approver_type == ApproverType.USER:
            if not level.approver_user_id:
                raise InvalidChainStructureError(
                    "User ID required for USER approver type", {"level": level.level}
                )
            approvers = (
                {level.approver_user_id}
                if await self._roles.is_active_tenant_user(tenant_id, level.approver_user_id)
                else set()
            )
        elif level.approver_type == ApproverType.ROLE:
            if not level.approver_role_id:
                raise InvalidChainStructureError(
                    "Role ID required for ROLE approver type", {"level": level.level}
                )
            approvers = await self._roles.list_active_users_with_role(
                tenant_id, level.approver_role_id
            )
        elif level.approver_type == ApproverType.MANAGER:
            approvers = await self._users_with_any_role(
                tenant_id, self._settings.manager_roles_list
            )
        else:
            approvers = await self._users_with_any_role(
                tenant_id, self._settings.organization_head_roles_list
            )

        if not approvers:
            logger.warning(
                "no_eligible_approvers",
                tenant_id=tenant_id,
                level=level.level,
                approver_type=level.approver_type.value,
            )
            raise NoEligibleApproversError(level.level, tenant_id)

        if len(approvers) < level.min_approvers:
            # Quorum cannot be met until the directory changes or steps are delegated
            logger.warning(
                "approvers_below_quorum",
                tenant_id=tenant_id,
                level=level.level,
                approvers=len(approvers),
                min_approvers=level.min_approvers,
            )
        return set(approvers)
