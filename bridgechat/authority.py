"""
Membership authority: who may do what inside a group.

The predicates are pure functions of roles. MembershipAuthority resolves
roles from the store and raises PermissionDeniedError from its require_*
helpers.

Inbound SMS never passes through here: it is authenticated by the carrier
signature and written with a service credential.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from bridgechat import repositories
from bridgechat.domain import AppUserRef, GroupRole, MemberRef
from bridgechat.errors import PermissionDeniedError

logger = logging.getLogger(__name__)


def can_send(role: Optional[GroupRole]) -> bool:
    return role is not None


def can_manage_group(role: Optional[GroupRole]) -> bool:
    """Add/remove members and edit the routing number."""
    return role in (GroupRole.OWNER, GroupRole.ADMIN)


def can_delete_group(role: Optional[GroupRole]) -> bool:
    return role == GroupRole.OWNER


def can_remove_member(
    actor_id: str,
    actor_role: Optional[GroupRole],
    target: MemberRef,
    target_role: Optional[GroupRole],
) -> bool:
    """
    Decide whether actor may remove target from a group.

    - anyone may remove themself, whatever their role
    - nobody may remove another member whose role is owner
    - otherwise owners and admins may remove members

    A sole owner leaving leaves the group without an owner; nothing here
    prevents that.
    """
    if isinstance(target, AppUserRef) and target.user_id == actor_id:
        return actor_role is not None

    if target_role == GroupRole.OWNER:
        return False

    return can_manage_group(actor_role)


class MembershipAuthority:
    """Role lookups and permission checks for one request's session."""

    def __init__(self, db: Session):
        self._db = db

    def role_of(self, group_id: str, user_id: str) -> Optional[GroupRole]:
        return repositories.get_user_role(self._db, group_id, user_id)

    def is_member(self, group_id: str, user_id: str) -> bool:
        return self.role_of(group_id, user_id) is not None

    def require_send(self, group_id: str, user_id: str) -> GroupRole:
        role = self.role_of(group_id, user_id)
        if not can_send(role):
            raise PermissionDeniedError("You are not a member of this group")
        return role

    def require_manage(self, group_id: str, user_id: str) -> GroupRole:
        role = self.role_of(group_id, user_id)
        if not can_manage_group(role):
            logger.info(f"Manage denied for {user_id} in group {group_id} (role={role})")
            raise PermissionDeniedError("Only owners and admins can manage this group")
        return role

    def require_delete(self, group_id: str, user_id: str) -> GroupRole:
        role = self.role_of(group_id, user_id)
        if not can_delete_group(role):
            raise PermissionDeniedError("Only the group owner can delete this group")
        return role

    def require_remove(self, group_id: str, actor_id: str, target: MemberRef) -> None:
        actor_role = self.role_of(group_id, actor_id)
        target_role = repositories.get_member_role(self._db, group_id, target)
        if can_remove_member(actor_id, actor_role, target, target_role):
            return

        if actor_role is None:
            raise PermissionDeniedError("You are not a member of this group")
        if target_role == GroupRole.OWNER:
            raise PermissionDeniedError("Cannot remove the group owner")
        raise PermissionDeniedError("Only owners and admins can remove members")
