"""
App-tier actions performed on behalf of an authenticated user.

Domain and validation failures come back as an ActionResult for display;
they are never raised across this boundary. Unexpected infrastructure
errors are logged and turned into a generic failure message.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from bridgechat import repositories
from bridgechat.authority import MembershipAuthority
from bridgechat.carrier import SmsGateway
from bridgechat.config import Settings
from bridgechat.credentials import UserCredential
from bridgechat.dispatcher import DispatchReport, dispatch_message, mark_failed
from bridgechat.domain import AppUserRef, GroupRole, MemberRef, SmsParticipantRef
from bridgechat.errors import BridgeChatError
from bridgechat.validators import normalize_to_e164, sanitize_for_sms, validate_message_content

logger = logging.getLogger(__name__)


class ActionResult(BaseModel):
    success: bool
    error: Optional[str] = None
    status_code: int = 200
    data: Any = None
    dispatch: Optional[DispatchReport] = None

    @classmethod
    def ok(cls, data: Any = None, **kwargs) -> "ActionResult":
        return cls(success=True, data=data, **kwargs)

    @classmethod
    def fail(cls, error: BridgeChatError) -> "ActionResult":
        return cls(success=False, error=error.message, status_code=error.status_code)


def _run(action: str, db: Session, fn: Callable[[], ActionResult]) -> ActionResult:
    try:
        return fn()
    except BridgeChatError as e:
        db.rollback()
        logger.info(f"{action} rejected: {e.message}")
        return ActionResult.fail(e)
    except Exception as e:
        db.rollback()
        logger.exception(f"{action} error: {e}")
        return ActionResult(success=False, error=f"Failed to {action}", status_code=500)


# =============================================================================
# Profile
# =============================================================================

def get_profile(db: Session, credential: UserCredential) -> ActionResult:
    def run():
        profile = repositories.get_profile(db, credential.user_id)
        if profile is None:
            return ActionResult(success=False, error="Profile not found", status_code=404)
        return ActionResult.ok(profile)

    return _run("load profile", db, run)


def update_profile(
    db: Session,
    credential: UserCredential,
    settings: Settings,
    changes: Dict[str, Any],
) -> ActionResult:
    """
    Apply the fields present in `changes` to the caller's profile.

    A blank phone number clears it; anything else is normalized to E.164
    before it reaches the store.
    """
    def run():
        fields = dict(changes)
        if fields.get("phone_number"):
            fields["phone_number"] = normalize_to_e164(fields["phone_number"], settings.DEFAULT_COUNTRY_CODE)
        elif "phone_number" in fields:
            fields["phone_number"] = None
        if "avatar_url" in fields and not fields["avatar_url"]:
            fields["avatar_url"] = None

        profile = repositories.update_profile(db, credential, **fields)
        return ActionResult.ok(profile)

    return _run("update profile", db, run)


# =============================================================================
# Groups
# =============================================================================

def create_group(
    db: Session,
    credential: UserCredential,
    name: str,
    routing_phone_number: str,
    settings: Settings,
) -> ActionResult:
    def run():
        number = normalize_to_e164(routing_phone_number, settings.DEFAULT_COUNTRY_CODE)
        group = repositories.create_group(db, credential, name, number)
        return ActionResult.ok(group, status_code=201)

    return _run("create group", db, run)


def update_group(
    db: Session,
    credential: UserCredential,
    group_id: str,
    settings: Settings,
    name: Optional[str] = None,
    routing_phone_number: Optional[str] = None,
) -> ActionResult:
    def run():
        MembershipAuthority(db).require_manage(group_id, credential.user_id)
        number = None
        if routing_phone_number:
            number = normalize_to_e164(routing_phone_number, settings.DEFAULT_COUNTRY_CODE)
        group = repositories.update_group(db, group_id, name=name, routing_phone_number=number)
        return ActionResult.ok(group)

    return _run("update group", db, run)


def delete_group(db: Session, credential: UserCredential, group_id: str) -> ActionResult:
    def run():
        MembershipAuthority(db).require_delete(group_id, credential.user_id)
        repositories.delete_group(db, group_id)
        return ActionResult.ok()

    return _run("delete group", db, run)


def list_my_groups(db: Session, credential: UserCredential) -> ActionResult:
    """Groups the caller belongs to, most recently updated first."""
    def run():
        return ActionResult.ok(repositories.list_groups_for_user(db, credential.user_id))

    return _run("load groups", db, run)


def get_group_with_members(db: Session, credential: UserCredential, group_id: str) -> ActionResult:
    """A group and its members, each resolved to its participant. Members only."""
    def run():
        MembershipAuthority(db).require_send(group_id, credential.user_id)
        group = repositories.get_group(db, group_id)
        if group is None:
            return ActionResult(success=False, error="Group not found", status_code=404)

        members = [
            (membership, repositories.get_participant(db, membership.member))
            for membership in repositories.list_members(db, group_id)
        ]
        return ActionResult.ok({"group": group, "members": members})

    return _run("load group", db, run)


# =============================================================================
# Members
# =============================================================================

def add_sms_participant(
    db: Session,
    credential: UserCredential,
    group_id: str,
    phone_number: str,
    settings: Settings,
    display_name: Optional[str] = None,
) -> ActionResult:
    """Find-or-create the participant by phone, then add it to the group."""
    def run():
        MembershipAuthority(db).require_manage(group_id, credential.user_id)
        number = normalize_to_e164(phone_number, settings.DEFAULT_COUNTRY_CODE)
        participant, created = repositories.find_or_create_sms_participant(
            db, credential, number, display_name or number
        )
        repositories.add_member(db, group_id, SmsParticipantRef(sms_participant_id=participant.id))
        return ActionResult.ok({"participant": participant, "created": created}, status_code=201)

    return _run("add participant", db, run)


def add_app_user(db: Session, credential: UserCredential, group_id: str, user_id: str) -> ActionResult:
    def run():
        MembershipAuthority(db).require_manage(group_id, credential.user_id)
        if repositories.get_profile(db, user_id) is None:
            return ActionResult(success=False, error="User not found", status_code=404)
        membership = repositories.add_member(db, group_id, AppUserRef(user_id=user_id), GroupRole.MEMBER)
        return ActionResult.ok(membership, status_code=201)

    return _run("add user", db, run)


def remove_member(
    db: Session,
    credential: UserCredential,
    group_id: str,
    target: MemberRef,
) -> ActionResult:
    def run():
        MembershipAuthority(db).require_remove(group_id, credential.user_id, target)
        if not repositories.remove_member(db, group_id, target):
            return ActionResult(success=False, error="Member not found", status_code=404)
        return ActionResult.ok()

    return _run("remove member", db, run)


def leave_group(db: Session, credential: UserCredential, group_id: str) -> ActionResult:
    return remove_member(db, credential, group_id, AppUserRef(user_id=credential.user_id))


# =============================================================================
# Messages
# =============================================================================

def send_message(
    db: Session,
    credential: UserCredential,
    group_id: str,
    content: str,
    gateway: Optional[SmsGateway],
    settings: Settings,
) -> ActionResult:
    """
    Validate, store and dispatch an app-origin message.

    The stored content is trimmed and sanitized for SMS. Dispatch runs
    in-process right after the insert; if it fails the message is left
    marked failed and the send itself still succeeds.
    """
    def run():
        text = sanitize_for_sms(validate_message_content(content))
        MembershipAuthority(db).require_send(group_id, credential.user_id)
        message = repositories.create_app_message(db, credential, group_id, text)

        report = None
        try:
            if gateway is None and repositories.list_sms_recipients(db, group_id):
                raise BridgeChatError("Carrier gateway not configured")
            report = dispatch_message(db, gateway, settings, message.id)
        except BridgeChatError as e:
            logger.error(f"SMS delivery for {message.id} failed: {e.message}")
            mark_failed(db, message.id)

        return ActionResult.ok(repositories.get_message(db, message.id), status_code=201, dispatch=report)

    return _run("send message", db, run)


def list_messages(
    db: Session,
    credential: UserCredential,
    group_id: str,
    limit: int = 50,
    before: Optional[datetime] = None,
) -> ActionResult:
    def run():
        MembershipAuthority(db).require_send(group_id, credential.user_id)
        return ActionResult.ok(repositories.list_group_messages(db, group_id, limit=limit, before=before))

    return _run("load messages", db, run)
