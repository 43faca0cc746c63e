"""
Repository functions over the relational store.

Each function takes the request's Session as its first argument and returns
domain variants from domain.py, never ORM rows. Writes that skip per-row
authorization take a ServiceCredential; writes made on behalf of a user take
a UserCredential (see credentials.py).
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bridgechat import models
from bridgechat.credentials import require_service, require_user
from bridgechat.domain import (
    AppOriginMessage,
    AppUser,
    AppUserRef,
    DeliveryStatus,
    Group,
    GroupRole,
    MemberRef,
    Membership,
    MessageOrigin,
    Participant,
    SmsOriginMessage,
    SmsParticipant,
    SmsParticipantRef,
    membership_from_row,
    message_from_row,
)
from bridgechat.errors import ConflictError, NotFoundError
from bridgechat.validators import mask_phone_number, validate_phone_number

logger = logging.getLogger(__name__)

_UNSET = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Profile Repository Functions
# =============================================================================

def get_profile(db: Session, user_id: str) -> Optional[AppUser]:
    row = db.get(models.Profile, user_id)
    return AppUser.model_validate(row) if row else None


def ensure_profile(db: Session, user_id: str, email: str, display_name: Optional[str] = None) -> AppUser:
    """
    Mirror an authenticated user into the profiles table.

    The auth provider owns the account; the first time a token is seen the
    profile is created with a display name defaulting to the email's local
    part. Existing profiles are returned untouched.
    """
    row = db.get(models.Profile, user_id)
    if row is not None:
        return AppUser.model_validate(row)

    name = display_name or (email.split("@", 1)[0] if "@" in email else email)
    row = models.Profile(id=user_id, email=email, display_name=name)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Another request provisioned the same user first
        db.rollback()
        row = db.get(models.Profile, user_id)
    logger.info(f"Profile provisioned: {user_id}")
    return AppUser.model_validate(row)


def update_profile(
    db: Session,
    credential,
    display_name: Optional[str] = None,
    phone_number=_UNSET,
    avatar_url=_UNSET,
) -> AppUser:
    """
    Update the acting user's own profile.

    A phone number must already be E.164; None clears it. Nothing is
    written if validation fails.
    """
    user = require_user(credential)
    if phone_number is not _UNSET and phone_number is not None:
        phone_number = validate_phone_number(phone_number)

    row = db.get(models.Profile, user.user_id)
    if row is None:
        raise NotFoundError("Profile not found")

    if display_name:
        row.display_name = display_name
    if phone_number is not _UNSET:
        row.phone_number = phone_number
    if avatar_url is not _UNSET:
        row.avatar_url = avatar_url

    db.commit()
    return AppUser.model_validate(row)


# =============================================================================
# SMS Participant Repository Functions
# =============================================================================

def get_sms_participant(db: Session, participant_id: str) -> Optional[SmsParticipant]:
    row = db.get(models.SmsParticipant, participant_id)
    return SmsParticipant.model_validate(row) if row else None


def get_participant(db: Session, ref: MemberRef) -> Optional[Participant]:
    """Resolve a member reference to the app user or SMS participant behind it."""
    if isinstance(ref, AppUserRef):
        return get_profile(db, ref.user_id)
    return get_sms_participant(db, ref.sms_participant_id)


def get_sms_participant_by_phone(db: Session, phone_number: str) -> Optional[SmsParticipant]:
    """Exact match on the E.164 phone number."""
    row = db.execute(
        select(models.SmsParticipant).where(models.SmsParticipant.phone_number == phone_number)
    ).scalar_one_or_none()
    return SmsParticipant.model_validate(row) if row else None


def find_or_create_sms_participant(
    db: Session,
    credential,
    phone_number: str,
    display_name: str,
) -> Tuple[SmsParticipant, bool]:
    """
    Find an SMS participant by phone number or create it (idempotent).

    An existing participant whose display name differs is renamed in place.

    Returns:
        Tuple of (participant, created)
        - created is False whenever a row for the phone already existed
    """
    user = require_user(credential)

    row = db.execute(
        select(models.SmsParticipant).where(models.SmsParticipant.phone_number == phone_number)
    ).scalar_one_or_none()

    if row is not None:
        if row.display_name != display_name:
            logger.info(f"Renaming SMS participant {row.id}")
            row.display_name = display_name
            db.commit()
        return SmsParticipant.model_validate(row), False

    row = models.SmsParticipant(
        phone_number=phone_number,
        display_name=display_name,
        created_by_user_id=user.user_id,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race on the phone number uniqueness constraint
        db.rollback()
        logger.info(f"SMS participant created concurrently: {mask_phone_number(phone_number)}")
        existing = get_sms_participant_by_phone(db, phone_number)
        if existing is None:
            raise
        return existing, False

    logger.info(f"SMS participant created: {row.id} ({mask_phone_number(phone_number)})")
    return SmsParticipant.model_validate(row), True


# =============================================================================
# Group Repository Functions
# =============================================================================

def get_group(db: Session, group_id: str) -> Optional[Group]:
    row = db.get(models.Group, group_id)
    return Group.model_validate(row) if row else None


def get_group_by_routing_number(db: Session, routing_phone_number: str) -> Optional[Group]:
    """Exact match on the group's routing number (unique across groups)."""
    row = db.execute(
        select(models.Group).where(models.Group.routing_phone_number == routing_phone_number)
    ).scalar_one_or_none()
    return Group.model_validate(row) if row else None


def create_group(db: Session, credential, name: str, routing_phone_number: str) -> Group:
    """
    Create a group and install the acting user as its owner.

    Raises:
        ConflictError: if the routing number is already bound to a group
    """
    user = require_user(credential)

    group = models.Group(
        name=name,
        routing_phone_number=routing_phone_number,
        created_by_user_id=user.user_id,
    )
    db.add(group)
    try:
        db.flush()
        db.add(models.GroupMember(group_id=group.id, user_id=user.user_id, role=GroupRole.OWNER.value))
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("This routing number is already in use by another group")

    logger.info(f"Group created: {group.id} by {user.user_id}")
    return Group.model_validate(group)


def update_group(
    db: Session,
    group_id: str,
    name: Optional[str] = None,
    routing_phone_number: Optional[str] = None,
) -> Group:
    row = db.get(models.Group, group_id)
    if row is None:
        raise NotFoundError("Group not found")

    if name:
        row.name = name
    if routing_phone_number:
        row.routing_phone_number = routing_phone_number

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("This routing number is already in use by another group")

    return Group.model_validate(row)


def delete_group(db: Session, group_id: str) -> None:
    """Delete a group; memberships and messages go with it."""
    row = db.get(models.Group, group_id)
    if row is None:
        raise NotFoundError("Group not found")
    db.delete(row)
    db.commit()
    logger.info(f"Group deleted: {group_id}")


def list_groups_for_user(db: Session, user_id: str) -> List[Group]:
    rows = db.execute(
        select(models.Group)
        .join(models.GroupMember, models.GroupMember.group_id == models.Group.id)
        .where(models.GroupMember.user_id == user_id)
        .order_by(models.Group.updated_at.desc())
    ).scalars().all()
    return [Group.model_validate(row) for row in rows]


# =============================================================================
# Membership Repository Functions
# =============================================================================

def _member_filter(ref: MemberRef):
    if isinstance(ref, AppUserRef):
        return models.GroupMember.user_id == ref.user_id
    return models.GroupMember.sms_participant_id == ref.sms_participant_id


def get_member_role(db: Session, group_id: str, ref: MemberRef) -> Optional[GroupRole]:
    role = db.execute(
        select(models.GroupMember.role)
        .where(models.GroupMember.group_id == group_id)
        .where(_member_filter(ref))
    ).scalar_one_or_none()
    return GroupRole(role) if role is not None else None


def get_user_role(db: Session, group_id: str, user_id: str) -> Optional[GroupRole]:
    return get_member_role(db, group_id, AppUserRef(user_id=user_id))


def is_sms_member(db: Session, group_id: str, sms_participant_id: str) -> bool:
    ref = SmsParticipantRef(sms_participant_id=sms_participant_id)
    return get_member_role(db, group_id, ref) is not None


def add_member(
    db: Session,
    group_id: str,
    ref: MemberRef,
    role: GroupRole = GroupRole.MEMBER,
) -> Membership:
    """
    Add an app user or SMS participant to a group.

    Raises:
        ConflictError: if the participant is already a member
    """
    row = models.GroupMember(group_id=group_id, role=role.value)
    if isinstance(ref, AppUserRef):
        row.user_id = ref.user_id
    else:
        row.sms_participant_id = ref.sms_participant_id

    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        if isinstance(ref, AppUserRef):
            raise ConflictError("User is already a member of this group")
        raise ConflictError("Participant is already a member of this group")

    return membership_from_row(row)


def remove_member(db: Session, group_id: str, ref: MemberRef) -> bool:
    """Remove a membership. Returns False if there was nothing to remove."""
    row = db.execute(
        select(models.GroupMember)
        .where(models.GroupMember.group_id == group_id)
        .where(_member_filter(ref))
    ).scalar_one_or_none()
    if row is None:
        return False
    db.delete(row)
    db.commit()
    return True


def list_members(db: Session, group_id: str) -> List[Membership]:
    rows = db.execute(
        select(models.GroupMember)
        .where(models.GroupMember.group_id == group_id)
        .order_by(models.GroupMember.joined_at.asc())
    ).scalars().all()
    return [membership_from_row(row) for row in rows]


def list_sms_recipients(db: Session, group_id: str) -> List[SmsParticipant]:
    """SMS participants that are members of the group, in join order."""
    rows = db.execute(
        select(models.SmsParticipant)
        .join(models.GroupMember, models.GroupMember.sms_participant_id == models.SmsParticipant.id)
        .where(models.GroupMember.group_id == group_id)
        .order_by(models.GroupMember.joined_at.asc(), models.GroupMember.id.asc())
    ).scalars().all()
    return [SmsParticipant.model_validate(row) for row in rows]


# =============================================================================
# Message Repository Functions
# =============================================================================

def create_app_message(db: Session, credential, group_id: str, content: str) -> AppOriginMessage:
    """Insert an app-origin message sent by the acting user, status pending."""
    user = require_user(credential)

    row = models.Message(
        group_id=group_id,
        origin=MessageOrigin.APP.value,
        content=content,
        sender_user_id=user.user_id,
        delivery_status=DeliveryStatus.PENDING.value,
    )
    db.add(row)
    db.commit()
    logger.info(f"App message created: {row.id} in group {group_id}")
    return message_from_row(row)


def create_sms_message(
    db: Session,
    credential,
    group_id: str,
    sms_participant_id: str,
    content: str,
    external_id: str,
) -> SmsOriginMessage:
    """
    Insert an sms-origin message as received from the carrier.

    No duplicate check is made on external_id; a redelivered inbound
    message produces a second row.
    """
    require_service(credential)

    row = models.Message(
        group_id=group_id,
        origin=MessageOrigin.SMS.value,
        content=content,
        sender_sms_participant_id=sms_participant_id,
        external_id=external_id,
    )
    db.add(row)
    db.commit()
    logger.info(f"SMS message created: {row.id} in group {group_id}, external_id={external_id}")
    return message_from_row(row)


def get_message(db: Session, message_id: str):
    row = db.get(models.Message, message_id)
    return message_from_row(row) if row else None


def get_message_by_external_id(db: Session, external_id: str):
    """
    Look up a message by carrier identifier.

    Identifiers are expected to be unique per message; should duplicates
    exist, the oldest row wins.
    """
    row = db.execute(
        select(models.Message)
        .where(models.Message.external_id == external_id)
        .order_by(models.Message.created_at.asc())
        .limit(1)
    ).scalar_one_or_none()
    return message_from_row(row) if row else None


def update_delivery(
    db: Session,
    credential,
    message_id: str,
    status: DeliveryStatus,
    external_id=_UNSET,
):
    """
    Overwrite the delivery status (and optionally the external id) of an
    app-origin message.

    Raises:
        NotFoundError: if the message does not exist
        ValueError: if the message is sms-origin
    """
    require_service(credential)

    row = db.get(models.Message, message_id)
    if row is None:
        raise NotFoundError(f"Message {message_id} not found")
    if row.origin != MessageOrigin.APP.value:
        raise ValueError(f"Message {message_id} is not app-origin and has no delivery status")

    row.delivery_status = DeliveryStatus(status).value
    if external_id is not _UNSET:
        row.external_id = external_id
    row.updated_at = _now()
    db.commit()
    return message_from_row(row)


def list_group_messages(
    db: Session,
    group_id: str,
    limit: int = 50,
    before: Optional[datetime] = None,
) -> list:
    """Most recent messages of a group, newest first."""
    query = select(models.Message).where(models.Message.group_id == group_id)
    if before is not None:
        query = query.where(models.Message.created_at < before)
    query = query.order_by(models.Message.created_at.desc()).limit(limit)
    return [message_from_row(row) for row in db.execute(query).scalars().all()]
