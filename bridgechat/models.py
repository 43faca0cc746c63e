"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For domain variants, see domain.py; for request/response schemas, see
schemas.py.

The polymorphic columns (group_members.user_id / sms_participant_id and
messages.sender_user_id / sender_sms_participant_id) are guarded by CHECK
constraints so the store rejects rows with both or neither set.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)

from bridgechat.storage import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Profile(Base):
    """
    App user profile, mirrored from the auth provider.

    Table: profiles
    """
    __tablename__ = "profiles"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    phone_number = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class SmsParticipant(Base):
    """
    Phone-only participant.

    Table: sms_participants
    Unique: phone_number (one row per phone)
    """
    __tablename__ = "sms_participants"

    id = Column(String, primary_key=True, default=_uuid)
    phone_number = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=False)
    created_by_user_id = Column(
        String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class Group(Base):
    """
    Conversation container.

    Table: groups
    Unique: routing_phone_number (inbound routing key)
    """
    __tablename__ = "groups"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    routing_phone_number = Column(String, nullable=False, unique=True, index=True)
    created_by_user_id = Column(
        String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class GroupMember(Base):
    """
    Membership of exactly one app user or SMS participant in a group.

    Table: group_members
    """
    __tablename__ = "group_members"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND sms_participant_id IS NULL) OR "
            "(user_id IS NULL AND sms_participant_id IS NOT NULL)",
            name="chk_member_type",
        ),
        CheckConstraint("role IN ('owner', 'admin', 'member')", name="chk_member_role"),
        Index(
            "idx_group_members_user",
            "group_id",
            "user_id",
            unique=True,
            sqlite_where=text("user_id IS NOT NULL"),
            postgresql_where=text("user_id IS NOT NULL"),
        ),
        Index(
            "idx_group_members_sms",
            "group_id",
            "sms_participant_id",
            unique=True,
            sqlite_where=text("sms_participant_id IS NOT NULL"),
            postgresql_where=text("sms_participant_id IS NOT NULL"),
        ),
    )

    id = Column(String, primary_key=True, default=_uuid)
    group_id = Column(String, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("profiles.id", ondelete="CASCADE"), nullable=True)
    sms_participant_id = Column(
        String, ForeignKey("sms_participants.id", ondelete="CASCADE"), nullable=True
    )
    role = Column(String, nullable=False, default="member")
    joined_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class Message(Base):
    """
    Unified message timeline row for both origins.

    Table: messages
    """
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint(
            "(origin = 'app' AND sender_user_id IS NOT NULL AND sender_sms_participant_id IS NULL) OR "
            "(origin = 'sms' AND sender_user_id IS NULL AND sender_sms_participant_id IS NOT NULL)",
            name="chk_sender_type",
        ),
        CheckConstraint("origin = 'app' OR external_id IS NOT NULL", name="chk_sms_has_external_id"),
        CheckConstraint("origin = 'app' OR delivery_status IS NULL", name="chk_sms_no_delivery_status"),
        CheckConstraint(
            "delivery_status IS NULL OR delivery_status IN "
            "('pending', 'queued', 'sent', 'delivered', 'failed', 'undelivered')",
            name="chk_delivery_status",
        ),
        Index("idx_messages_group_created", "group_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    group_id = Column(String, ForeignKey("groups.id", ondelete="CASCADE"), nullable=False, index=True)
    origin = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    sender_user_id = Column(String, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    sender_sms_participant_id = Column(
        String, ForeignKey("sms_participants.id", ondelete="SET NULL"), nullable=True
    )
    external_id = Column(String, nullable=True, index=True)
    delivery_status = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
