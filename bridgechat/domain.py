"""
Domain models for BridgeChat.

Participants and messages are tagged unions rather than rows with two
nullable foreign keys:

- Participant = AppUser | SmsParticipant          (discriminator: kind)
- MemberRef   = AppUserRef | SmsParticipantRef     (discriminator: kind)
- Message     = AppOriginMessage | SmsOriginMessage (discriminator: origin)

Application code constructs and consumes only these variants. The database
enforces the same exclusivity independently with CHECK constraints (see
models.py); the mappers at the bottom of this module refuse rows that
violate it.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from bridgechat.validators import validate_phone_number


class DeliveryStatus(str, Enum):
    """Delivery state of an app-origin message across its SMS recipients."""

    PENDING = "pending"          # created, not yet handed to the carrier
    QUEUED = "queued"            # carrier accepted
    SENT = "sent"                # handed to the downstream network
    DELIVERED = "delivered"      # confirmed, or nothing to deliver
    FAILED = "failed"            # carrier could not send
    UNDELIVERED = "undelivered"  # downstream network rejected

    @property
    def is_failure(self) -> bool:
        return self in (DeliveryStatus.FAILED, DeliveryStatus.UNDELIVERED)


class MessageOrigin(str, Enum):
    APP = "app"
    SMS = "sms"


class GroupRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class _Frozen(BaseModel):
    # extra="forbid" rejects a second sender field on a message variant
    model_config = ConfigDict(frozen=True, from_attributes=True, extra="forbid")


# =============================================================================
# Participants
# =============================================================================

class AppUser(_Frozen):
    """An authenticated application user."""

    kind: Literal["app_user"] = "app_user"
    id: str
    email: str
    display_name: str
    phone_number: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("phone_number")
    @classmethod
    def validate_optional_phone(cls, v: Optional[str]) -> Optional[str]:
        return validate_phone_number(v) if v is not None else None


class SmsParticipant(_Frozen):
    """A phone-only participant; has no login and is keyed by phone number."""

    kind: Literal["sms_participant"] = "sms_participant"
    id: str
    phone_number: str
    display_name: str
    created_by_user_id: str
    created_at: datetime
    updated_at: datetime

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return validate_phone_number(v)


Participant = Annotated[Union[AppUser, SmsParticipant], Field(discriminator="kind")]


class AppUserRef(_Frozen):
    kind: Literal["app_user"] = "app_user"
    user_id: str


class SmsParticipantRef(_Frozen):
    kind: Literal["sms_participant"] = "sms_participant"
    sms_participant_id: str


MemberRef = Annotated[Union[AppUserRef, SmsParticipantRef], Field(discriminator="kind")]


def member_id(ref: MemberRef) -> str:
    if isinstance(ref, AppUserRef):
        return ref.user_id
    return ref.sms_participant_id


# =============================================================================
# Groups
# =============================================================================

class Group(_Frozen):
    """A conversation bound to one routing phone number."""

    id: str
    name: str
    routing_phone_number: str
    created_by_user_id: str
    created_at: datetime
    updated_at: datetime

    @field_validator("routing_phone_number")
    @classmethod
    def validate_routing_number(cls, v: str) -> str:
        return validate_phone_number(v)


class Membership(_Frozen):
    group_id: str
    member: MemberRef
    role: GroupRole
    joined_at: datetime


# =============================================================================
# Messages
# =============================================================================

class AppOriginMessage(_Frozen):
    """
    Message authored by an app user.

    delivery_status is the worst-case aggregate across the group's SMS
    recipients; external_id is the carrier id of the first successful send.
    Both stay unset until dispatch.
    """

    origin: Literal["app"] = "app"
    id: str
    group_id: str
    content: str
    sender_user_id: str = Field(..., min_length=1)
    delivery_status: Optional[DeliveryStatus] = None
    external_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SmsOriginMessage(_Frozen):
    """Message received from an SMS participant; always has a carrier id."""

    origin: Literal["sms"] = "sms"
    id: str
    group_id: str
    content: str
    sender_sms_participant_id: str = Field(..., min_length=1)
    external_id: str = Field(..., min_length=1)
    created_at: datetime
    updated_at: datetime


Message = Annotated[Union[AppOriginMessage, SmsOriginMessage], Field(discriminator="origin")]

_message_adapter = TypeAdapter(Message)


# =============================================================================
# Row Mappers
# =============================================================================

def message_from_row(row) -> Union[AppOriginMessage, SmsOriginMessage]:
    """
    Build the message variant for a messages row.

    Raises:
        ValueError: if the row has both or neither sender populated, or a
            sender that does not match its origin
    """
    origin = MessageOrigin(row.origin)
    common = {
        "id": row.id,
        "group_id": row.group_id,
        "content": row.content,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }

    if origin is MessageOrigin.APP:
        if row.sender_user_id is None or row.sender_sms_participant_id is not None:
            raise ValueError(f"app-origin message {row.id} must have exactly a user sender")
        return _message_adapter.validate_python({
            **common,
            "origin": "app",
            "sender_user_id": row.sender_user_id,
            "delivery_status": row.delivery_status,
            "external_id": row.external_id,
        })

    if row.sender_sms_participant_id is None or row.sender_user_id is not None:
        raise ValueError(f"sms-origin message {row.id} must have exactly an SMS participant sender")
    if row.delivery_status is not None:
        raise ValueError(f"sms-origin message {row.id} cannot carry a delivery status")
    return _message_adapter.validate_python({
        **common,
        "origin": "sms",
        "sender_sms_participant_id": row.sender_sms_participant_id,
        "external_id": row.external_id,
    })


def membership_from_row(row) -> Membership:
    if (row.user_id is None) == (row.sms_participant_id is None):
        raise ValueError(f"membership {row.id} must reference exactly one of user or SMS participant")

    if row.user_id is not None:
        member = AppUserRef(user_id=row.user_id)
    else:
        member = SmsParticipantRef(sms_participant_id=row.sms_participant_id)

    return Membership(group_id=row.group_id, member=member, role=row.role, joined_at=row.joined_at)
