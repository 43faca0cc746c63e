"""
Pydantic schemas for HTTP request/response validation.

This module contains:
- Request models for the internal dispatch trigger and app-tier actions
- Response models for groups, members, messages and health probes

Request bodies accept both the camelCase field names used by the client
apps and the snake_case attribute names.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from bridgechat.domain import DeliveryStatus, GroupRole


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# =============================================================================
# Pydantic Request Models
# =============================================================================

class DispatchRequest(_Request):
    """
    Body of POST /internal/dispatch.

    groupId is accepted for compatibility with the database trigger that
    posts it; the dispatcher reads the group from the message itself.
    """
    message_id: str = Field(..., alias="messageId", min_length=1)
    group_id: Optional[str] = Field(None, alias="groupId")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"messageId": "5a0c1c1e-7f0a-4d65-9a55-1c3f7d8e2b10", "groupId": "c1d2e3f4"}
            ]
        },
    )


class GroupCreateRequest(_Request):
    name: str = Field(..., min_length=1, max_length=200)
    routing_phone_number: str = Field(..., alias="routingPhoneNumber", min_length=1)


class GroupUpdateRequest(_Request):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    routing_phone_number: Optional[str] = Field(None, alias="routingPhoneNumber")


class AddSmsParticipantRequest(_Request):
    phone_number: str = Field(..., alias="phoneNumber", min_length=1)
    display_name: Optional[str] = Field(None, alias="displayName", max_length=200)


class AddAppUserRequest(_Request):
    user_id: str = Field(..., alias="userId", min_length=1)


class ProfileUpdateRequest(_Request):
    """Only the fields present in the body are changed; a blank phone clears it."""
    display_name: Optional[str] = Field(None, alias="displayName", min_length=1, max_length=200)
    phone_number: Optional[str] = Field(None, alias="phoneNumber")
    avatar_url: Optional[str] = Field(None, alias="avatarUrl", max_length=2048)


class SendMessageRequest(BaseModel):
    """Content is validated (and trimmed) by the send action, not here."""
    content: str


# =============================================================================
# Pydantic Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class DispatchResponse(BaseModel):
    """
    Either {"skipped": true} for non-app messages, or the fan-out summary.
    """
    skipped: Optional[bool] = None
    sent: Optional[int] = Field(None, ge=0)
    total: Optional[int] = Field(None, ge=0)
    status: Optional[DeliveryStatus] = None


class GroupResponse(BaseModel):
    id: str
    name: str
    routing_phone_number: str
    created_by_user_id: str
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class GroupMemberResponse(BaseModel):
    kind: Literal["app_user", "sms_participant"]
    member_id: str
    role: GroupRole
    joined_at: datetime
    display_name: Optional[str] = None
    phone_number: Optional[str] = None


class GroupDetailResponse(GroupResponse):
    members: list[GroupMemberResponse] = Field(default_factory=list)


class GroupsListResponse(BaseModel):
    data: list[GroupResponse] = Field(default_factory=list)


class ProfileResponse(BaseModel):
    id: str
    email: str
    display_name: str
    phone_number: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SmsParticipantResponse(BaseModel):
    id: str
    phone_number: str
    display_name: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AddSmsParticipantResponse(BaseModel):
    participant: SmsParticipantResponse
    created: bool = Field(..., description="True if the participant did not exist before")


class MembershipResponse(BaseModel):
    group_id: str
    kind: Literal["app_user", "sms_participant"]
    member_id: str
    role: GroupRole
    joined_at: datetime


class MessageResponse(BaseModel):
    """
    A single timeline entry. Exactly one of sender_user_id /
    sender_sms_participant_id is set, matching origin.
    """
    id: str
    group_id: str
    origin: Literal["app", "sms"]
    content: str
    sender_user_id: Optional[str] = None
    sender_sms_participant_id: Optional[str] = None
    delivery_status: Optional[DeliveryStatus] = None
    external_id: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SendMessageResponse(BaseModel):
    message: MessageResponse
    dispatch: Optional[DispatchResponse] = None


class MessagesListResponse(BaseModel):
    """Messages newest first; pass the last created_at as `before` to page."""
    data: list[MessageResponse] = Field(default_factory=list)
    limit: int = Field(..., ge=1, le=100)
