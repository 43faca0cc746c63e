"""
Inbound message routing.

Turns one carrier payload into at most one sms-origin message. Transport
authentication happens before this module is reached (see
utils.authenticate_carrier_request); everything after it is acknowledged to
the carrier as a success, whether or not a message was admitted, so the
carrier never retries a message that will never be routable.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from bridgechat import repositories
from bridgechat.credentials import ServiceCredential
from bridgechat.errors import MalformedRequestError
from bridgechat.validators import get_message_preview, mask_phone_number

logger = logging.getLogger(__name__)

INBOUND_CREDENTIAL = ServiceCredential(reason="inbound carrier webhook")


class RoutingOutcome(str, Enum):
    ADMITTED = "admitted"
    UNKNOWN_GROUP = "unknown_group"
    UNKNOWN_SENDER = "unknown_sender"
    NOT_MEMBER = "not_member"


class InboundSms(BaseModel):
    """Required fields of an inbound carrier payload."""
    from_number: str
    to_number: str
    body: str
    message_sid: str

    @classmethod
    def from_params(cls, params: Dict[str, str]) -> "InboundSms":
        """
        Raises:
            MalformedRequestError: if From, To or MessageSid is missing
        """
        from_number = params.get("From")
        to_number = params.get("To")
        message_sid = params.get("MessageSid")

        if not from_number or not to_number or not message_sid:
            logger.error(
                "Missing required SMS fields",
                extra={"has_from": bool(from_number), "has_to": bool(to_number), "has_sid": bool(message_sid)},
            )
            raise MalformedRequestError("Missing required SMS fields")

        return cls(
            from_number=from_number,
            to_number=to_number,
            body=params.get("Body") or "",
            message_sid=message_sid,
        )


class RoutingResult(BaseModel):
    outcome: RoutingOutcome
    message_id: Optional[str] = None
    group_id: Optional[str] = None


def route_inbound_sms(db: Session, params: Dict[str, str]) -> RoutingResult:
    """
    Route an authenticated inbound payload.

    Decision order:
        1. extract From / To / MessageSid (missing -> MalformedRequestError)
        2. group by routing number        (miss -> UNKNOWN_GROUP)
        3. SMS participant by phone       (miss -> UNKNOWN_SENDER)
        4. participant is a group member  (miss -> NOT_MEMBER)
        5. store the body as received     (ADMITTED)

    Unknown senders are never created here: a participant must first be
    added to a group by an app user.
    """
    sms = InboundSms.from_params(params)
    sender = mask_phone_number(sms.from_number)
    logger.info(f"Incoming SMS: {sender} -> {sms.to_number}: {get_message_preview(sms.body)}")

    group = repositories.get_group_by_routing_number(db, sms.to_number)
    if group is None:
        logger.warning(f"Group not found for routing number {sms.to_number}")
        return RoutingResult(outcome=RoutingOutcome.UNKNOWN_GROUP)

    participant = repositories.get_sms_participant_by_phone(db, sms.from_number)
    if participant is None:
        logger.info(f"Unknown sender {sender} - participant not registered")
        return RoutingResult(outcome=RoutingOutcome.UNKNOWN_SENDER, group_id=group.id)

    if not repositories.is_sms_member(db, group.id, participant.id):
        logger.info(f"SMS participant {sender} is not a member of group {group.id}")
        return RoutingResult(outcome=RoutingOutcome.NOT_MEMBER, group_id=group.id)

    message = repositories.create_sms_message(
        db,
        INBOUND_CREDENTIAL,
        group_id=group.id,
        sms_participant_id=participant.id,
        content=sms.body,
        external_id=sms.message_sid,
    )
    logger.info(f"Message {message.id} admitted for group {group.id}")
    return RoutingResult(outcome=RoutingOutcome.ADMITTED, message_id=message.id, group_id=group.id)
