"""
Delivery status reconciliation from carrier callbacks.

A callback is an idempotent overwrite keyed on the carrier message id. The
carrier gives no ordering guarantee across the legs of a multi-part or
multi-recipient message, so no monotonicity is enforced: a later callback
may move the status backwards.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from bridgechat import repositories
from bridgechat.carrier import map_carrier_status
from bridgechat.credentials import ServiceCredential
from bridgechat.domain import AppOriginMessage, DeliveryStatus
from bridgechat.errors import MalformedRequestError

logger = logging.getLogger(__name__)

RECONCILE_CREDENTIAL = ServiceCredential(reason="carrier status callback")


class ReconcileOutcome(str, Enum):
    UPDATED = "updated"
    NOT_FOUND = "not_found"


class StatusCallback(BaseModel):
    message_sid: str
    message_status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_params(cls, params: Dict[str, str]) -> "StatusCallback":
        """
        Raises:
            MalformedRequestError: if MessageSid or MessageStatus is missing
        """
        message_sid = params.get("MessageSid")
        message_status = params.get("MessageStatus")
        if not message_sid or not message_status:
            logger.error("Missing required status fields")
            raise MalformedRequestError("Missing required status fields")

        return cls(
            message_sid=message_sid,
            message_status=message_status,
            error_code=params.get("ErrorCode") or None,
            error_message=params.get("ErrorMessage") or None,
        )


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    message_id: Optional[str] = None
    status: Optional[DeliveryStatus] = None


def reconcile_status(db: Session, params: Dict[str, str]) -> ReconcileResult:
    """Apply an authenticated status callback; unknown ids are a no-op."""
    callback = StatusCallback.from_params(params)
    logger.info(f"Status update: {callback.message_sid} -> {callback.message_status}")

    if callback.error_code:
        logger.warning(f"Carrier error for {callback.message_sid}: {callback.error_code} - {callback.error_message}")

    status = map_carrier_status(callback.message_status)

    message = repositories.get_message_by_external_id(db, callback.message_sid)
    if message is None:
        logger.info(f"Message not found for external id {callback.message_sid}")
        return ReconcileResult(outcome=ReconcileOutcome.NOT_FOUND, status=status)

    if not isinstance(message, AppOriginMessage):
        # Inbound messages carry no delivery status
        logger.info(f"Ignoring status callback for inbound message {message.id}")
        return ReconcileResult(outcome=ReconcileOutcome.NOT_FOUND, message_id=message.id, status=status)

    repositories.update_delivery(db, RECONCILE_CREDENTIAL, message.id, status)
    logger.info(f"Updated message {message.id} to status {status.value}")
    return ReconcileResult(outcome=ReconcileOutcome.UPDATED, message_id=message.id, status=status)
