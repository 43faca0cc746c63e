"""
Outbound delivery of app-origin messages to a group's SMS participants.

One dispatch sends the message to every SMS participant in the group, one
recipient at a time, and records a single worst-case status plus the first
carrier id on the message once every recipient has been attempted. A
failing recipient never stops the others, and nothing is retried here.
"""

import logging
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from bridgechat import repositories
from bridgechat.carrier import SmsGateway, map_carrier_status
from bridgechat.config import Settings
from bridgechat.credentials import ServiceCredential
from bridgechat.domain import AppOriginMessage, DeliveryStatus
from bridgechat.errors import BridgeChatError, DispatchError, NotFoundError
from bridgechat.metrics import record_dispatch_outcome, record_recipient_send
from bridgechat.validators import estimate_sms_segments, mask_phone_number, sanitize_for_sms

logger = logging.getLogger(__name__)

DISPATCH_CREDENTIAL = ServiceCredential(reason="outbound dispatch")


class DispatchReport(BaseModel):
    skipped: bool = False
    sent: int = 0
    total: int = 0
    status: Optional[DeliveryStatus] = None
    external_id: Optional[str] = None


def aggregate_status(current: DeliveryStatus, observed: DeliveryStatus) -> DeliveryStatus:
    """
    Fold one recipient's status into the running aggregate.

    - a failure (failed / undelivered) always replaces the aggregate
    - once the aggregate is a failure, non-failures cannot improve it
    - otherwise the most recent non-delivered status replaces the aggregate

    The fold starts from DELIVERED, so an all-delivered fan-out stays
    DELIVERED.
    """
    if observed.is_failure:
        return observed
    if current.is_failure:
        return current
    if observed != DeliveryStatus.DELIVERED:
        return observed
    return current


def compose_sms_body(sender_name: str, content: str) -> str:
    return f"{sender_name}: {sanitize_for_sms(content)}"


class DeliveryDispatcher:
    """Fans one app-origin message out to SMS recipients through a gateway."""

    def __init__(self, db: Session, gateway: SmsGateway, settings: Settings):
        self._db = db
        self._gateway = gateway
        self._settings = settings

    def dispatch(self, message_id: str) -> DispatchReport:
        """
        Deliver one message.

        Raises:
            NotFoundError: if the message or its group does not exist
        """
        message = repositories.get_message(self._db, message_id)
        if message is None:
            raise NotFoundError(f"Message {message_id} not found")

        if not isinstance(message, AppOriginMessage):
            logger.info(f"Skipping SMS dispatch for non-app message {message_id}")
            return DispatchReport(skipped=True)

        group = repositories.get_group(self._db, message.group_id)
        if group is None:
            raise NotFoundError(f"Group {message.group_id} not found")

        sender = repositories.get_profile(self._db, message.sender_user_id)
        sender_name = (sender.display_name if sender else None) or self._settings.DEFAULT_SENDER_NAME

        recipients = repositories.list_sms_recipients(self._db, group.id)
        if not recipients:
            logger.info(f"No SMS participants in group {group.id}, marking {message_id} delivered")
            repositories.update_delivery(self._db, DISPATCH_CREDENTIAL, message_id, DeliveryStatus.DELIVERED)
            return DispatchReport(sent=0, total=0, status=DeliveryStatus.DELIVERED)

        body = compose_sms_body(sender_name, message.content)
        logger.info(
            f"Dispatching {message_id} to {len(recipients)} SMS participant(s), "
            f"{estimate_sms_segments(body)} segment(s) each"
        )
        status_callback = self._settings.TWILIO_STATUS_CALLBACK_URL or None

        first_sid: Optional[str] = None
        aggregate = DeliveryStatus.DELIVERED
        sent_count = 0

        for participant in recipients:
            to_number = mask_phone_number(participant.phone_number)
            try:
                result = self._gateway.send_sms(
                    from_number=group.routing_phone_number,
                    to_number=participant.phone_number,
                    body=body,
                    status_callback=status_callback,
                )
            except Exception as e:
                logger.error(f"Failed to send SMS to {to_number}: {e}")
                record_recipient_send("error")
                aggregate = DeliveryStatus.FAILED
                continue

            logger.info(f"SMS sent to {to_number}: {result.sid} ({result.status})")
            record_recipient_send("sent")
            if first_sid is None:
                first_sid = result.sid
            aggregate = aggregate_status(aggregate, map_carrier_status(result.status))
            sent_count += 1

        repositories.update_delivery(
            self._db, DISPATCH_CREDENTIAL, message_id, aggregate, external_id=first_sid
        )
        logger.info(
            f"Dispatch of {message_id} finished: {sent_count}/{len(recipients)} sent, status={aggregate.value}"
        )
        return DispatchReport(
            sent=sent_count,
            total=len(recipients),
            status=aggregate,
            external_id=first_sid,
        )


def mark_failed(db: Session, message_id: str) -> None:
    """Best-effort: mark a message failed, logging rather than raising."""
    try:
        db.rollback()
        repositories.update_delivery(db, DISPATCH_CREDENTIAL, message_id, DeliveryStatus.FAILED)
    except Exception as e:
        logger.error(f"Failed to update delivery status for {message_id}: {e}")


def dispatch_message(db: Session, gateway: SmsGateway, settings: Settings, message_id: str) -> DispatchReport:
    """
    Request boundary for a dispatch.

    Missing messages propagate as NotFoundError. Any other error aborts the
    dispatch: the message is marked failed (best effort) and a
    DispatchError is raised to the caller.
    """
    try:
        report = DeliveryDispatcher(db, gateway, settings).dispatch(message_id)
    except NotFoundError:
        raise
    except Exception as e:
        logger.error(f"Dispatch of {message_id} failed: {e}")
        record_dispatch_outcome("error")
        mark_failed(db, message_id)
        if isinstance(e, BridgeChatError):
            raise DispatchError(f"SMS dispatch failed: {e.message}") from e
        raise DispatchError("SMS dispatch failed") from e

    record_dispatch_outcome("skipped" if report.skipped else report.status.value)
    return report
