"""
Tests for inbound SMS routing (no HTTP layer).
"""

import pytest

from conftest import ROUTING_NUMBER, SMS_NUMBER, add_sms_member
from bridgechat import models, repositories
from bridgechat.domain import SmsOriginMessage
from bridgechat.errors import MalformedRequestError
from bridgechat.router import RoutingOutcome, route_inbound_sms


def payload(**overrides):
    params = {
        "From": SMS_NUMBER,
        "To": ROUTING_NUMBER,
        "Body": "Hello",
        "MessageSid": "SM123",
    }
    params.update(overrides)
    return params


class TestRouteInboundSms:
    """Decision order: group, participant, membership, admit."""

    def test_admits_member_message(self, db, group, sms_member):
        result = route_inbound_sms(db, payload())

        assert result.outcome == RoutingOutcome.ADMITTED
        message = repositories.get_message(db, result.message_id)
        assert isinstance(message, SmsOriginMessage)
        assert message.content == "Hello"
        assert message.external_id == "SM123"
        assert message.sender_sms_participant_id == sms_member.id
        assert message.group_id == group.id

    def test_unknown_group(self, db, group, sms_member):
        result = route_inbound_sms(db, payload(To="+14155550999"))
        assert result.outcome == RoutingOutcome.UNKNOWN_GROUP
        assert db.query(models.Message).count() == 0

    def test_unknown_sender_is_not_created(self, db, group):
        result = route_inbound_sms(db, payload(From="+14155550222"))

        assert result.outcome == RoutingOutcome.UNKNOWN_SENDER
        assert db.query(models.Message).count() == 0
        assert repositories.get_sms_participant_by_phone(db, "+14155550222") is None

    def test_participant_of_another_group(self, db, owner, group):
        other = repositories.create_group(db, owner, "Other", "+14155550101")
        add_sms_member(db, owner, other.id)

        result = route_inbound_sms(db, payload())
        assert result.outcome == RoutingOutcome.NOT_MEMBER
        assert db.query(models.Message).count() == 0

    def test_body_stored_unsanitized(self, db, group, sms_member):
        result = route_inbound_sms(db, payload(Body="“quoted”\x07"))
        assert repositories.get_message(db, result.message_id).content == "“quoted”\x07"

    def test_missing_body_defaults_to_empty(self, db, group, sms_member):
        params = payload()
        del params["Body"]
        result = route_inbound_sms(db, params)
        assert repositories.get_message(db, result.message_id).content == ""

    def test_redelivery_is_not_deduplicated(self, db, group, sms_member):
        first = route_inbound_sms(db, payload())
        second = route_inbound_sms(db, payload())

        assert first.message_id != second.message_id
        assert db.query(models.Message).filter_by(external_id="SM123").count() == 2

    @pytest.mark.parametrize("field", ["From", "To", "MessageSid"])
    def test_missing_required_field(self, db, field):
        params = payload()
        del params[field]
        with pytest.raises(MalformedRequestError):
            route_inbound_sms(db, params)
