"""
Tests for the carrier gateway client, status mapping and webhook signatures.
"""

from urllib.parse import parse_qsl

import httpx
import pytest

from bridgechat.carrier import TwilioGateway, map_carrier_status
from bridgechat.domain import DeliveryStatus
from bridgechat.errors import ConfigurationError, GatewayError, SignatureError
from bridgechat.utils import (
    authenticate_carrier_request,
    compute_carrier_signature,
    verify_carrier_signature,
)

ACCOUNT_SID = "ACtest00000000000000000000000000"
AUTH_TOKEN = "test-auth-token"


class TestStatusMapping:
    """Carrier status strings to internal statuses."""

    @pytest.mark.parametrize("carrier_status,expected", [
        ("accepted", DeliveryStatus.QUEUED),
        ("queued", DeliveryStatus.QUEUED),
        ("sending", DeliveryStatus.QUEUED),
        ("sent", DeliveryStatus.SENT),
        ("delivered", DeliveryStatus.DELIVERED),
        ("failed", DeliveryStatus.FAILED),
        ("undelivered", DeliveryStatus.UNDELIVERED),
        ("DELIVERED", DeliveryStatus.DELIVERED),
        ("receiving", DeliveryStatus.PENDING),
        ("", DeliveryStatus.PENDING),
        (None, DeliveryStatus.PENDING),
    ])
    def test_map(self, carrier_status, expected):
        assert map_carrier_status(carrier_status) == expected


class TestSignatures:
    """Webhook request signatures."""

    URL = "https://bridgechat.test/webhooks/twilio/sms"
    PARAMS = {"To": "+14155550100", "From": "+14155550111", "Body": "Hi", "MessageSid": "SM1"}

    def test_parameter_order_does_not_matter(self):
        signature = compute_carrier_signature(self.URL, self.PARAMS, AUTH_TOKEN)
        assert len(signature) == 28
        assert verify_carrier_signature(signature, self.URL, dict(reversed(list(self.PARAMS.items()))), AUTH_TOKEN)

    def test_any_change_invalidates(self):
        signature = compute_carrier_signature(self.URL, self.PARAMS, AUTH_TOKEN)
        assert not verify_carrier_signature(signature, self.URL + "?x=1", self.PARAMS, AUTH_TOKEN)
        assert not verify_carrier_signature(signature, self.URL, {**self.PARAMS, "Body": "Ho"}, AUTH_TOKEN)
        assert not verify_carrier_signature(signature, self.URL, self.PARAMS, "other-token")

    def test_authenticate_requires_token(self):
        with pytest.raises(ConfigurationError):
            authenticate_carrier_request("sig", self.URL, self.PARAMS, "")

    def test_authenticate_rejects_bad_signature(self):
        with pytest.raises(SignatureError):
            authenticate_carrier_request("sig", self.URL, self.PARAMS, AUTH_TOKEN)

    def test_authenticate_skipped_when_not_enforced(self):
        authenticate_carrier_request("", self.URL, self.PARAMS, AUTH_TOKEN, enforce=False)


class TestTwilioGateway:
    """REST client against a mock transport."""

    def make_gateway(self, handler) -> TwilioGateway:
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return TwilioGateway(ACCOUNT_SID, AUTH_TOKEN, base_url="https://carrier.test/", client=client)

    def test_send_sms(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["form"] = dict(parse_qsl(request.content.decode("utf-8")))
            return httpx.Response(201, json={"sid": "SMabc", "status": "queued"})

        result = self.make_gateway(handler).send_sms(
            "+14155550100", "+14155550111", "Alice: hi", status_callback="https://bridgechat.test/status"
        )

        assert (result.sid, result.status) == ("SMabc", "queued")
        assert seen["url"] == f"https://carrier.test/2010-04-01/Accounts/{ACCOUNT_SID}/Messages.json"
        assert seen["auth"].startswith("Basic ")
        assert seen["form"] == {
            "From": "+14155550100",
            "To": "+14155550111",
            "Body": "Alice: hi",
            "StatusCallback": "https://bridgechat.test/status",
        }

    def test_status_callback_is_optional(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["form"] = dict(parse_qsl(request.content.decode("utf-8")))
            return httpx.Response(201, json={"sid": "SMabc", "status": "accepted"})

        self.make_gateway(handler).send_sms("+14155550100", "+14155550111", "hi")
        assert "StatusCallback" not in seen["form"]

    def test_error_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        with pytest.raises(GatewayError, match="HTTP 400"):
            self.make_gateway(handler).send_sms("+14155550100", "+14155550111", "hi")

    def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError, match="request failed"):
            self.make_gateway(handler).send_sms("+14155550100", "+14155550111", "hi")

    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            TwilioGateway("", AUTH_TOKEN)
