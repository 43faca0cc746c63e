"""
Carrier webhook helpers: request signatures and acknowledgments.
"""

import base64
import hashlib
import hmac
import logging
from typing import Dict

from bridgechat.errors import ConfigurationError, SignatureError

logger = logging.getLogger(__name__)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def compute_carrier_signature(url: str, params: Dict[str, str], auth_token: str) -> str:
    """
    Compute the carrier signature for a webhook request.

    The signed payload is the full callback URL followed by every POST
    parameter as key+value, sorted by key, with no separators. It is signed
    with HMAC-SHA1 keyed by the account auth token and base64-encoded.
    """
    payload = url + "".join(key + params[key] for key in sorted(params))
    digest = hmac.new(
        auth_token.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_carrier_signature(signature: str, url: str, params: Dict[str, str], auth_token: str) -> bool:
    """
    Verify a carrier webhook signature.

    Args:
        signature: Value of the X-Twilio-Signature header
        url: Callback URL the carrier was configured with
        params: Decoded form parameters
        auth_token: Carrier auth token (shared secret)

    Returns:
        True if signature is valid, False otherwise
    """
    expected_signature = compute_carrier_signature(url, params, auth_token)
    is_valid = signature == expected_signature
    logger.info(f"Carrier signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def authenticate_carrier_request(
    signature: str,
    url: str,
    params: Dict[str, str],
    auth_token: str,
    enforce: bool = True,
) -> None:
    """
    Authenticate a carrier webhook before any domain logic runs.

    Raises:
        ConfigurationError: if the auth token is not configured
        SignatureError: if enforcement is on and the signature does not match
    """
    if not auth_token:
        logger.error("TWILIO_AUTH_TOKEN not configured")
        raise ConfigurationError("Server configuration error")

    if not enforce:
        logger.warning("Carrier signature check skipped (development mode)")
        return

    if not signature or not verify_carrier_signature(signature, url, params, auth_token):
        raise SignatureError("invalid signature")
