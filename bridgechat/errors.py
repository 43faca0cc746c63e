"""
Exception taxonomy for BridgeChat.

Every error carries the HTTP status code it maps to at the request
boundary. Routing misses and reconciliation misses are not errors and have
no class here: they are acknowledged as successes.
"""

from fastapi import status


class BridgeChatError(Exception):
    """Base class for all BridgeChat errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(BridgeChatError, ValueError):
    """User-supplied value failed validation (phone number, message content)."""

    status_code = status.HTTP_400_BAD_REQUEST


class SignatureError(BridgeChatError):
    """Carrier request signature did not match."""

    status_code = status.HTTP_401_UNAUTHORIZED


class MalformedRequestError(BridgeChatError):
    """A required field is missing from a carrier or internal request."""

    status_code = status.HTTP_400_BAD_REQUEST


class ConfigurationError(BridgeChatError):
    """Server-side configuration (secrets, credentials) is missing."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class PermissionDeniedError(BridgeChatError):
    """Actor's role or credential does not allow the action."""

    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(BridgeChatError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(BridgeChatError):
    """A uniqueness constraint rejected the write (routing number, membership)."""

    status_code = status.HTTP_409_CONFLICT


class GatewayError(BridgeChatError):
    """The carrier gateway rejected or failed a send."""

    status_code = status.HTTP_502_BAD_GATEWAY


class DispatchError(BridgeChatError):
    """A whole dispatch failed before all recipients could be attempted."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
