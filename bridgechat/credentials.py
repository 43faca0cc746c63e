"""
Capabilities that callers present to the repository layer.

Two write paths skip per-row membership checks: admitting an inbound SMS
(authenticated by carrier signature) and recording delivery status. They
require a ServiceCredential. Everything done on behalf of an end user
requires a UserCredential. A caller always states which one it holds;
there is no implicit fallback from one to the other.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from bridgechat.errors import PermissionDeniedError


class UserCredential(BaseModel):
    """Acting as an authenticated end user."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["user"] = "user"
    user_id: str = Field(..., min_length=1)


class ServiceCredential(BaseModel):
    """Trusted internal caller (carrier webhooks, dispatcher)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["service"] = "service"
    reason: str = Field(..., min_length=1)


Credential = Annotated[Union[UserCredential, ServiceCredential], Field(discriminator="kind")]


def require_service(credential: Credential) -> ServiceCredential:
    if not isinstance(credential, ServiceCredential):
        raise PermissionDeniedError("This operation requires a trusted service credential")
    return credential


def require_user(credential: Credential) -> UserCredential:
    if not isinstance(credential, UserCredential):
        raise PermissionDeniedError("This operation must be performed on behalf of a user")
    return credential
