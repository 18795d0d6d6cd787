"""
oauth2_grants.py - per-grant-type validation and user resolution.

Each grant type is a GrantHandler subclass. The engine looks the handler up
in a GrantRegistry by canonical grant type name; adding a grant means
registering another handler, e.g.

    class SamlAssertionGrant(GrantHandler):
        grant_type = "urn:ietf:params:oauth:grant-type:saml2-bearer"

        async def resolve(self, grant_request, client, model):
            ...
            return GrantResult(user_id, user)

    registry = GrantRegistry.default()
    registry.register(SamlAssertionGrant())
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from oauth2_errors import InvalidClient, InvalidGrant, InvalidRequest, ServerError, UnsupportedGrantType
from oauth2_model import (
    call_model, expired, field_of, has_capability, record_user_id, user_id_of, user_of, with_user_id,
)
from oauth2_request import GrantRequest

logger = logging.getLogger("oauth2-grants")


@dataclass
class GrantResult:
    user_id: Any
    user: Any


class GrantHandler:
    """Base class for grant handlers."""

    grant_type: str = ""

    async def resolve(self, grant_request: GrantRequest, client: Any, model: Any) -> GrantResult:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Built-in grants
# ---------------------------------------------------------------------------

class PasswordGrant(GrantHandler):
    grant_type = "password"

    async def resolve(self, grant_request: GrantRequest, client: Any, model: Any) -> GrantResult:
        username = grant_request.param("username")
        password = grant_request.param("password")
        if not username or not password:
            raise InvalidClient('Missing parameters. "username" and "password" are required')

        user = await call_model(model, "get_user", username, password)
        if not user:
            raise InvalidGrant("User credentials are invalid")

        user_id = user_id_of(user)
        return GrantResult(user_id=user_id, user=with_user_id(user, user_id))


class RefreshTokenGrant(GrantHandler):
    """Swap a refresh token for a new token pair.

    Reuse prevention belongs to the model: expire_refresh_token() is called
    whenever the model offers it, and consume_refresh_token() replaces the
    fetch entirely when the model can do it atomically.
    """

    grant_type = "refresh_token"

    async def resolve(self, grant_request: GrantRequest, client: Any, model: Any) -> GrantResult:
        token = grant_request.param("refreshToken", "refresh_token")
        if not token:
            raise InvalidRequest('No "refreshToken" parameter')

        consumed = has_capability(model, "consume_refresh_token")
        if consumed:
            record = await call_model(model, "consume_refresh_token", token)
        else:
            record = await call_model(model, "get_refresh_token", token)

        if not record or field_of(record, "client_id") != grant_request.client_id:
            raise InvalidGrant("Invalid refresh token")

        if expired(field_of(record, "expires"), grant_request.now):
            raise InvalidGrant("Refresh token has expired")

        user_id = record_user_id(record)
        if user_id is None:
            raise ServerError("No user/userId parameter returned from get_refresh_token")

        if not consumed and has_capability(model, "expire_refresh_token"):
            await call_model(model, "expire_refresh_token", token)

        return GrantResult(user_id=user_id, user=with_user_id(user_of(record), user_id))


class AuthorizationCodeGrant(GrantHandler):
    """Redeem an authorization code minted by the authorize endpoint.

    A code with no expiry is treated as already expired. The code is
    invalidated before tokens are issued.
    """

    grant_type = "authorization_code"

    async def resolve(self, grant_request: GrantRequest, client: Any, model: Any) -> GrantResult:
        code = grant_request.param("code")
        if not code:
            raise InvalidRequest('No "code" parameter')

        consumed = has_capability(model, "consume_auth_code")
        if consumed:
            record = await call_model(model, "consume_auth_code", code)
        else:
            record = await call_model(model, "get_auth_code", code)

        # Unknown code and foreign code look the same from outside.
        if not record or field_of(record, "client_id") != grant_request.client_id:
            raise InvalidGrant("Invalid code")

        expires = field_of(record, "expires")
        if expires is None or expired(expires, grant_request.now):
            raise InvalidGrant("Code has expired")

        redirect_uri = grant_request.param("redirectUri", "redirect_uri")
        stored_redirect = field_of(record, "redirect_uri")
        if redirect_uri and stored_redirect and redirect_uri != stored_redirect:
            raise InvalidGrant("redirect_uri does not match")

        user_id = record_user_id(record)
        if user_id is None:
            raise ServerError("No user/userId parameter returned from get_auth_code")

        if not consumed:
            await call_model(model, "revoke_auth_code", code)

        return GrantResult(user_id=user_id, user=with_user_id(user_of(record), user_id))


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class GrantRegistry:
    def __init__(self, handlers: Iterable[GrantHandler] = ()):
        self._handlers: dict[str, GrantHandler] = {}
        for handler in handlers:
            self.register(handler)

    @classmethod
    def default(cls) -> "GrantRegistry":
        return cls([PasswordGrant(), RefreshTokenGrant(), AuthorizationCodeGrant()])

    def register(self, handler: GrantHandler) -> None:
        if not handler.grant_type:
            raise ValueError(f"{type(handler).__name__} has no grant_type")
        if handler.grant_type in self._handlers:
            raise ValueError(f"Grant type already registered: {handler.grant_type}")
        self._handlers[handler.grant_type] = handler

    def get(self, grant_type: str) -> GrantHandler:
        handler = self._handlers.get(grant_type)
        if handler is None:
            raise UnsupportedGrantType(f"Unsupported grant type: {grant_type}")
        return handler

    def __contains__(self, grant_type: str) -> bool:
        return grant_type in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)
