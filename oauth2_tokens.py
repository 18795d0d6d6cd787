"""
oauth2_tokens.py - token generation, persistence and the token response.

Token values come from the model's generate_token() when it has one and it
returns something, otherwise from generate_random_token(). The override may
answer in two ways:

  str      a token value; the engine computes expiry and saves it.
  Mapping  a complete, already-persisted token; nothing is saved and the
           mapping's fields are echoed in the response as they are.
"""

import hashlib
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from oauth2_config import OAuth2Config
from oauth2_errors import ServerError
from oauth2_grants import GrantResult
from oauth2_model import TokenContext, call_model, field_of, has_capability
from oauth2_request import GrantRequest

logger = logging.getLogger("oauth2-tokens")

ACCESS_TOKEN = "accessToken"
REFRESH_TOKEN = "refreshToken"
AUTH_CODE = "authorization_code"

TOKEN_LENGTH = 40


def generate_random_token() -> str:
    """40 hex chars: SHA-1 over 256 random bytes."""
    return hashlib.sha1(secrets.token_bytes(256)).hexdigest()


async def generate_token(model: Any, token_type: str, context: TokenContext) -> str | Mapping:
    if has_capability(model, "generate_token"):
        generated = await call_model(model, "generate_token", token_type, context)
        if generated:
            if isinstance(generated, (str, Mapping)):
                return generated
            raise ServerError(
                f"generate_token returned {type(generated).__name__}, expected str or mapping")
    return generate_random_token()


def expires_at(now: datetime, lifetime: int | None) -> datetime | None:
    if lifetime is None:
        return None
    return now + timedelta(seconds=lifetime)


@dataclass
class TokenResponse:
    access_token: str
    token_type: str = "bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    # Fields echoed from a generate_token override object.
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "accessToken": self.access_token,
            "tokenType": self.token_type,
        }
        if self.expires_in is not None:
            body["expiresIn"] = self.expires_in
        if self.refresh_token is not None:
            body["refreshToken"] = self.refresh_token
        body.update(self.extra)
        return body


class TokenIssuer:
    def __init__(self, model: Any, config: OAuth2Config):
        self.model = model
        self.config = config

    async def issue(self, grant_request: GrantRequest, client: Any,
                    result: GrantResult) -> TokenResponse:
        extra: dict[str, Any] = {}

        access = await self._issue_one(
            ACCESS_TOKEN, "save_access_token", self.config.access_token_lifetime,
            grant_request, client, result, extra)

        refresh = None
        if self.config.refresh_enabled:
            refresh = await self._issue_one(
                REFRESH_TOKEN, "save_refresh_token", self.config.refresh_token_lifetime,
                grant_request, client, result, extra)

        return TokenResponse(
            access_token=access,
            expires_in=self.config.access_token_lifetime,
            refresh_token=refresh,
            extra=extra,
        )

    async def _issue_one(self, token_type: str, save_method: str, lifetime: int | None,
                         grant_request: GrantRequest, client: Any, result: GrantResult,
                         extra: dict[str, Any]) -> str:
        context = TokenContext(
            token_type=token_type,
            client_id=grant_request.client_id,
            grant_type=grant_request.grant_type,
            client=client,
            user_id=result.user_id,
            user=result.user,
            params=dict(grant_request.params),
        )
        generated = await generate_token(self.model, token_type, context)

        if isinstance(generated, Mapping):
            value = field_of(generated, token_type)
            if not value:
                raise ServerError(f"generate_token object is missing {token_type!r}")
            extra.update(generated)
            logger.debug("%s supplied by model override, not saving", token_type)
            return value

        expires = expires_at(grant_request.now, lifetime)
        await call_model(self.model, save_method, generated, grant_request.client_id,
                         expires, result.user)
        return generated
