"""
oauth2_authorize.py - the /authorize consent workflow.

Two steps, decoupled from the token endpoint:

  present (GET)   validate client_id + redirect_uri and hand the parameters
                  to whoever renders the consent page.
  decide  (POST)  ask the caller's decision callback whether the user
                  approved; on approval mint and save an authorization code
                  and redirect back with ?code=..., otherwise redirect back
                  with ?error=access_denied.

Codes minted here are redeemed later by AuthorizationCodeGrant.
"""

import json
import logging
import time
import urllib.parse
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from starlette.requests import Request

from oauth2_config import OAuth2Config
from oauth2_errors import AccessDenied, InvalidClient, InvalidRequest, OAuth2Error, ServerError, classify
from oauth2_model import TokenContext, call_model, field_of, utcnow
from oauth2_request import parse_qs, read_form
from oauth2_tokens import AUTH_CODE, expires_at, generate_token

logger = logging.getLogger("oauth2-authorize")
audit_logger = logging.getLogger("oauth2-audit")


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


@dataclass
class AuthorizeParams:
    client_id: str
    redirect_uri: str
    state: str | None = None
    response_type: str = "code"
    client: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "clientId": self.client_id,
            "redirectUri": self.redirect_uri,
            "state": self.state,
            "responseType": self.response_type,
        }


@dataclass
class Decision:
    allowed: bool
    user_id: Any = None
    user: Any = None


DecisionCallback = Callable[[Request, AuthorizeParams], Awaitable[Decision]]


def construct_redirect_uri(base: str, **params: str | None) -> str:
    """Append query parameters to base, keeping any query it already has."""
    parts = urllib.parse.urlsplit(base)
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


class AuthorizationFlow:
    def __init__(self, model: Any, config: OAuth2Config,
                 decide: DecisionCallback | None = None):
        self.model = model
        self.config = config
        self._decide = decide

    async def _check_params(self, values: dict[str, str]) -> AuthorizeParams:
        response_type = values.get("response_type") or values.get("responseType") or "code"
        if response_type != "code":
            raise InvalidRequest('Invalid response_type parameter (must be "code")')

        client_id = values.get("clientId") or values.get("client_id")
        if not client_id:
            raise InvalidRequest("Invalid or missing clientId parameter")

        redirect_uri = values.get("redirectUri") or values.get("redirect_uri")
        if not redirect_uri:
            raise InvalidRequest("Invalid or missing redirect_uri parameter")

        # None secret: look the client up without verifying a secret.
        client = await call_model(self.model, "get_client", client_id, None)
        if not client:
            raise InvalidClient("Invalid client credentials")

        registered = field_of(client, "redirect_uri")
        if registered != redirect_uri:
            raise InvalidRequest("redirect_uri does not match")

        return AuthorizeParams(
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=values.get("state") or None,
            response_type=response_type,
            client=client,
        )

    async def present(self, request: Request) -> AuthorizeParams:
        values = parse_qs(request.url.query)
        return await self._check_params(values)

    async def decide(self, request: Request) -> str:
        """Run the consent decision. Returns the redirect URL on approval.

        A refusal raises AccessDenied carrying the redirect target.
        """
        values = parse_qs(request.url.query)
        values.update(await read_form(request))
        params = await self._check_params(values)

        if self._decide is None:
            raise ServerError("No consent decision callback configured")
        try:
            decision = await self._decide(request, params)
        except OAuth2Error:
            raise
        except Exception as e:
            raise classify(e, "consent decision") from e

        if not decision or not decision.allowed:
            _audit("authorize_denied", client_id=params.client_id)
            raise AccessDenied("The user denied access to your application",
                               redirect_uri=params.redirect_uri, state=params.state)

        now = utcnow()
        context = TokenContext(
            token_type=AUTH_CODE,
            client_id=params.client_id,
            client=params.client,
            user_id=decision.user_id,
            user=decision.user,
            params=values,
        )
        code = await generate_token(self.model, AUTH_CODE, context)
        if isinstance(code, Mapping):
            raise ServerError("generate_token must return a string for authorization codes")

        expires = expires_at(now, self.config.auth_code_lifetime)
        await call_model(self.model, "save_auth_code", code, params.client_id,
                         params.redirect_uri, expires, decision.user_id, decision.user)

        _audit("authorize_approved", client_id=params.client_id, user_id=decision.user_id)
        logger.info("authorization code issued for client %s", params.client_id)
        return construct_redirect_uri(params.redirect_uri, code=code, state=params.state)
