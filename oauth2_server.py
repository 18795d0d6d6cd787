"""
oauth2_server.py - OAuth2Server, the engine facade.

Wires the pipeline together and exposes it as Starlette endpoints:

  /oauth/token       normalize -> client check -> grant handler -> issue tokens
  /oauth/authorize   GET: consent parameters, POST: consent decision + redirect

Mount the routes in any Starlette app:

    oauth = OAuth2Server(model, OAuth2Config(grants=("password", "refresh_token")))
    app = Starlette(routes=oauth.routes())

Every failure leaves as exactly one JSON error body (or, for a refused
consent, one redirect). Nothing is written to the wire before the model has
accepted every token.
"""

import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from oauth2_authorize import AuthorizationFlow, AuthorizeParams, DecisionCallback, construct_redirect_uri
from oauth2_client import validate_client
from oauth2_config import OAuth2Config
from oauth2_errors import AccessDenied, InvalidRequest, OAuth2Error, ServerError, classify
from oauth2_grants import GrantRegistry
from oauth2_request import normalize_grant_request
from oauth2_tokens import TokenIssuer, TokenResponse

logger = logging.getLogger("oauth2-engine")
audit_logger = logging.getLogger("oauth2-audit")

ContinuationHook = Callable[[Request, TokenResponse], Awaitable[None] | None]
ConsentRenderer = Callable[[Request, AuthorizeParams], Awaitable[Response]]

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


class OAuth2Server:
    """OAuth 2.0 token and authorize endpoints over a pluggable model."""

    def __init__(
        self,
        model: Any,
        config: OAuth2Config | None = None,
        grants: GrantRegistry | None = None,
        decide: DecisionCallback | None = None,
        render_consent: ConsentRenderer | None = None,
        continuation: ContinuationHook | None = None,
    ):
        self.model = model
        self.config = config or OAuth2Config()
        self.grants = grants or GrantRegistry.default()
        self.issuer = TokenIssuer(model, self.config)
        self.authorization = AuthorizationFlow(model, self.config, decide)
        self.render_consent = render_consent
        self.continuation = continuation

        missing = [g for g in self.config.grants if g not in self.grants]
        if missing:
            logger.warning("enabled grant types without a handler: %s", ", ".join(missing))

    # --- Token endpoint ---

    async def grant(self, request: Request) -> TokenResponse:
        """Run the token pipeline. Raises OAuth2Error on any failure."""
        grant_request = await normalize_grant_request(request, self.config)
        client = await validate_client(self.model, grant_request)
        handler = self.grants.get(grant_request.grant_type)
        result = await handler.resolve(grant_request, client, self.model)
        token = await self.issuer.issue(grant_request, client, result)

        _audit("token_issued", client_id=grant_request.client_id,
               grant_type=grant_request.grant_type, user_id=result.user_id,
               expires_in=token.expires_in, refresh=token.refresh_token is not None)
        return token

    async def handle_token(self, request: Request) -> Response:
        try:
            token = await self.grant(request)
        except Exception as e:
            err = classify(e, "token request")
            _audit("grant_rejected", error=err.error, description=err.description)
            return self.error_response(err)

        response = JSONResponse(token.to_dict(), headers=_NO_STORE)
        if self.config.continue_after_response and self.continuation is not None:
            response.background = BackgroundTask(self.continuation, request, token)
        return response

    # --- Authorize endpoint ---

    async def handle_authorize(self, request: Request) -> Response:
        try:
            if request.method == "GET":
                params = await self.authorization.present(request)
                if self.render_consent is not None:
                    return await self.render_consent(request, params)
                return JSONResponse(params.to_dict())
            if request.method == "POST":
                location = await self.authorization.decide(request)
                logger.info("authorize_redirect: %s", location)
                return RedirectResponse(location, status_code=302)
            raise InvalidRequest("Method must be GET or POST")
        except AccessDenied as e:
            location = construct_redirect_uri(e.redirect_uri, error=e.error, state=e.state)
            return RedirectResponse(location, status_code=302)
        except Exception as e:
            return self.error_response(classify(e, "authorize request"))

    # --- Errors ---

    def error_response(self, err: OAuth2Error) -> JSONResponse:
        if isinstance(err, ServerError):
            logger.error("server_error: %s", err.description, exc_info=err.__cause__)
        elif self.config.debug:
            logger.info("%s: %s", err.error, err.description)
        headers = {**_NO_STORE, **err.headers}
        return JSONResponse(err.to_dict(), status_code=err.status_code, headers=headers)

    # --- Routing ---

    def routes(self, token_path: str = "/oauth/token",
               authorize_path: str = "/oauth/authorize") -> list[Route]:
        # Token route accepts every verb so a GET gets the classified 400.
        return [
            Route(token_path, self.handle_token,
                  methods=["GET", "POST", "PUT", "PATCH", "DELETE"]),
            Route(authorize_path, self.handle_authorize, methods=["GET", "POST"]),
        ]
