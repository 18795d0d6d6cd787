"""
oauth2_bearer.py - guard protected resources with issued access tokens.

Use authenticate_bearer() inside an endpoint, or wrap a whole ASGI app in
BearerAuthMiddleware. On success the token record lands in
request.state.oauth and the user in request.state.user.

A token is read from exactly one of:
  - Authorization: Bearer <token>
  - ?access_token=<token>
  - access_token form field (endpoint use only; the middleware never reads
    the body so downstream apps still can)
"""

import json
import logging
import time
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from oauth2_errors import InvalidRequest, InvalidToken, ServerError, classify
from oauth2_model import call_model, expired, field_of, user_of, utcnow
from oauth2_request import read_form

logger = logging.getLogger("oauth2-bearer")
audit_logger = logging.getLogger("oauth2-audit")


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))


async def get_bearer_token(request: Request, allow_body: bool = True) -> str:
    found: list[str] = []

    auth = request.headers.get("authorization", "")
    if auth:
        scheme, _, value = auth.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            raise InvalidRequest("Malformed auth header")
        found.append(value.strip())

    query_token = request.query_params.get("access_token")
    if query_token:
        found.append(query_token)

    if allow_body and request.method not in ("GET", "HEAD"):
        body_token = (await read_form(request)).get("access_token")
        if body_token:
            found.append(body_token)

    if len(found) > 1:
        raise InvalidRequest(
            "Only one method may be used to authenticate at a time (Auth header, GET or POST)")
    if not found:
        raise InvalidRequest("The access token was not found")
    return found[0]


async def authenticate_bearer(request: Request, model: Any,
                              allow_body: bool = True) -> tuple[Any, Any]:
    """Validate the request's access token. Returns (token_record, user)."""
    bearer = await get_bearer_token(request, allow_body=allow_body)

    token = await call_model(model, "get_access_token", bearer)
    if not token:
        raise InvalidToken("The access token provided is invalid")

    if expired(field_of(token, "expires"), utcnow()):
        raise InvalidToken("The access token provided has expired")

    user = user_of(token)
    request.state.oauth = token
    request.state.user = user
    return token, user


class BearerAuthMiddleware:
    """ASGI middleware requiring a valid access token outside OPEN_PATHS."""

    OPEN_PATHS = {"/oauth/token", "/oauth/authorize"}

    def __init__(self, app: ASGIApp, model: Any, open_paths: set[str] | None = None):
        self.app = app
        self.model = model
        self.open_paths = self.OPEN_PATHS if open_paths is None else set(open_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path", "") in self.open_paths:
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        try:
            await authenticate_bearer(request, self.model, allow_body=False)
        except Exception as e:
            err = classify(e, "bearer authentication")
            if isinstance(err, ServerError):
                logger.error("server_error: %s", err.description, exc_info=err.__cause__)
            _audit("bearer_rejected", path=scope.get("path", ""), error=err.error,
                   description=err.description)
            response = JSONResponse(err.to_dict(), status_code=err.status_code,
                                    headers=err.headers)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
