"""
oauth2_errors.py - OAuth 2.0 error taxonomy for the grant engine.

Every failure inside the engine is raised as an OAuth2Error subclass at the
point it is detected. The server layer renders it as a JSON body with the
matching HTTP status; nothing is retried or swallowed on the way out.

  invalid_request         400  malformed or missing parameters
  invalid_client          400  client authentication failed
  unauthorized_client     400  grant type not allowed for this client
  invalid_grant           400  bad / mismatched / expired code, token or user
  unsupported_grant_type  400  enabled grant with no registered handler
  access_denied           302  user refused consent (authorize endpoint only)
  invalid_token           401  bearer guard rejected the access token
  server_error            500  model failure or broken invariant
"""

from typing import Any


class OAuth2Error(Exception):
    """Base class for every classified failure."""

    error = "server_error"
    status_code = 500

    def __init__(self, description: str | None = None,
                 headers: dict[str, str] | None = None):
        self.description = description or self.error
        self.headers = dict(headers or {})
        super().__init__(self.description)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.status_code,
            "error": self.error,
            "error_description": self.description,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error!r}, {self.description!r})"


class InvalidRequest(OAuth2Error):
    error = "invalid_request"
    status_code = 400


class InvalidClient(OAuth2Error):
    error = "invalid_client"
    status_code = 400

    def __init__(self, description: str | None = None,
                 headers: dict[str, str] | None = None):
        super().__init__(description, headers or {"WWW-Authenticate": 'Basic realm="Service"'})


class UnauthorizedClient(OAuth2Error):
    error = "unauthorized_client"
    status_code = 400


class InvalidGrant(OAuth2Error):
    error = "invalid_grant"
    status_code = 400


class UnsupportedGrantType(OAuth2Error):
    error = "unsupported_grant_type"
    status_code = 400


class AccessDenied(OAuth2Error):
    """Consent refused. Carries the redirect target so it can be bounced back."""

    error = "access_denied"
    status_code = 302

    def __init__(self, description: str | None = None, redirect_uri: str = "",
                 state: str | None = None):
        super().__init__(description)
        self.redirect_uri = redirect_uri
        self.state = state


class InvalidToken(OAuth2Error):
    error = "invalid_token"
    status_code = 401

    def __init__(self, description: str | None = None,
                 headers: dict[str, str] | None = None):
        super().__init__(description, headers or {"WWW-Authenticate": 'Bearer realm="Service"'})


class ServerError(OAuth2Error):
    error = "server_error"
    status_code = 500


def classify(exc: BaseException, context: str = "") -> OAuth2Error:
    """Map any exception onto the taxonomy.

    Classified errors pass through untouched; anything else becomes a
    ServerError whose __cause__ is the original exception.
    """
    if isinstance(exc, OAuth2Error):
        return exc
    description = f"{context} failed" if context else "Internal server error"
    err = ServerError(description)
    err.__cause__ = exc
    return err
