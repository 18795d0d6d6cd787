"""
oauth2_request.py - token request normalization.

Turns a raw Starlette request into a GrantRequest, or raises a classified
error before the model is touched. Checks run in a fixed order and the
first failure wins.
"""

import base64
import binascii
import logging
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime

from starlette.requests import Request

from oauth2_config import OAuth2Config, canonical_grant_type
from oauth2_errors import InvalidRequest
from oauth2_model import utcnow

logger = logging.getLogger("oauth2-request")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass
class GrantRequest:
    grant_type: str
    client_id: str
    client_secret: str
    params: dict[str, str] = field(default_factory=dict)
    now: datetime = field(default_factory=utcnow)

    def param(self, *names: str) -> str | None:
        """First non-empty value among the given parameter spellings."""
        for name in names:
            value = self.params.get(name)
            if value:
                return value
        return None


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_qs(query: str) -> dict[str, str]:
    """Parse a query string, keeping the first value for each key."""
    parsed = urllib.parse.parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


def parse_form(body: bytes) -> dict[str, str]:
    """Parse an application/x-www-form-urlencoded body."""
    return parse_qs(body.decode("utf-8", errors="replace"))


def is_form_encoded(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";", 1)[0].strip().lower() == FORM_CONTENT_TYPE


async def read_form(request: Request) -> dict[str, str]:
    if not is_form_encoded(request):
        return {}
    return parse_form(await request.body())


def credentials_from_basic(header: str | None) -> tuple[str, str] | None:
    """Decode "Basic base64(id:secret)". None when the header is not Basic."""
    if not header:
        return None
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise InvalidRequest("Malformed Basic authorization header")
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidRequest("Malformed Basic authorization header")
    return client_id, client_secret


def _first(params: dict[str, str], *names: str) -> str:
    for name in names:
        value = params.get(name)
        if value:
            return value
    return ""


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

async def normalize_grant_request(request: Request, config: OAuth2Config) -> GrantRequest:
    now = utcnow()

    if request.method != "POST":
        raise InvalidRequest("Method must be POST")

    if not is_form_encoded(request):
        raise InvalidRequest(
            f"Method must be POST with {FORM_CONTENT_TYPE} encoding")

    params = parse_form(await request.body())

    raw_grant = _first(params, "grantType", "grant_type")
    if not raw_grant or not config.grant_enabled(raw_grant):
        raise InvalidRequest("Invalid or missing grantType parameter")

    basic = credentials_from_basic(request.headers.get("authorization"))
    if basic is not None:
        client_id, client_secret = basic
    else:
        client_id = _first(params, "clientId", "client_id")
        client_secret = _first(params, "clientSecret", "client_secret")

    regex = config.client_id_regex
    if not client_id or (regex is not None and not regex.search(client_id)):
        raise InvalidRequest("Invalid or missing clientId parameter")

    if not client_secret:
        raise InvalidRequest("Missing clientSecret parameter")

    return GrantRequest(
        grant_type=canonical_grant_type(raw_grant),
        client_id=client_id,
        client_secret=client_secret,
        params=params,
        now=now,
    )
