"""
oauth2_model.py - data types and the model adapter contract.

The engine never stores anything itself. It talks to a caller-supplied
"model" object through the async methods described by OAuth2Model, and
reads the records the model hands back through the small helpers below.

Records may be the dataclasses defined here, any object exposing the same
attribute names, or plain mappings (database rows).

Optional model capabilities, detected with has_capability():
  generate_token(token_type, context)  -> str | Mapping | None
  expire_refresh_token(token)          -> None
  consume_auth_code(code)              -> AuthCode | None   (atomic fetch + invalidate)
  consume_refresh_token(token)         -> RefreshToken | None
  get_access_token(token)              -> AccessToken | None   (bearer guard)
"""

import inspect
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from oauth2_errors import OAuth2Error, ServerError, classify

logger = logging.getLogger("oauth2-model")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Client:
    client_id: str
    client_secret: str | None = None
    redirect_uri: str | None = None


@dataclass
class AccessToken:
    access_token: str
    client_id: str
    user_id: Any
    expires: datetime | None = None
    user: Any = None


@dataclass
class RefreshToken:
    refresh_token: str
    client_id: str
    user_id: Any
    expires: datetime | None = None
    user: Any = None


@dataclass
class AuthCode:
    code: str
    client_id: str
    user_id: Any
    expires: datetime | None = None
    redirect_uri: str | None = None
    user: Any = None


@dataclass
class TokenContext:
    """What a generate_token override gets to look at."""

    token_type: str
    client_id: str
    grant_type: str | None = None
    client: Any = None
    user_id: Any = None
    user: Any = None
    params: dict[str, str] = field(default_factory=dict)


class OAuth2Model(Protocol):
    async def get_client(self, client_id: str, client_secret: str | None) -> Any: ...

    async def grant_type_allowed(self, client_id: str, grant_type: str) -> bool: ...

    async def get_user(self, username: str, password: str) -> Any: ...

    async def get_refresh_token(self, token: str) -> Any: ...

    async def get_auth_code(self, code: str) -> Any: ...

    async def revoke_auth_code(self, code: str) -> None: ...

    async def save_access_token(self, token: str, client_id: str,
                                expires: datetime | None, user: Any) -> None: ...

    async def save_refresh_token(self, token: str, client_id: str,
                                 expires: datetime | None, user: Any) -> None: ...

    async def save_auth_code(self, code: str, client_id: str, redirect_uri: str,
                             expires: datetime, user_id: Any, user: Any) -> None: ...


# ---------------------------------------------------------------------------
# Calling the model
# ---------------------------------------------------------------------------

def has_capability(model: Any, name: str) -> bool:
    return callable(getattr(model, name, None))


async def call_model(model: Any, method: str, *args: Any) -> Any:
    """Invoke a model method and wait for it.

    Sync implementations are accepted and called inline. A missing method or
    any exception other than a classified OAuth2Error becomes server_error.
    """
    fn = getattr(model, method, None)
    if not callable(fn):
        raise ServerError(f"Model does not implement {method}()")
    try:
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
    except OAuth2Error:
        raise
    except Exception as e:
        raise classify(e, f"model.{method}") from e
    return result


# ---------------------------------------------------------------------------
# Record helpers
# ---------------------------------------------------------------------------

def field_of(record: Any, name: str, default: Any = None) -> Any:
    """Read a field from a dataclass, plain object or mapping."""
    if isinstance(record, Mapping):
        return record.get(name, default)
    return getattr(record, name, default)


def user_of(record: Any) -> Any:
    """User object for a token/code record: explicit user, else {"id": user_id}."""
    user = field_of(record, "user")
    if user:
        return user
    user_id = field_of(record, "user_id")
    if user_id is None:
        return None
    return {"id": user_id}


def user_id_of(user: Any) -> Any:
    """Identifier carried by a user object as "id", else as "user_id"."""
    if user is None:
        return None
    user_id = field_of(user, "id")
    if user_id is None:
        user_id = field_of(user, "user_id")
    return user_id


def record_user_id(record: Any) -> Any:
    """User id of a token/code record. The record's own user_id wins."""
    user_id = field_of(record, "user_id")
    if user_id is None:
        user_id = user_id_of(field_of(record, "user"))
    return user_id


def with_user_id(user: Any, user_id: Any) -> Any:
    """Make a mapping user carry user_id as "id" so saved tokens keep it."""
    if user is None:
        return None if user_id is None else {"id": user_id}
    if user_id is None or user_id_of(user) is not None or not isinstance(user, Mapping):
        return user
    return {**user, "id": user_id}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_datetime(value: Any) -> datetime | None:
    """Coerce a model timestamp to an aware UTC datetime.

    Naive datetimes are read as UTC; ints/floats as epoch seconds.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    raise ServerError(f"Unsupported expires value from model: {value!r}")


def expired(expires: Any, now: datetime) -> bool:
    """True when expires lies before now. None never expires."""
    when = as_datetime(expires)
    return when is not None and when < now
