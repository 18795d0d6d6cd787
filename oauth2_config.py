"""
oauth2_config.py - immutable engine configuration.

One OAuth2Config value is built at startup (in code or from OAUTH2_* env
vars) and handed to OAuth2Server by reference. Nothing in the engine mutates
it afterwards.
"""

import os
import re
from dataclasses import dataclass, field

# Grant names accepted on the wire -> canonical name used everywhere else.
GRANT_ALIASES = {
    "refreshToken": "refresh_token",
    "authorizationCode": "authorization_code",
}

DEFAULT_GRANTS = ("password", "refresh_token")
DEFAULT_CLIENT_ID_PATTERN = r"^[a-z0-9_-]{3,40}$"
ACCESS_TOKEN_LIFETIME = 3600  # 1 hour
REFRESH_TOKEN_LIFETIME = 14 * 86400  # 14 days
AUTH_CODE_LIFETIME = 30  # seconds

_TRUTHY = {"1", "true", "yes", "on"}


def canonical_grant_type(name: str) -> str:
    """Return the canonical spelling of a grant type name."""
    return GRANT_ALIASES.get(name, name)


@dataclass(frozen=True)
class OAuth2Config:
    grants: tuple[str, ...] = DEFAULT_GRANTS
    client_id_pattern: str | None = DEFAULT_CLIENT_ID_PATTERN
    access_token_lifetime: int | None = ACCESS_TOKEN_LIFETIME
    refresh_token_lifetime: int | None = REFRESH_TOKEN_LIFETIME
    auth_code_lifetime: int = AUTH_CODE_LIFETIME
    continue_after_response: bool = False
    debug: bool = False
    _client_id_regex: re.Pattern[str] | None = field(
        default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # A bare string is one grant name, not a sequence of them.
        raw = (self.grants,) if isinstance(self.grants, str) else self.grants
        grants = tuple(dict.fromkeys(canonical_grant_type(g) for g in raw))
        object.__setattr__(self, "grants", grants)
        if not grants or not all(grants):
            raise ValueError("At least one grant type must be enabled")

        regex = None
        if self.client_id_pattern is not None:
            try:
                regex = re.compile(self.client_id_pattern, re.IGNORECASE)
            except re.error as e:
                raise ValueError(f"Invalid client_id_pattern: {e}") from e
        object.__setattr__(self, "_client_id_regex", regex)

        for name in ("access_token_lifetime", "refresh_token_lifetime"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive or None")
        if self.auth_code_lifetime <= 0:
            raise ValueError("auth_code_lifetime must be positive")

    @property
    def client_id_regex(self) -> re.Pattern[str] | None:
        return self._client_id_regex

    def grant_enabled(self, grant_type: str) -> bool:
        return canonical_grant_type(grant_type) in self.grants

    @property
    def refresh_enabled(self) -> bool:
        return "refresh_token" in self.grants

    @classmethod
    def from_env(cls) -> "OAuth2Config":
        """Build a config from OAUTH2_* environment variables."""
        grants_str = os.environ.get("OAUTH2_GRANTS", ",".join(DEFAULT_GRANTS))
        grants = tuple(g.strip() for g in grants_str.split(",") if g.strip())

        pattern = os.environ.get("OAUTH2_CLIENT_ID_PATTERN", DEFAULT_CLIENT_ID_PATTERN)

        return cls(
            grants=grants,
            client_id_pattern=pattern or None,
            access_token_lifetime=_lifetime_env(
                "OAUTH2_ACCESS_TOKEN_LIFETIME", ACCESS_TOKEN_LIFETIME),
            refresh_token_lifetime=_lifetime_env(
                "OAUTH2_REFRESH_TOKEN_LIFETIME", REFRESH_TOKEN_LIFETIME),
            auth_code_lifetime=int(os.environ.get("OAUTH2_AUTH_CODE_LIFETIME", AUTH_CODE_LIFETIME)),
            continue_after_response=os.environ.get(
                "OAUTH2_CONTINUE_AFTER_RESPONSE", "").lower() in _TRUTHY,
            debug=os.environ.get("OAUTH2_DEBUG", "").lower() in _TRUTHY,
        )


def _lifetime_env(name: str, default: int) -> int | None:
    raw = os.environ.get(name)
    if raw is None:
        return default
    if raw.strip().lower() in ("", "none", "null", "never"):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer number of seconds or 'none', got {raw!r}")
