"""
oauth2_jwt.py - signed JWT access/refresh tokens as a generate_token override.

Plug an instance into a model's generate_token() to issue self-describing
tokens instead of opaque random strings. It returns bare strings, so the
engine still computes expiry and persists the token through the model.
Authorization codes are left to the default generator.
"""

import logging
import secrets
import time
from typing import Any

import jwt

from oauth2_config import OAuth2Config
from oauth2_model import TokenContext
from oauth2_tokens import ACCESS_TOKEN, REFRESH_TOKEN

logger = logging.getLogger("oauth2-jwt")

JWT_ALGORITHM = "HS256"


class JWTTokenGenerator:
    def __init__(self, secret: str, issuer: str, config: OAuth2Config | None = None,
                 algorithm: str = JWT_ALGORITHM):
        if not secret:
            raise ValueError("JWT signing secret must not be empty")
        self.secret = secret
        self.issuer = issuer.rstrip("/")
        self.algorithm = algorithm
        config = config or OAuth2Config()
        self.lifetimes = {
            ACCESS_TOKEN: config.access_token_lifetime,
            REFRESH_TOKEN: config.refresh_token_lifetime,
        }

    def __call__(self, token_type: str, context: TokenContext) -> str | None:
        if token_type not in self.lifetimes:
            return None

        now = int(time.time())
        subject = context.user_id if context.user_id is not None else context.client_id
        payload: dict[str, Any] = {
            "sub": str(subject),
            "iss": self.issuer,
            "iat": now,
            "jti": secrets.token_hex(16),
            "typ": token_type,
            "client_id": context.client_id,
        }
        lifetime = self.lifetimes[token_type]
        if lifetime is not None:
            payload["exp"] = now + lifetime
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        """Verify signature and issuer. Raises jwt.InvalidTokenError."""
        return jwt.decode(
            token,
            self.secret,
            algorithms=[self.algorithm],
            issuer=self.issuer,
            options={"require": ["sub", "iss", "jti"]},
        )
