"""
oauth2_memory.py - in-memory model for development, demos and tests.

Implements the full model contract with plain dicts. Codes and refresh
tokens are consumed with dict.pop, so a second redemption always misses.
Passwords are kept as SHA-256 hex digests and compared in constant time.

Clients and users can be seeded from YAML:

    clients:
      webapp:
        secret: nightworld
        redirect_uri: https://app.example.com/callback
        grants: [password, refresh_token, authorization_code]
    users:
      thom:
        id: 1
        password_hash: <sha256 hex of the password>
"""

import hashlib
import hmac
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from oauth2_config import canonical_grant_type
from oauth2_model import (
    AccessToken, AuthCode, Client, RefreshToken, TokenContext, expired, user_id_of, utcnow,
)

logger = logging.getLogger("oauth2-memory")

TokenGenerator = Callable[[str, TokenContext], Any]


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


class InMemoryModel:
    def __init__(self, token_generator: TokenGenerator | None = None):
        self.clients: dict[str, Client] = {}
        self.client_grants: dict[str, set[str]] = {}
        self.users: dict[str, dict[str, Any]] = {}
        self.access_tokens: dict[str, AccessToken] = {}
        self.refresh_tokens: dict[str, RefreshToken] = {}
        self.auth_codes: dict[str, AuthCode] = {}
        self.token_generator = token_generator

    # --- Seeding ---

    def add_client(self, client_id: str, client_secret: str | None = None,
                   redirect_uri: str | None = None,
                   grants: list[str] | tuple[str, ...] = ()) -> Client:
        client = Client(client_id=client_id, client_secret=client_secret,
                        redirect_uri=redirect_uri)
        self.clients[client_id] = client
        self.client_grants[client_id] = {canonical_grant_type(g) for g in grants}
        return client

    def add_user(self, username: str, password: str | None = None, user_id: Any = None,
                 password_hash: str | None = None, **attrs: Any) -> dict[str, Any]:
        if password_hash is None:
            if password is None:
                raise ValueError(f"User '{username}' needs a password or password_hash")
            password_hash = hash_password(password)
        user = {"id": user_id if user_id is not None else username,
                "username": username, **attrs}
        self.users[username] = {"user": user, "password_hash": password_hash}
        return user

    @classmethod
    def from_yaml(cls, path: Path, token_generator: TokenGenerator | None = None) -> "InMemoryModel":
        """Load clients and users from a YAML seed file."""
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise ValueError(f"Invalid model file {path}: expected a mapping")

        model = cls(token_generator=token_generator)
        for client_id, cfg in (raw.get("clients") or {}).items():
            if not isinstance(cfg, dict):
                raise ValueError(f"Invalid client '{client_id}' in {path}")
            model.add_client(
                str(client_id),
                client_secret=cfg.get("secret"),
                redirect_uri=cfg.get("redirect_uri"),
                grants=cfg.get("grants", []),
            )
        for username, cfg in (raw.get("users") or {}).items():
            if not isinstance(cfg, dict):
                raise ValueError(f"Invalid user '{username}' in {path}")
            cfg = dict(cfg)
            model.add_user(
                str(username),
                password=cfg.pop("password", None),
                user_id=cfg.pop("id", None),
                password_hash=cfg.pop("password_hash", None),
                **cfg,
            )

        logger.info("Loaded %d clients and %d users from %s",
                    len(model.clients), len(model.users), path)
        return model

    # --- Model contract ---

    async def get_client(self, client_id: str, client_secret: str | None) -> Client | None:
        client = self.clients.get(client_id)
        if client is None:
            return None
        # None means "look up only"; public clients have no secret to check.
        if client_secret is not None and client.client_secret is not None:
            if not hmac.compare_digest(client.client_secret.encode(), client_secret.encode()):
                return None
        return client

    async def grant_type_allowed(self, client_id: str, grant_type: str) -> bool:
        return canonical_grant_type(grant_type) in self.client_grants.get(client_id, set())

    async def get_user(self, username: str, password: str) -> dict[str, Any] | None:
        entry = self.users.get(username)
        if entry is None:
            return None
        if not hmac.compare_digest(hash_password(password), entry["password_hash"]):
            return None
        return entry["user"]

    async def generate_token(self, token_type: str, context: TokenContext) -> Any:
        if self.token_generator is None:
            return None
        return self.token_generator(token_type, context)

    async def save_access_token(self, token: str, client_id: str,
                                expires: datetime | None, user: Any) -> None:
        self.access_tokens[token] = AccessToken(
            access_token=token, client_id=client_id, user_id=user_id_of(user),
            expires=expires, user=user)

    async def get_access_token(self, token: str) -> AccessToken | None:
        return self.access_tokens.get(token)

    async def save_refresh_token(self, token: str, client_id: str,
                                 expires: datetime | None, user: Any) -> None:
        self.refresh_tokens[token] = RefreshToken(
            refresh_token=token, client_id=client_id, user_id=user_id_of(user),
            expires=expires, user=user)

    async def get_refresh_token(self, token: str) -> RefreshToken | None:
        return self.refresh_tokens.get(token)

    async def consume_refresh_token(self, token: str) -> RefreshToken | None:
        return self.refresh_tokens.pop(token, None)

    async def expire_refresh_token(self, token: str) -> None:
        self.refresh_tokens.pop(token, None)

    async def save_auth_code(self, code: str, client_id: str, redirect_uri: str,
                             expires: datetime, user_id: Any, user: Any) -> None:
        self.auth_codes[code] = AuthCode(
            code=code, client_id=client_id, user_id=user_id, expires=expires,
            redirect_uri=redirect_uri, user=user)

    async def get_auth_code(self, code: str) -> AuthCode | None:
        return self.auth_codes.get(code)

    async def consume_auth_code(self, code: str) -> AuthCode | None:
        return self.auth_codes.pop(code, None)

    async def revoke_auth_code(self, code: str) -> None:
        self.auth_codes.pop(code, None)

    # --- Housekeeping ---

    def purge_expired(self) -> int:
        """Drop expired tokens and codes. Returns how many were removed."""
        now = utcnow()
        removed = 0
        for store in (self.access_tokens, self.refresh_tokens, self.auth_codes):
            stale = [k for k, v in store.items() if expired(v.expires, now)]
            for k in stale:
                del store[k]
            removed += len(stale)
        if removed:
            logger.info("Purged %d expired tokens/codes", removed)
        return removed

