#!/usr/bin/env python3
"""
OAuth 2.0 grant engine - demo authorization server.

Serves the token and authorize endpoints over an in-memory model seeded
from a YAML file, plus one bearer-protected resource (/me) to try the
issued tokens against. Engine settings come from OAUTH2_* env vars.

The consent step here stands in for a real login: the consent form asks
for the user's username and password and approves when allow=yes.
"""

import argparse
import html as html_mod
import logging
import os
from pathlib import Path
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route

from oauth2_authorize import AuthorizeParams, Decision
from oauth2_bearer import BearerAuthMiddleware
from oauth2_config import OAuth2Config
from oauth2_jwt import JWTTokenGenerator
from oauth2_memory import InMemoryModel
from oauth2_request import read_form
from oauth2_server import OAuth2Server
from oauth2_tokens import TokenResponse

logger = logging.getLogger("oauth2-engine")

# ---------------------------------------------------------------------------
# Configuration - env vars
# ---------------------------------------------------------------------------
_ISSUER_URL = os.environ.get("OAUTH2_ISSUER_URL", "http://localhost:8222")
_JWT_SECRET = os.environ.get("OAUTH2_JWT_SECRET", "")
_MODEL_FILE = os.environ.get("OAUTH2_MODEL_FILE", str(Path(__file__).parent / "model.yaml"))


# ---------------------------------------------------------------------------
# Consent collaborator
# ---------------------------------------------------------------------------

def _consent_page(params: AuthorizeParams) -> str:
    safe_client = html_mod.escape(params.client_id)
    safe_redirect = html_mod.escape(params.redirect_uri, quote=True)
    safe_state = html_mod.escape(params.state or "", quote=True)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Authorize {safe_client}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
</head>
<body>
    <h1>Authorize</h1>
    <p><strong>{safe_client}</strong> wants access to your account.</p>
    <form method="POST">
        <input type="hidden" name="client_id" value="{safe_client}">
        <input type="hidden" name="redirect_uri" value="{safe_redirect}">
        <input type="hidden" name="state" value="{safe_state}">
        <input type="text" name="username" placeholder="Username" required>
        <input type="password" name="password" placeholder="Password" required>
        <button type="submit" name="allow" value="yes">Allow</button>
        <button type="submit" name="allow" value="no">Deny</button>
    </form>
</body>
</html>"""


async def _render_consent(request: Request, params: AuthorizeParams) -> Response:
    return HTMLResponse(_consent_page(params))


def _make_decision(model: InMemoryModel):
    async def decide(request: Request, params: AuthorizeParams) -> Decision:
        form = await read_form(request)
        if form.get("allow") != "yes":
            return Decision(allowed=False)
        user = await model.get_user(form.get("username", ""), form.get("password", ""))
        if not user:
            return Decision(allowed=False)
        return Decision(allowed=True, user_id=user["id"], user=user)
    return decide


async def _after_token(request: Request, token: TokenResponse) -> None:
    logger.info("post-response: token issued (refresh=%s)", token.refresh_token is not None)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

async def _me(request: Request) -> Response:
    user: Any = getattr(request.state, "user", None)
    return JSONResponse({"user": user})


async def _health(request: Request) -> Response:
    return JSONResponse({"status": "ok"})


def create_app(model: InMemoryModel, config: OAuth2Config) -> BearerAuthMiddleware:
    oauth = OAuth2Server(
        model,
        config,
        decide=_make_decision(model),
        render_consent=_render_consent,
        continuation=_after_token,
    )
    app = Starlette(routes=[
        *oauth.routes(),
        Route("/me", _me, methods=["GET"]),
        Route("/health", _health, methods=["GET"]),
    ])
    return BearerAuthMiddleware(
        app, model, open_paths={"/oauth/token", "/oauth/authorize", "/health"})


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="OAuth 2.0 grant engine demo server")
    parser.add_argument("--port", type=int, default=8222)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--model-file", default=_MODEL_FILE,
                        help="YAML file with clients and users")
    parser.add_argument("--audit-log", default="",
                        help="write JSON-lines audit events to this file")
    args = parser.parse_args()

    # Audit logger - JSON-lines, kept out of the main log when a file is given
    if args.audit_log:
        _audit_log_path = Path(args.audit_log)
        _audit_log_path.parent.mkdir(parents=True, exist_ok=True)
        _audit_handler = logging.FileHandler(_audit_log_path)
        _audit_handler.setFormatter(logging.Formatter("%(message)s"))
        _audit_logger = logging.getLogger("oauth2-audit")
        _audit_logger.addHandler(_audit_handler)
        _audit_logger.setLevel(logging.INFO)
        _audit_logger.propagate = False

    model_path = Path(args.model_file)
    if not model_path.exists():
        example = Path(__file__).parent / "model.example.yaml"
        msg = f"Model file not found: {model_path}"
        if example.exists():
            msg += f"\n  Copy the example:  cp {example} {model_path}"
        raise SystemExit(msg)

    config = OAuth2Config.from_env()
    generator = JWTTokenGenerator(_JWT_SECRET, _ISSUER_URL, config) if _JWT_SECRET else None
    model = InMemoryModel.from_yaml(model_path, token_generator=generator)

    import uvicorn

    logger.info(f"oauth2: grants={','.join(config.grants)} jwt={'on' if generator else 'off'}")
    logger.info(f"oauth2: starting HTTP server on {args.host}:{args.port}")
    uvicorn.run(create_app(model, config), host=args.host, port=args.port,
                log_level="info", proxy_headers=True)
