"""Tests for the authorization-code flow: /oauth/authorize and code redemption."""
import sys
import urllib.parse
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from starlette.applications import Starlette
from starlette.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from oauth2_authorize import Decision, construct_redirect_uri
from oauth2_config import OAuth2Config
from oauth2_errors import InvalidRequest
from oauth2_memory import InMemoryModel
from oauth2_model import AuthCode
from oauth2_request import read_form
from oauth2_server import OAuth2Server

FORM = "application/x-www-form-urlencoded"
REDIRECT = "https://app.example.com/cb"


def _memory_model():
    model = InMemoryModel()
    model.add_client("webapp", "nightworld", REDIRECT,
                     grants=["authorization_code", "refresh_token"])
    model.add_user("thom", "nightworld", user_id=1)
    return model


async def _approve_if_asked(request, params):
    form = await read_form(request)
    if form.get("allow") == "yes":
        return Decision(allowed=True, user_id=1, user={"id": 1, "username": "thom"})
    return Decision(allowed=False)


def _bootstrap(model, decide=_approve_if_asked, grants=("authorization_code",), **config):
    oauth = OAuth2Server(model, OAuth2Config(grants=grants, **config), decide=decide)
    return TestClient(Starlette(routes=oauth.routes()))


def _form(client, path, data, **kwargs):
    return client.post(path, content=urllib.parse.urlencode(data),
                       headers={"Content-Type": FORM}, follow_redirects=False, **kwargs)


def _query(location: str) -> dict[str, str]:
    return dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(location).query))


# ---------------------------------------------------------------------------
# Redirect construction
# ---------------------------------------------------------------------------

class TestConstructRedirectUri:
    def test_appends_params(self):
        assert construct_redirect_uri(REDIRECT, code="abc", state="xyz") == \
            "https://app.example.com/cb?code=abc&state=xyz"

    def test_keeps_existing_query(self):
        url = construct_redirect_uri("https://app.example.com/cb?tenant=1", code="abc")
        assert url == "https://app.example.com/cb?tenant=1&code=abc"

    def test_skips_none(self):
        assert construct_redirect_uri(REDIRECT, code="abc", state=None) == \
            "https://app.example.com/cb?code=abc"


# ---------------------------------------------------------------------------
# GET /oauth/authorize
# ---------------------------------------------------------------------------

class TestPresent:
    def test_returns_consent_params(self):
        client = _bootstrap(_memory_model())
        res = client.get("/oauth/authorize", params={
            "client_id": "webapp", "redirect_uri": REDIRECT, "state": "xyz",
            "response_type": "code"})
        assert res.status_code == 200
        assert res.json() == {"clientId": "webapp", "redirectUri": REDIRECT,
                              "state": "xyz", "responseType": "code"}

    def test_unknown_client(self):
        client = _bootstrap(_memory_model())
        res = client.get("/oauth/authorize",
                         params={"client_id": "nobody", "redirect_uri": REDIRECT})
        assert res.status_code == 400
        assert res.json()["error"] == "invalid_client"

    def test_redirect_mismatch(self):
        client = _bootstrap(_memory_model())
        res = client.get("/oauth/authorize", params={
            "client_id": "webapp", "redirect_uri": "https://evil.example.com/cb"})
        assert res.status_code == 400
        assert res.json()["error"] == "invalid_request"
        assert res.json()["error_description"] == "redirect_uri does not match"

    def test_missing_redirect(self):
        res = _bootstrap(_memory_model()).get("/oauth/authorize", params={"client_id": "webapp"})
        assert res.status_code == 400
        assert res.json()["error"] == "invalid_request"

    def test_unsupported_response_type(self):
        res = _bootstrap(_memory_model()).get("/oauth/authorize", params={
            "client_id": "webapp", "redirect_uri": REDIRECT, "response_type": "token"})
        assert res.status_code == 400
        assert "response_type" in res.json()["error_description"]

    def test_custom_renderer(self):
        from starlette.responses import HTMLResponse

        async def render(request, params):
            return HTMLResponse(f"<p>{params.client_id}</p>")

        oauth = OAuth2Server(_memory_model(), OAuth2Config(grants=("authorization_code",)),
                             render_consent=render)
        client = TestClient(Starlette(routes=oauth.routes()))
        res = client.get("/oauth/authorize",
                         params={"client_id": "webapp", "redirect_uri": REDIRECT})
        assert res.status_code == 200
        assert res.text == "<p>webapp</p>"


# ---------------------------------------------------------------------------
# POST /oauth/authorize
# ---------------------------------------------------------------------------

class TestDecide:
    def test_approval_redirects_with_code_and_state(self):
        model = _memory_model()
        before = datetime.now(timezone.utc)
        res = _form(_bootstrap(model), "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": REDIRECT, "state": "xyz", "allow": "yes"})
        after = datetime.now(timezone.utc)

        assert res.status_code == 302
        location = res.headers["location"]
        assert location.startswith(REDIRECT + "?")
        query = _query(location)
        assert query["state"] == "xyz"
        assert len(query["code"]) == 40

        saved = model.auth_codes[query["code"]]
        assert saved.client_id == "webapp"
        assert saved.user_id == 1
        assert saved.redirect_uri == REDIRECT
        assert before + timedelta(seconds=30) <= saved.expires <= after + timedelta(seconds=30)

    def test_denial_redirects_with_access_denied(self):
        model = _memory_model()
        res = _form(_bootstrap(model), "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": REDIRECT, "state": "xyz", "allow": "no"})
        assert res.status_code == 302
        assert _query(res.headers["location"]) == {"error": "access_denied", "state": "xyz"}
        assert model.auth_codes == {}

    def test_params_may_come_from_query(self):
        client = _bootstrap(_memory_model())
        qs = urllib.parse.urlencode({"client_id": "webapp", "redirect_uri": REDIRECT})
        res = _form(client, f"/oauth/authorize?{qs}", {"allow": "yes"})
        assert res.status_code == 302
        assert "code" in _query(res.headers["location"])

    def test_redirect_mismatch_never_redirects(self):
        res = _form(_bootstrap(_memory_model()), "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": "https://evil.example.com/cb", "allow": "yes"})
        assert res.status_code == 400
        assert "location" not in res.headers

    def test_callback_failure_is_server_error(self):
        async def broken(request, params):
            raise RuntimeError("session store down")

        res = _form(_bootstrap(_memory_model(), decide=broken), "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": REDIRECT})
        assert res.status_code == 500
        assert res.json()["error"] == "server_error"

    def test_callback_classified_error_passes_through(self):
        async def picky(request, params):
            raise InvalidRequest("Missing scope")

        res = _form(_bootstrap(_memory_model(), decide=picky), "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": REDIRECT})
        assert res.status_code == 400
        assert res.json()["error_description"] == "Missing scope"

    def test_no_callback_configured(self):
        res = _form(_bootstrap(_memory_model(), decide=None), "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": REDIRECT})
        assert res.status_code == 500

    def test_other_methods_rejected(self):
        oauth = OAuth2Server(_memory_model(), OAuth2Config(grants=("authorization_code",)))
        client = TestClient(Starlette(routes=oauth.routes()))
        assert client.put("/oauth/authorize").status_code == 405


# ---------------------------------------------------------------------------
# Code redemption over HTTP
# ---------------------------------------------------------------------------

def _stub_model(code_record):
    return SimpleNamespace(
        get_client=AsyncMock(return_value=True),
        grant_type_allowed=AsyncMock(return_value=True),
        get_auth_code=AsyncMock(return_value=code_record),
        revoke_auth_code=AsyncMock(),
        save_access_token=AsyncMock(),
        save_refresh_token=AsyncMock(),
    )


TOKEN_BODY = {"grant_type": "authorization_code", "client_id": "thom",
              "client_secret": "nightworld", "code": "abc123"}


class TestCodeRedemption:
    def test_missing_code(self):
        body = {k: v for k, v in TOKEN_BODY.items() if k != "code"}
        res = _form(_bootstrap(_stub_model(None)), "/oauth/token", body)
        assert res.status_code == 400
        assert res.json()["error_description"] == 'No "code" parameter'

    def test_invalid_code(self):
        res = _form(_bootstrap(_stub_model(None)), "/oauth/token", TOKEN_BODY)
        assert res.status_code == 400
        assert res.json()["error"] == "invalid_grant"
        assert res.json()["error_description"] == "Invalid code"

    def test_code_for_other_client(self):
        record = AuthCode("abc123", client_id="kate", user_id=1,
                          expires=datetime.now(timezone.utc) + timedelta(seconds=60))
        res = _form(_bootstrap(_stub_model(record)), "/oauth/token", TOKEN_BODY)
        assert res.json()["error_description"] == "Invalid code"

    def test_expired_code(self):
        record = AuthCode("abc123", client_id="thom", user_id=1,
                          expires=datetime.now(timezone.utc) - timedelta(seconds=60))
        res = _form(_bootstrap(_stub_model(record)), "/oauth/token", TOKEN_BODY)
        assert res.status_code == 400
        assert res.json()["error_description"] == "Code has expired"

    def test_camel_case_grant_alias(self):
        record = AuthCode("abc123", client_id="thom", user_id="123",
                          expires=datetime.now(timezone.utc) + timedelta(seconds=60))
        body = {**TOKEN_BODY, "grant_type": "authorizationCode"}
        res = _form(_bootstrap(_stub_model(record), grants=("authorizationCode",)),
                    "/oauth/token", body)
        assert res.status_code == 200

    def test_expiry_set_during_request_is_still_valid(self):
        async def fresh_code(code):
            return AuthCode(code, client_id="thom", user_id="123",
                            expires=datetime.now(timezone.utc))

        model = _stub_model(None)
        model.get_auth_code = AsyncMock(side_effect=fresh_code)
        res = _form(_bootstrap(model), "/oauth/token", TOKEN_BODY)
        assert res.status_code == 200
        assert len(res.json()["accessToken"]) == 40
        assert "refreshToken" not in res.json()

    def test_revokes_code_and_issues_tokens(self):
        record = AuthCode("abc123", client_id="thom", user_id="123",
                          expires=datetime.now(timezone.utc) + timedelta(seconds=60))
        model = _stub_model(record)
        res = _form(_bootstrap(model, grants=("authorization_code", "refresh_token")),
                    "/oauth/token", TOKEN_BODY)
        assert res.status_code == 200
        model.revoke_auth_code.assert_awaited_once_with("abc123")
        assert model.save_access_token.await_args.args[3] == {"id": "123"}
        assert "refreshToken" in res.json()


# ---------------------------------------------------------------------------
# Full flow against the in-memory model
# ---------------------------------------------------------------------------

class TestEndToEnd:
    @pytest.fixture
    def client(self):
        return _bootstrap(_memory_model(), grants=("authorization_code", "refresh_token"))

    def _get_code(self, client):
        res = _form(client, "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": REDIRECT, "allow": "yes"})
        return _query(res.headers["location"])["code"]

    def test_code_exchange_and_refresh(self, client):
        code = self._get_code(client)
        res = _form(client, "/oauth/token", {
            "grant_type": "authorization_code", "client_id": "webapp",
            "client_secret": "nightworld", "code": code, "redirect_uri": REDIRECT})
        assert res.status_code == 200
        refresh = res.json()["refreshToken"]

        res = _form(client, "/oauth/token", {
            "grant_type": "refresh_token", "client_id": "webapp",
            "client_secret": "nightworld", "refresh_token": refresh})
        assert res.status_code == 200
        assert res.json()["refreshToken"] != refresh

    def test_code_cannot_be_redeemed_twice(self, client):
        code = self._get_code(client)
        body = {"grant_type": "authorization_code", "client_id": "webapp",
                "client_secret": "nightworld", "code": code}
        assert _form(client, "/oauth/token", body).status_code == 200

        res = _form(client, "/oauth/token", body)
        assert res.status_code == 400
        assert res.json()["error_description"] == "Invalid code"

    def test_refresh_token_cannot_be_reused(self, client):
        code = self._get_code(client)
        res = _form(client, "/oauth/token", {
            "grant_type": "authorization_code", "client_id": "webapp",
            "client_secret": "nightworld", "code": code})
        body = {"grant_type": "refresh_token", "client_id": "webapp",
                "client_secret": "nightworld", "refresh_token": res.json()["refreshToken"]}
        assert _form(client, "/oauth/token", body).status_code == 200

        res = _form(client, "/oauth/token", body)
        assert res.status_code == 400
        assert res.json()["error_description"] == "Invalid refresh token"

    def test_wrong_secret(self, client):
        code = self._get_code(client)
        res = _form(client, "/oauth/token", {
            "grant_type": "authorization_code", "client_id": "webapp",
            "client_secret": "guess", "code": code})
        assert res.status_code == 400
        assert res.json()["error"] == "invalid_client"

    def test_user_object_without_id_survives_exchange_and_refresh(self):
        async def approve_by_id(request, params):
            return Decision(allowed=True, user_id=5, user={"name": "thom"})

        model = _memory_model()
        client = _bootstrap(model, decide=approve_by_id,
                            grants=("authorization_code", "refresh_token"))
        code = self._get_code(client)
        assert model.auth_codes[code].user_id == 5

        res = _form(client, "/oauth/token", {
            "grant_type": "authorization_code", "client_id": "webapp",
            "client_secret": "nightworld", "code": code})
        assert res.status_code == 200
        access = model.access_tokens[res.json()["accessToken"]]
        assert access.user_id == 5
        assert access.user == {"name": "thom", "id": 5}

        res = _form(client, "/oauth/token", {
            "grant_type": "refresh_token", "client_id": "webapp",
            "client_secret": "nightworld", "refresh_token": res.json()["refreshToken"]})
        assert res.status_code == 200
