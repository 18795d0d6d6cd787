"""Tests for the demo server wiring in server.py."""
import sys
import urllib.parse
from pathlib import Path

import pytest
from starlette.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from oauth2_authorize import AuthorizeParams
from oauth2_config import OAuth2Config
from oauth2_memory import InMemoryModel
from server import _consent_page, create_app

FORM = {"Content-Type": "application/x-www-form-urlencoded"}
REDIRECT = "http://localhost:3000/callback"


@pytest.fixture
def client():
    model = InMemoryModel()
    model.add_client("webapp", "change-me", REDIRECT,
                     grants=["password", "refresh_token", "authorization_code"])
    model.add_user("thom", "nightworld", user_id=1, email="thom@example.com")
    config = OAuth2Config(grants=("password", "refresh_token", "authorization_code"))
    return TestClient(create_app(model, config))


def _post(client, path, data):
    return client.post(path, content=urllib.parse.urlencode(data), headers=FORM,
                       follow_redirects=False)


class TestConsentPage:
    def test_escapes_values(self):
        page = _consent_page(AuthorizeParams(
            client_id="<script>", redirect_uri='https://x/"cb', state="a&b"))
        assert "<script>" not in page
        assert "&lt;script&gt;" in page
        assert "&quot;cb" in page
        assert "a&amp;b" in page

    def test_authorize_get_renders_html(self, client):
        res = client.get("/oauth/authorize",
                         params={"client_id": "webapp", "redirect_uri": REDIRECT})
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/html")
        assert 'name="allow"' in res.text


class TestDemoApp:
    def test_health_is_open(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_me_requires_token(self, client):
        assert client.get("/me").status_code == 400

    def test_password_grant_then_me(self, client):
        res = _post(client, "/oauth/token", {
            "grant_type": "password", "client_id": "webapp", "client_secret": "change-me",
            "username": "thom", "password": "nightworld"})
        assert res.status_code == 200
        token = res.json()["accessToken"]

        me = client.get("/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["user"] == {"id": 1, "username": "thom", "email": "thom@example.com"}

    def test_consent_with_login(self, client):
        res = _post(client, "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": REDIRECT, "state": "s1",
            "username": "thom", "password": "nightworld", "allow": "yes"})
        assert res.status_code == 302
        query = dict(urllib.parse.parse_qsl(urllib.parse.urlsplit(res.headers["location"]).query))
        assert query["state"] == "s1"

        res = _post(client, "/oauth/token", {
            "grant_type": "authorization_code", "client_id": "webapp",
            "client_secret": "change-me", "code": query["code"]})
        assert res.status_code == 200

    def test_consent_bad_login_denied(self, client):
        res = _post(client, "/oauth/authorize", {
            "client_id": "webapp", "redirect_uri": REDIRECT,
            "username": "thom", "password": "wrong", "allow": "yes"})
        assert res.status_code == 302
        assert "error=access_denied" in res.headers["location"]

    def test_non_ascii_client_secret_is_invalid_client(self, client):
        res = _post(client, "/oauth/token", {
            "grant_type": "password", "client_id": "webapp", "client_secret": "sécret",
            "username": "thom", "password": "nightworld"})
        assert res.status_code == 400
        assert res.json()["error"] == "invalid_client"
