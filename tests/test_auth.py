"""Tests for tickrb_mcp.auth module."""

import base64
from collections.abc import Callable
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from tickrb_mcp.auth import SCOPE, TOKEN_URL, AuthError, OAuthFlow, parse_callback
from tickrb_mcp.token_store import TokenStore


def _flow(
    tmp_path: Path,
    handler: Callable[[httpx.Request], httpx.Response] | None = None,
) -> OAuthFlow:
    transport = httpx.MockTransport(handler) if handler else None
    return OAuthFlow(
        client_id="cid",
        client_secret="secret",
        redirect_uri="http://localhost:8080/callback",
        token_store=TokenStore(tmp_path / "token.json"),
        transport=transport,
    )


class TestConfiguration:
    """Tests for OAuth configuration resolution."""

    def test_falls_back_to_environment(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CLIENT_ID", "env-id")
        monkeypatch.setenv("CLIENT_SECRET", "env-secret")
        monkeypatch.setenv("REDIRECT_URI", "http://localhost:9000/callback")

        flow = OAuthFlow(client_id="", token_store=TokenStore(tmp_path / "t.json"))

        assert flow.client_id == "env-id"
        assert flow.client_secret == "env-secret"
        assert flow.redirect_uri == "http://localhost:9000/callback"

    def test_missing_configuration(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for name in ("CLIENT_ID", "CLIENT_SECRET", "REDIRECT_URI"):
            monkeypatch.delenv(name, raising=False)

        with pytest.raises(AuthError, match="CLIENT_SECRET, REDIRECT_URI"):
            OAuthFlow(client_id="cid")


class TestAuthorizationUrl:
    """Tests for authorization_url."""

    def test_contains_required_parameters(self, tmp_path: Path) -> None:
        flow = _flow(tmp_path)
        url = urlsplit(flow.authorization_url())
        query = parse_qs(url.query)

        assert url.netloc == "ticktick.com"
        assert url.path == "/oauth/authorize"
        assert query["client_id"] == ["cid"]
        assert query["scope"] == [SCOPE]
        assert query["redirect_uri"] == ["http://localhost:8080/callback"]
        assert query["response_type"] == ["code"]
        assert query["state"] == [flow.state]


class TestExchangeCode:
    """Tests for exchange_code."""

    def test_posts_form_with_basic_auth(self, tmp_path: Path) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"access_token": "tok", "expires_in": 3600, "scope": SCOPE}
            )

        result = _flow(tmp_path, handler).exchange_code("the-code")

        assert result == {"access_token": "tok", "expires_in": 3600}
        request = seen[0]
        assert str(request.url) == TOKEN_URL
        expected = base64.b64encode(b"cid:secret").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert form["redirect_uri"] == ["http://localhost:8080/callback"]

    def test_rejected_exchange(self, tmp_path: Path) -> None:
        flow = _flow(tmp_path, lambda request: httpx.Response(400))

        with pytest.raises(AuthError, match="400"):
            flow.exchange_code("bad")

    def test_response_without_token(self, tmp_path: Path) -> None:
        flow = _flow(tmp_path, lambda request: httpx.Response(200, json={}))

        with pytest.raises(AuthError, match="access_token"):
            flow.exchange_code("code")


class TestParseCallback:
    """Tests for parse_callback."""

    def test_returns_code(self) -> None:
        assert parse_callback("/callback?code=abc&state=s1", "/callback", "s1") == "abc"

    def test_other_path_is_ignored(self) -> None:
        assert parse_callback("/favicon.ico", "/callback", "s1") is None

    def test_state_mismatch(self) -> None:
        with pytest.raises(AuthError, match="state mismatch"):
            parse_callback("/callback?code=abc&state=evil", "/callback", "s1")

    def test_provider_error(self) -> None:
        with pytest.raises(AuthError, match="access_denied"):
            parse_callback("/callback?error=access_denied", "/callback", "s1")

    def test_missing_code(self) -> None:
        with pytest.raises(AuthError, match="did not include a code"):
            parse_callback("/callback?state=s1", "/callback", "s1")
