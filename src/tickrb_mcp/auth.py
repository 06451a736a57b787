"""
OAuth authorization-code flow for the TickTick Open API.

Opens the consent page in a browser, catches the redirect on a one-shot
local HTTP listener, trades the code for an access token and stores it.
"""

import logging
import os
import secrets
import webbrowser
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from .token_store import TokenStore

AUTH_URL = "https://ticktick.com/oauth/authorize?"
TOKEN_URL = "https://ticktick.com/oauth/token"
SCOPE = "tasks:write tasks:read"
DEFAULT_CALLBACK_PORT = 8080

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """OAuth configuration or exchange failure."""


def parse_callback(path: str, expected_path: str, expected_state: str) -> str | None:
    """
    Extract the authorization code from a redirect request path.

    Args:
        path: Request path including query string
        expected_path: Path component of the configured redirect URI
        expected_state: State value sent with the authorization request

    Returns:
        The code, or None if the request is not for the callback path

    Raises:
        AuthError: If the provider reported an error, the state does not
            match, or no code was supplied
    """
    parts = urlsplit(path)
    if parts.path != expected_path:
        return None

    query = parse_qs(parts.query)
    if "error" in query:
        raise AuthError(f"Authorization denied: {query['error'][0]}")
    if query.get("state", [None])[0] != expected_state:
        raise AuthError("Authorization state mismatch")

    code = query.get("code", [None])[0]
    if not code:
        raise AuthError("Authorization callback did not include a code")
    return code


class _CallbackServer(HTTPServer):
    expected_path: str
    expected_state: str
    code: str | None = None
    error: AuthError | None = None


class _CallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackServer

    def do_GET(self) -> None:
        try:
            code = parse_callback(
                self.path, self.server.expected_path, self.server.expected_state
            )
        except AuthError as e:
            self.server.error = e
            self._reply(400, f"Authentication failed: {e}")
            return

        if code is None:
            self._reply(404, "Not found")
            return

        self.server.code = code
        self._reply(200, "Authentication successful! You can close this window.")

    def _reply(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("callback: " + format, *args)


class OAuthFlow:
    """Three-legged OAuth exchange that ends with a stored access token."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        token_store: TokenStore | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        self.client_id = client_id or os.environ.get("CLIENT_ID")
        self.client_secret = client_secret or os.environ.get("CLIENT_SECRET")
        self.redirect_uri = redirect_uri or os.environ.get("REDIRECT_URI")

        missing = [
            name
            for name, value in (
                ("CLIENT_ID", self.client_id),
                ("CLIENT_SECRET", self.client_secret),
                ("REDIRECT_URI", self.redirect_uri),
            )
            if not value
        ]
        if missing:
            raise AuthError(f"Missing OAuth configuration: {', '.join(missing)}")

        self.token_store = token_store or TokenStore()
        self.state = secrets.token_urlsafe(16)
        self._transport = transport
        self._open_browser = open_browser

    def authorization_url(self) -> str:
        return AUTH_URL + urlencode(
            {
                "client_id": self.client_id,
                "scope": SCOPE,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "state": self.state,
            }
        )

    def exchange_code(self, code: str) -> dict[str, Any]:
        """
        Trade an authorization code for an access token.

        Returns:
            Dict with access_token and expires_in
        """
        try:
            with httpx.Client(transport=self._transport) as http:
                response = http.post(
                    TOKEN_URL,
                    data={
                        "grant_type": "authorization_code",
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "scope": SCOPE,
                    },
                    auth=(self.client_id, self.client_secret),
                )
        except httpx.HTTPError as e:
            raise AuthError(f"Token exchange failed: {e}") from e

        if response.status_code != 200:
            raise AuthError(
                f"Token exchange failed: {response.status_code} {response.reason_phrase}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise AuthError("Token endpoint returned invalid JSON") from e
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise AuthError("Token endpoint response has no access_token")
        if "expires_in" not in payload:
            raise AuthError("Token endpoint response has no expires_in")

        return {
            "access_token": payload["access_token"],
            "expires_in": payload["expires_in"],
        }

    def run(self) -> str:
        """Run the full browser flow and return the new access token."""
        target = urlsplit(self.redirect_uri)
        host = target.hostname or "localhost"
        port = target.port or DEFAULT_CALLBACK_PORT

        with _CallbackServer((host, port), _CallbackHandler) as httpd:
            httpd.expected_path = target.path or "/"
            httpd.expected_state = self.state

            url = self.authorization_url()
            logger.info("Opening browser for TickTick authorization: %s", url)
            self._open_browser(url)

            while httpd.code is None and httpd.error is None:
                httpd.handle_request()

        if httpd.error is not None:
            raise httpd.error

        token_info = self.exchange_code(httpd.code)
        self.token_store.store_token(token_info)
        return token_info["access_token"]
