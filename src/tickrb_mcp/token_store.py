"""
Access token persistence.

Tokens live in a small JSON file (default ~/.config/tickrb/token.json):

    {"access_token": "...", "expires_at": "2026-04-01T12:00:00+00:00"}

The stored expiry is pulled in by a minute so a token is never handed out
right before the server rejects it.
"""

import json
import logging
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "tickrb"
TOKEN_PATH = CONFIG_DIR / "token.json"

# Seconds shaved off the server-reported lifetime
EXPIRY_MARGIN_SECONDS = 60


def default_token_path() -> Path:
    """Token file location, honouring TICKRB_TOKEN_PATH."""
    override = os.environ.get("TICKRB_TOKEN_PATH")
    if override:
        return Path(override).expanduser()
    return TOKEN_PATH


class TokenStore:
    """Reads and writes the OAuth access token on disk."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path).expanduser() if path else default_token_path()

    def store_token(self, token_info: dict[str, Any]) -> None:
        """
        Persist a freshly issued token.

        Args:
            token_info: Token endpoint payload with access_token and expires_in

        Raises:
            KeyError: If access_token or expires_in is missing
        """
        expires_in = int(token_info["expires_in"])
        expires_at = datetime.now(UTC) + timedelta(
            seconds=expires_in - EXPIRY_MARGIN_SECONDS
        )

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(
                {
                    "access_token": token_info["access_token"],
                    "expires_at": expires_at.isoformat(),
                }
            ),
            encoding="utf-8",
        )
        logger.info("Stored access token at %s (expires %s)", self.path, expires_at)

    def load_token(self) -> str | None:
        """Return the stored access token, or None if absent or expired."""
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            expires_at = datetime.fromisoformat(data["expires_at"])
            token = data["access_token"]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring unreadable token file %s: %s", self.path, e)
            return None

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if datetime.now(UTC) > expires_at:
            logger.info("Stored access token expired at %s", expires_at)
            return None

        return token if isinstance(token, str) and token else None
