"""GitHub authentication.

Two ways to talk to the API:
- a static token (personal access token or fine-grained token)
- a GitHub App: a short-lived JWT signed with the app's private key is
  exchanged for an installation token, cached until near expiry
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional, Protocol

import httpx
import jwt

from taskforge.config import settings

logger = logging.getLogger(__name__)

GITHUB_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}


class GitHubAuth(Protocol):
    async def get_token(self) -> str:
        ...


class TokenAuth:
    """Static token authentication."""

    def __init__(self, token: str):
        self.token = token

    async def get_token(self) -> str:
        return self.token


class GitHubAppAuth:
    """Handles GitHub App JWT and installation token generation."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        installation_id: int,
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.installation_id = installation_id
        self.api_url = (api_url or settings.github_api_url).rstrip("/")
        self.transport = transport

        self._token: Optional[tuple[str, datetime]] = None

    def generate_jwt(self) -> str:
        """Generate a JWT for GitHub App authentication.

        Valid for 10 minutes max.
        """
        now = int(time.time())
        payload = {
            "iat": now - 60,  # clock drift
            "exp": now + (9 * 60),
            "iss": self.app_id,
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    async def get_token(self, force_refresh: bool = False) -> str:
        """Get an installation access token, cached until near expiry."""
        if not force_refresh and self._token:
            token, expires_at = self._token
            if datetime.utcnow() < expires_at - timedelta(minutes=5):
                return token

        app_jwt = self.generate_jwt()
        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.post(
                f"{self.api_url}/app/installations/{self.installation_id}/access_tokens",
                headers={"Authorization": f"Bearer {app_jwt}", **GITHUB_HEADERS},
            )
            response.raise_for_status()
            data = response.json()

        token = data["token"]
        expires_at = datetime.fromisoformat(data["expires_at"].replace("Z", "+00:00"))
        self._token = (token, expires_at.replace(tzinfo=None))
        logger.info(f"Obtained installation token for installation {self.installation_id}")
        return token


def get_auth() -> GitHubAuth:
    """Build authentication from settings, preferring a static token."""
    if settings.github_token:
        return TokenAuth(settings.github_token.get_secret_value())
    if settings.github_app_id and settings.github_app_private_key and settings.github_installation_id:
        return GitHubAppAuth(
            app_id=settings.github_app_id,
            private_key=settings.github_app_private_key.get_secret_value(),
            installation_id=settings.github_installation_id,
        )
    raise ValueError("GitHub credentials not configured (set GITHUB_TOKEN or GitHub App settings)")
