"""Authenticated requests against the Spotify Web API."""

import logging
from typing import Optional
from urllib.parse import quote

import requests

from .auth import REQUEST_TIMEOUT, SpotifyMCPError, TokenCache

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.spotify.com/"


class SpotifyAPIError(SpotifyMCPError):
    """The Web API answered with a non-success status."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Spotify API error: {status} {body}".rstrip())


def quote_segment(value: str) -> str:
    """Quote a value for use as a single URL path segment."""
    return quote(value, safe="")


class SpotifyClient:
    """Issues Web API requests with a bearer token from a TokenCache."""

    def __init__(
        self,
        token_cache: TokenCache,
        session: Optional[requests.Session] = None,
        base_url: str = API_BASE_URL,
    ):
        self.token_cache = token_cache
        self.session = session or requests.Session()
        self.base_url = base_url

    def get_headers(self) -> dict:
        """Get headers for API requests."""
        return {
            "Authorization": f"Bearer {self.token_cache.get_token()}",
            "Content-Type": "application/json",
        }

    def request(
        self,
        endpoint: str,
        method: str = "GET",
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Call endpoint (e.g. "v1/me") and return the decoded JSON body.

        Raises:
            NoCredentialsError: no access token could be obtained.
            TokenRefreshError: the token had to be refreshed and that failed.
            SpotifyAPIError: the API returned a non-success status.
        """
        headers = self.get_headers()
        logger.debug("%s %s", method, endpoint)
        response = self.session.request(
            method,
            f"{self.base_url}{endpoint}",
            headers=headers,
            json=json_body,
            params=params,
            timeout=REQUEST_TIMEOUT,
        )
        if not response.ok:
            raise SpotifyAPIError(response.status_code, response.text)
        if not response.content:
            return {}
        return response.json()

    def current_user_id(self) -> str:
        return self.request("v1/me")["id"]
