"""Shared test fixtures."""

import pytest

from spotify_mcp import auth, server
from spotify_mcp.client import SpotifyClient


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep real Spotify credentials in the developer's shell out of tests."""
    for var in auth.ENV_VARS.values():
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sample_credentials():
    """Complete refresh secret (not real values)."""
    return {
        "client_id": "test_client_id",
        "client_secret": "test_client_secret",
        "refresh_token": "test_refresh_token",
        "access_token": "",
    }


@pytest.fixture
def mock_access_token():
    return "BQtest_access_token_1234567890"


@pytest.fixture
def fresh_token_cache(sample_credentials, mock_access_token, clock):
    """Token cache holding a token that is valid for another hour."""
    cache = auth.TokenCache(sample_credentials, clock=clock)
    cache._token = (mock_access_token, clock.now + 3600)
    return cache


@pytest.fixture
def mock_client(fresh_token_cache):
    """Install a client with a valid cached token as the server's shared client."""
    client = SpotifyClient(fresh_token_cache)
    server.set_client(client)
    yield client
    server.set_client(None)


@pytest.fixture
def sample_tracks():
    """Two tracks as the Web API returns them (trimmed)."""
    return [
        {
            "name": "Paranoid Android",
            "uri": "spotify:track:6LgJvl0Xdtc73RJ1mmpotq",
            "artists": [{"name": "Radiohead"}],
        },
        {
            "name": "Under Pressure",
            "uri": "spotify:track:2fuCquhmrzHpu5xcA1ci9x",
            "artists": [{"name": "Queen"}, {"name": "David Bowie"}],
        },
    ]
