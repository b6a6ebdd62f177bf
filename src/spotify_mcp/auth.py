"""Authentication and token management for the Spotify Web API."""

import html
import logging
import os
import secrets
import time
import webbrowser
from http.server import HTTPServer, BaseHTTPRequestHandler
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import requests

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"

# Spotify rejects "localhost" redirect URIs for new apps
CALLBACK_HOST = "127.0.0.1"
CALLBACK_PORT = 8888
REDIRECT_URI = f"http://{CALLBACK_HOST}:{CALLBACK_PORT}/callback"
SCOPES = " ".join([
    "user-top-read",
    "playlist-modify-private",
    "playlist-modify-public",
])

EXPIRY_MARGIN = 30  # seconds a returned token must stay valid
DEFAULT_EXPIRES_IN = 3600
REQUEST_TIMEOUT = 30

ENV_VARS = {
    "client_id": "SPOTIFY_CLIENT_ID",
    "client_secret": "SPOTIFY_CLIENT_SECRET",
    "refresh_token": "SPOTIFY_REFRESH_TOKEN",
    "access_token": "SPOTIFY_ACCESS_TOKEN",
}


class SpotifyMCPError(Exception):
    """Base class for errors raised by this package."""


class NoCredentialsError(SpotifyMCPError):
    """No usable access token and no way to obtain one."""


class _HTTPFailure(SpotifyMCPError):
    prefix = "Request failed"

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"{self.prefix}: {status} {body}".rstrip())


class TokenRefreshError(_HTTPFailure):
    """The accounts service rejected a refresh_token grant."""

    prefix = "Spotify token refresh failed"


class TokenExchangeError(_HTTPFailure):
    """The accounts service rejected an authorization_code grant."""

    prefix = "Token exchange failed"


class OAuthCallbackError(SpotifyMCPError):
    """The browser redirect carried an error, no code, or a foreign state."""


def load_credentials(environ: Optional[dict] = None) -> dict:
    """Read Spotify credentials from the environment.

    Returns:
        dict with keys client_id, client_secret, refresh_token and
        access_token. Missing variables map to an empty string.
    """
    environ = os.environ if environ is None else environ
    return {key: environ.get(var, "").strip() for key, var in ENV_VARS.items()}


def has_refresh_secret(credentials: dict) -> bool:
    """True when client id, client secret and refresh token are all set."""
    return all(credentials.get(k) for k in ("client_id", "client_secret", "refresh_token"))


class TokenCache:
    """Holds the current access token and renews it through the refresh grant.

    The token and its expiry are stored together as one tuple and replaced
    wholesale, so a reader never sees a new token paired with an old expiry.
    A static SPOTIFY_ACCESS_TOKEN seeds the cache with an unknown expiry; it
    is used as-is only when there is no refresh secret to renew it with.
    """

    def __init__(
        self,
        credentials: dict,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._credentials = dict(credentials)
        self._session = session or requests.Session()
        self._clock = clock
        self._token: tuple[Optional[str], float] = (credentials.get("access_token") or None, 0.0)
        self._warned_static = False

    @property
    def access_token(self) -> Optional[str]:
        return self._token[0]

    @property
    def expires_at(self) -> float:
        return self._token[1]

    def is_fresh(self) -> bool:
        """True when the cached token is valid for more than EXPIRY_MARGIN seconds."""
        token, expires_at = self._token
        return bool(token) and expires_at - self._clock() > EXPIRY_MARGIN

    def get_token(self) -> str:
        """Return an access token usable for at least EXPIRY_MARGIN seconds.

        Raises:
            NoCredentialsError: nothing cached and no refresh secret configured.
            TokenRefreshError: the accounts service rejected the refresh.
        """
        if self.is_fresh():
            return self._token[0]

        if has_refresh_secret(self._credentials):
            return self.refresh()

        token = self._token[0]
        if not token:
            raise NoCredentialsError(
                "No Spotify access token. Provide SPOTIFY_ACCESS_TOKEN or set "
                "SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET and SPOTIFY_REFRESH_TOKEN "
                "(run with --setup to obtain a refresh token)."
            )
        if not self._warned_static:
            logger.warning("No refresh credentials configured; using static access token as-is")
            self._warned_static = True
        return token

    def refresh(self) -> str:
        """Exchange the refresh token for a new access token."""
        creds = self._credentials
        response = self._session.post(
            TOKEN_URL,
            auth=(creds["client_id"], creds["client_secret"]),
            data={"grant_type": "refresh_token", "refresh_token": creds["refresh_token"]},
            timeout=REQUEST_TIMEOUT,
        )
        if not response.ok:
            raise TokenRefreshError(response.status_code, response.text)

        data = response.json()
        expires_in = data.get("expires_in")
        expires_in = DEFAULT_EXPIRES_IN if expires_in is None else int(expires_in)
        self._token = (data["access_token"], self._clock() + expires_in)

        # Spotify occasionally rotates the refresh token
        if data.get("refresh_token"):
            self._credentials["refresh_token"] = data["refresh_token"]

        logger.info("Refreshed Spotify access token (expires in %ss)", expires_in)
        return self._token[0]

    def invalidate(self) -> None:
        """Forget the cached access token."""
        self._token = (None, 0.0)


# ============ ONE-TIME SETUP ============


def save_env_credentials(
    env_path: Path, client_id: str, client_secret: str, refresh_token: str, access_token: str = ""
) -> None:
    """Write credentials to a .env file, appending when it already exists."""
    lines = "\n".join([
        f"{ENV_VARS['client_id']}={client_id}",
        f"{ENV_VARS['client_secret']}={client_secret}",
        f"{ENV_VARS['refresh_token']}={refresh_token}",
        f"# Optional: {ENV_VARS['access_token']}={access_token}",
        "",
    ])
    if env_path.exists():
        with open(env_path, "a") as f:
            f.write("\n" + lines)
        print(f"Appended to {env_path}")
    else:
        env_path.write_text(lines)
        print(f"Wrote {env_path}")


def ensure_gitignored(gitignore_path: Path, entry: str = ".env") -> bool:
    """Make sure gitignore_path lists entry. Returns True if the file changed."""
    if gitignore_path.exists():
        text = gitignore_path.read_text()
        if entry in (line.strip() for line in text.splitlines()):
            return False
        with open(gitignore_path, "a") as f:
            f.write(("" if not text or text.endswith("\n") else "\n") + f"{entry}\n")
        print(f"Added {entry} to {gitignore_path}")
    else:
        gitignore_path.write_text(f"{entry}\n")
        print(f"Created {gitignore_path}")
    return True


def create_result_html(title: str, message: str) -> str:
    """Generate the page shown in the browser once the callback is handled."""
    title, message = html.escape(title), html.escape(message)
    return f'''<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, sans-serif;
            max-width: 600px;
            margin: 50px auto;
            padding: 20px;
            background: #121212;
            color: #fff;
            text-align: center;
        }}
        h1 {{ color: #1db954; }}
        p {{ font-size: 18px; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <p>{message}</p>
</body>
</html>'''


class SetupSession:
    """One authorization-code round trip, driven by a single browser redirect.

    The session starts out listening and terminates on the first request to
    /callback, whatever its outcome; exit_code is 0 on success and 1 on any
    failure. Requests to other paths, or after termination, get a 404.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        env_path: Path = Path(".env"),
        gitignore_path: Path = Path(".gitignore"),
        redirect_uri: str = REDIRECT_URI,
        scopes: str = SCOPES,
        session: Optional[requests.Session] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.env_path = Path(env_path)
        self.gitignore_path = Path(gitignore_path)
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.state = secrets.token_hex(8)
        self.listening = True
        self.exit_code: Optional[int] = None
        self._session = session or requests.Session()

    def authorize_url(self) -> str:
        query = urlencode({
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "state": self.state,
        })
        return f"{AUTHORIZE_URL}?{query}"

    def handle_callback(self, path: str) -> tuple[int, str]:
        """Handle one GET request. Returns (HTTP status, HTML body)."""
        url = urlsplit(path)
        if not self.listening or url.path != "/callback":
            return 404, "Not found"

        params = {k: v[0] for k, v in parse_qs(url.query).items()}
        try:
            code = self._check_callback(params)
        except OAuthCallbackError as e:
            print(e)
            self._terminate(1)
            return 400, create_result_html("Authorization failed", str(e))

        try:
            tokens = self.exchange_code(code)
        except (TokenExchangeError, requests.exceptions.RequestException) as e:
            print(e)
            self._terminate(1)
            return 500, create_result_html("Authorization failed", "Token exchange failed.")

        self.persist(tokens)
        self._terminate(0)
        return 200, create_result_html("All set!", "You can close this window.")

    def _check_callback(self, params: dict) -> str:
        if params.get("error"):
            raise OAuthCallbackError(f"Spotify error: {params['error']}")
        code = params.get("code")
        if not code or not secrets.compare_digest(params.get("state", ""), self.state):
            raise OAuthCallbackError("Missing code or state mismatch")
        return code

    def exchange_code(self, code: str) -> dict:
        """Trade the authorization code for access and refresh tokens."""
        response = self._session.post(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            timeout=REQUEST_TIMEOUT,
        )
        if not response.ok:
            raise TokenExchangeError(response.status_code, response.text)
        return response.json()

    def persist(self, tokens: dict) -> None:
        refresh_token = tokens.get("refresh_token", "")
        access_token = tokens.get("access_token", "")

        print("\n✓ Success! Save these (also writing .env):")
        print(f"{ENV_VARS['refresh_token']}={refresh_token}")
        print(f"{ENV_VARS['access_token']}={access_token} (expires in {tokens.get('expires_in')}s)")

        try:
            save_env_credentials(
                self.env_path, self.client_id, self.client_secret, refresh_token, access_token
            )
            ensure_gitignored(self.gitignore_path, self.env_path.name)
        except OSError as e:
            print(f"Could not write {self.env_path} / {self.gitignore_path}: {e}")

    def _terminate(self, exit_code: int) -> None:
        self.listening = False
        self.exit_code = exit_code


def run_setup(
    env_path: Path = Path(".env"),
    gitignore_path: Path = Path(".gitignore"),
) -> int:
    """Run the interactive authorization flow. Returns the process exit code."""
    credentials = load_credentials()
    if not credentials["client_id"] or not credentials["client_secret"]:
        print("Set SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET before running --setup.")
        return 1

    session = SetupSession(
        credentials["client_id"],
        credentials["client_secret"],
        env_path=env_path,
        gitignore_path=gitignore_path,
    )

    class CallbackHandler(BaseHTTPRequestHandler):
        def log_message(self, format, *args):
            pass  # Suppress logs

        def do_GET(self):
            status, body = session.handle_callback(self.path)
            self.send_response(status)
            self.send_header("Content-type", "text/html" if status != 404 else "text/plain")
            self.end_headers()
            self.wfile.write(body.encode())

    auth_url = session.authorize_url()
    print(f"Client ID: {session.client_id}")
    print(f"Redirect URI: {session.redirect_uri}")

    server = HTTPServer((CALLBACK_HOST, CALLBACK_PORT), CallbackHandler)
    print(f"Listening on {session.redirect_uri}")
    print("\nIf your browser doesn't open, open this URL:\n")
    print(auth_url + "\n")
    webbrowser.open(auth_url)

    try:
        while session.listening:
            server.handle_request()
    except KeyboardInterrupt:
        print("\nCancelled.")
        return 1
    finally:
        server.server_close()

    return session.exit_code
