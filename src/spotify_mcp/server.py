"""MCP server for Spotify - top tracks, playlist creation and track search.

Speaks MCP over stdio, so stdout is reserved for the protocol; diagnostics are
logged to stderr. Run once with --setup to obtain a refresh token.
"""

import argparse
import functools
import logging
import os
import sys
from pathlib import Path
from typing import Annotated, Literal, Optional

import anyio.to_thread
from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from mcp.types import ResourceLink, TextContent
from pydantic import Field

from .auth import TokenCache, load_credentials, run_setup
from .client import SpotifyClient, quote_segment

logger = logging.getLogger(__name__)

NO_TOP_TRACKS = "No tracks found."
NO_SEARCH_RESULTS = "No tracks found. Try a different query or filters."

mcp = FastMCP("spotify-mcp")

_client: Optional[SpotifyClient] = None


def get_client() -> SpotifyClient:
    """Get the shared client, building it from the environment on first use."""
    global _client
    if _client is None:
        _client = SpotifyClient(TokenCache(load_credentials()))
    return _client


def set_client(client: Optional[SpotifyClient]) -> None:
    """Replace the shared client (None rebuilds it from the environment)."""
    global _client
    _client = client


async def call_api(
    endpoint: str,
    method: str = "GET",
    json_body: Optional[dict] = None,
    params: Optional[dict] = None,
) -> dict:
    """Run a Web API request on a worker thread so other tool calls keep going."""
    client = get_client()
    return await anyio.to_thread.run_sync(
        functools.partial(client.request, endpoint, method, json_body, params)
    )


def format_artists(track: dict) -> str:
    return ", ".join(a.get("name", "") for a in track.get("artists", []))


def format_track_lines(tracks: list[dict], with_uri: bool = False) -> list[str]:
    """Format tracks as numbered "N. name — artists" lines, optionally with [uri]."""
    lines = []
    for i, t in enumerate(tracks, start=1):
        line = f"{i}. {t.get('name', '')} — {format_artists(t)}"
        if with_uri:
            line += f"  [{t.get('uri', '')}]"
        lines.append(line)
    return lines


# ============ MCP TOOLS ============


@mcp.tool(name="spotify_get_top_tracks", title="Get Top Tracks")
async def get_top_tracks(
    time_range: Literal["short_term", "medium_term", "long_term"] = "long_term",
    limit: Annotated[int, Field(ge=1, le=50)] = 5,
) -> str:
    """
    Fetch the user's top tracks from Spotify.

    Args:
        time_range: short_term (~4 weeks), medium_term (~6 months), long_term (several years)
        limit: Number of tracks to return (1-50)

    Returns: Numbered list of "name — artists"
    """
    data = await call_api(
        "v1/me/top/tracks", params={"time_range": time_range, "limit": limit}
    )
    lines = format_track_lines(data.get("items") or [])
    return "\n".join(lines) or NO_TOP_TRACKS


@mcp.tool(name="spotify_create_playlist", title="Create Playlist", structured_output=False)
async def create_playlist(
    name: str,
    description: str = "Created via MCP",
    public: bool = False,
) -> list[TextContent | ResourceLink]:
    """
    Create a new Spotify playlist in the current user's account. Returns a link.

    Args:
        name: Name for the new playlist
        description: Playlist description
        public: Whether the playlist is visible on the user's profile
    """
    me = await call_api("v1/me")
    playlist = await call_api(
        f"v1/users/{quote_segment(me['id'])}/playlists",
        "POST",
        {"name": name, "description": description, "public": public},
    )
    link = (playlist.get("external_urls") or {}).get("spotify") or playlist.get("href")
    logger.info("Created playlist %s (%s)", playlist.get("id"), playlist.get("name"))

    content: list[TextContent | ResourceLink] = [
        TextContent(type="text", text=f"Created: {playlist.get('name', name)}"),
    ]
    if link:
        content.append(ResourceLink(
            type="resource_link",
            uri=link,
            name=playlist.get("name", name),
            description="Open in Spotify",
        ))
    return content


@mcp.tool(name="spotify_add_to_playlist", title="Add Tracks to Playlist")
async def add_to_playlist(
    playlistId: str,
    uris: Annotated[list[str], Field(min_length=1)],
    position: Optional[int] = None,
) -> str:
    """
    Add one or more track URIs (spotify:track:...) to a playlist.

    Args:
        playlistId: Spotify playlist ID
        uris: Track URIs to add, in order
        position: Zero-based insert position (appends when omitted)
    """
    body: dict = {"uris": uris}
    if position is not None:
        body["position"] = position
    await call_api(f"v1/playlists/{quote_segment(playlistId)}/tracks", "POST", body)
    return f"Added {len(uris)} track(s) to playlist {playlistId}."


@mcp.tool(name="spotify_search_tracks", title="Search Tracks")
async def search_tracks(
    q: Annotated[str, Field(description="Query, e.g., 'lofi beats tempo:90'")],
    limit: Annotated[int, Field(ge=1, le=50)] = 10,
) -> str:
    """
    Search Spotify tracks by a text query and return up to N URIs you can add to a playlist.

    Args:
        q: Search query; Spotify field filters such as artist: or year: work here
        limit: Maximum number of results (1-50)
    """
    data = await call_api(
        "v1/search", params={"type": "track", "limit": limit, "q": q}
    )
    items = (data.get("tracks") or {}).get("items") or []
    return "\n".join(format_track_lines(items, with_uri=True)) or NO_SEARCH_RESULTS


def configure_logging() -> None:
    """Send log records to stderr; stdout carries the MCP stream."""
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[list[str]] = None) -> None:
    """Run the MCP server, or the one-time OAuth setup with --setup."""
    parser = argparse.ArgumentParser(
        prog="spotify-mcp",
        description="Spotify MCP server (stdio). Use --setup once to obtain a refresh token.",
    )
    parser.add_argument(
        "--setup", action="store_true",
        help="Authorize in the browser, write credentials to the env file, then exit",
    )
    parser.add_argument(
        "--env-file", type=Path, default=Path(".env"),
        help="Env file to load and, with --setup, to write (default: ./.env)",
    )
    args = parser.parse_args(argv)

    load_dotenv(args.env_file, override=False)

    if args.setup:
        sys.exit(run_setup(
            env_path=args.env_file,
            gitignore_path=args.env_file.parent / ".gitignore",
        ))

    configure_logging()
    logger.info("Starting Spotify MCP server on stdio")
    mcp.run()


if __name__ == "__main__":
    main()
