"""profilecast CLI — run the server, manage profiles, watch changes.

Usage:
    profilecast serve                            # Run the HTTP/WebSocket server
    profilecast list                             # List profiles
    profilecast get <id>                         # Show one profile
    profilecast create a@example.com             # Create a profile
    profilecast update <id> b@example.com        # Change a profile's email
    profilecast delete <id>                      # Delete a profile
    profilecast watch --count 10                 # Stream change notifications
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Optional

import click
import httpx
import websockets

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:8080"


def _api_url() -> str:
    return os.environ.get("PROFILECAST_API_URL", DEFAULT_API_URL).rstrip("/")


def _ws_url() -> str:
    base = _api_url()
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws/profiles"


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the profilecast server."""
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _fail(message: str) -> None:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)


def _profile_id_from_location(location: str) -> str:
    return location.rstrip("/").rsplit("/", 1)[-1]


async def _request(method: str, path: str, **kwargs) -> httpx.Response:
    async with _client() as c:
        try:
            r = await c.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            _fail(f"cannot reach {_api_url()}: {e}")
    if r.status_code == 404:
        _fail("profile not found")
    r.raise_for_status()
    return r


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="profilecast")
def main():
    """profilecast — profile records with live change notifications."""


# ---------------------------------------------------------------------------
# profilecast serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", help="Bind address (default: HOST setting)")
@click.option("--port", type=int, help="Bind port (default: HTTP_PORT setting)")
def serve(host: Optional[str], port: Optional[int]):
    """Run the server until interrupted.

    Exits non-zero when startup fails (store unreachable, port in use).
    """
    import uvicorn

    from profilecast.config import settings
    from profilecast.logging_setup import configure_logging
    from profilecast.main import create_app

    configure_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port or settings.http_port,
        lifespan="on",
        log_config=None,
    )


# ---------------------------------------------------------------------------
# Profile commands
# ---------------------------------------------------------------------------


@main.command("list")
def list_profiles():
    """List all profiles."""
    r = asyncio.run(_request("GET", "/profiles"))
    profiles = r.json()
    if not profiles:
        click.echo("No profiles found.")
        return
    click.secho(f"Profiles ({len(profiles)}):", bold=True)
    for p in profiles:
        click.echo(f"  {p['id']}  {p['email']}")


@main.command()
@click.argument("profile_id")
def get(profile_id: str):
    """Show one profile as JSON."""
    r = asyncio.run(_request("GET", f"/profiles/{profile_id}"))
    click.echo(_pretty_json(r.json()))


@main.command()
@click.argument("email")
def create(email: str):
    """Create a profile and print its id."""
    r = asyncio.run(_request("POST", "/profiles", json={"email": email}))
    profile_id = _profile_id_from_location(r.headers["Location"])
    click.secho(f"Created profile {profile_id}", fg="green")


@main.command()
@click.argument("profile_id")
@click.argument("email")
def update(profile_id: str, email: str):
    """Change a profile's email."""
    asyncio.run(_request("PUT", f"/profiles/{profile_id}", json={"email": email}))
    click.secho(f"Updated profile {profile_id}", fg="green")


@main.command()
@click.argument("profile_id")
def delete(profile_id: str):
    """Delete a profile."""
    r = asyncio.run(_request("DELETE", f"/profiles/{profile_id}"))
    click.secho(f"Deleted profile {r.json()['id']}", fg="green")


# ---------------------------------------------------------------------------
# profilecast watch
# ---------------------------------------------------------------------------


@main.command()
@click.option("--count", "-n", type=int, default=0, help="Stop after N notifications (0 = forever)")
def watch(count: int):
    """Print change notifications as they arrive."""
    try:
        received = asyncio.run(_watch_impl(count))
    except KeyboardInterrupt:
        return
    if count and received < count:
        sys.exit(1)


async def _watch_impl(count: int) -> int:
    received = 0
    url = _ws_url()
    try:
        async with websockets.connect(url) as ws:
            # The server streams only after the first client frame
            await ws.send("watch")
            click.echo(f"Watching {url}")
            async for frame in ws:
                received += 1
                click.echo(frame)
                if count and received >= count:
                    break
    except websockets.ConnectionClosed as e:
        click.secho(f"Connection closed (code={e.code})", fg="yellow", err=True)
    except OSError as e:
        _fail(f"cannot reach {url}: {e}")
    return received


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
