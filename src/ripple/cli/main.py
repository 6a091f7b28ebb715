"""Ripple CLI — run the services, publish events, read notifications.

Usage:
    ripple serve                                  # Public API + internal relay
    ripple serve --embedded-worker                # ...plus the fan-out worker
    ripple worker                                 # Fan-out worker on its own
    ripple publish user.follow -a u1 -t u2 -p '{"actorUsername": "alice"}'
    ripple notifications u2 --unread              # A user's notifications
    ripple read-all u2                            # Mark them all read
    ripple token fanout-worker                    # Mint a service token
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx

from ripple import __version__

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_API_URL = "http://localhost:3001"


def _api_url() -> str:
    return os.environ.get("RIPPLE_API_URL", DEFAULT_API_URL).rstrip("/")


def _client() -> httpx.AsyncClient:
    """Build an async HTTP client pointed at the Ripple API."""
    return httpx.AsyncClient(base_url=_api_url(), timeout=30.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from a synchronous Click handler.

    Handles nested event loops (e.g. Click's CliRunner inside an async
    test) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _configure_logging() -> None:
    from ripple.config import settings
    from ripple.log import configure_logging

    configure_logging("DEBUG" if settings.debug else "INFO", json=settings.log_json)


def _print_table(rows: list[dict], columns: list[tuple[str, str, int]]):
    """Print a simple ASCII table.

    columns: list of (header, dict_key, width)
    """
    header = "  ".join(h.ljust(w) for h, _, w in columns)
    click.secho(header, bold=True)
    click.echo("-" * len(header))
    for row in rows:
        line = "  ".join(str(row.get(k, "-"))[:w].ljust(w) for _, k, w in columns)
        click.echo(line)


def _fail(response: httpx.Response) -> None:
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    click.secho(f"Error {response.status_code}: {detail}", fg="red", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version=__version__, prog_name="ripple")
def main():
    """Ripple — notification fan-out and real-time delivery."""


# ---------------------------------------------------------------------------
# ripple serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--embedded-worker", is_flag=True, help="Also run the fan-out worker in this process")
def serve(embedded_worker: bool):
    """Run the public API and the internal relay port in one process."""
    _configure_logging()
    _run(_serve_impl(embedded_worker))


async def _serve_impl(embedded_worker: bool):
    import uvicorn

    from ripple.config import settings
    from ripple.main import create_app, create_internal_app
    from ripple.realtime.bridge import DeliveryBridge

    bridge = DeliveryBridge()
    public_app = create_app(bridge=bridge, embedded_worker=embedded_worker)
    internal_app = create_internal_app(bridge)

    servers = [
        uvicorn.Server(uvicorn.Config(
            public_app, host=settings.host, port=settings.port, log_config=None,
        )),
        uvicorn.Server(uvicorn.Config(
            internal_app, host=settings.internal_host, port=settings.internal_port,
            log_config=None, lifespan="off",
        )),
    ]
    await asyncio.gather(*(server.serve() for server in servers))


# ---------------------------------------------------------------------------
# ripple worker
# ---------------------------------------------------------------------------


@main.command()
def worker():
    """Run the fan-out worker (bus consumer → store → relay)."""
    from ripple.worker.main import main as worker_main

    worker_main()


# ---------------------------------------------------------------------------
# ripple publish
# ---------------------------------------------------------------------------


@main.command()
@click.argument("event_type")
@click.option("--actor", "-a", "actor_id", required=True, help="Actor user id")
@click.option("--target", "-t", "target_id", required=True, help="Target id (partition key)")
@click.option("--target-type", default="User",
              type=click.Choice(["User", "Post", "Comment", "Notification"]))
@click.option("--payload", "-p", default="{}", help="JSON object payload")
@click.option("--topic", help="Topic override (default: derived from event type)")
def publish(event_type: str, actor_id: str, target_id: str, target_type: str,
            payload: str, topic: Optional[str]):
    """Publish one event through the API.

    EVENT_TYPE is e.g. user.follow, post.create or post.like.
    """
    try:
        payload_obj = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--payload")
    if not isinstance(payload_obj, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--payload")

    body = {
        "eventType": event_type,
        "actorId": actor_id,
        "targetId": target_id,
        "targetType": target_type,
        "payload": payload_obj,
    }
    if topic:
        body["topic"] = topic
    _run(_publish_impl(body))


async def _publish_impl(body: dict):
    async with _client() as c:
        r = await c.post("/api/v1/events", json=body)
        if r.status_code != 202:
            _fail(r)
        result = r.json()

    if result["published"]:
        click.secho(f"Published {result['eventId']} to {result['topic']}", fg="green")
    else:
        click.secho(f"Not published (bus unavailable): {result['eventId']}", fg="yellow")
        sys.exit(2)


# ---------------------------------------------------------------------------
# ripple notifications
# ---------------------------------------------------------------------------


@main.command()
@click.argument("user_id")
@click.option("--unread", is_flag=True, help="Only unread notifications")
@click.option("--type", "type_filter", help="Filter by notification type")
@click.option("--limit", "-l", default=20, help="Max results")
def notifications(user_id: str, unread: bool, type_filter: Optional[str], limit: int):
    """List a user's notifications, newest first."""
    _run(_notifications_impl(user_id, unread, type_filter, limit))


async def _notifications_impl(user_id: str, unread: bool, type_filter: Optional[str], limit: int):
    params: dict = {"limit": limit}
    if unread:
        params["is_read"] = "false"
    if type_filter:
        params["type"] = type_filter

    async with _client() as c:
        r = await c.get(f"/api/v1/users/{user_id}/notifications", params=params)
        if r.status_code != 200:
            _fail(r)
        data = r.json()

    items = data["notifications"]
    click.secho(f"{data['unreadCount']} unread, {data['total']} matching", bold=True)
    if not items:
        click.echo("No notifications.")
        return
    click.echo()
    for item in items:
        item["read"] = "yes" if item["isRead"] else "no"
    _print_table(items, [
        ("ID", "id", 36),
        ("Type", "type", 10),
        ("Read", "read", 4),
        ("Message", "message", 60),
    ])


# ---------------------------------------------------------------------------
# ripple read-all
# ---------------------------------------------------------------------------


@main.command("read-all")
@click.argument("user_id")
def read_all(user_id: str):
    """Mark every unread notification of USER_ID as read."""
    _run(_read_all_impl(user_id))


async def _read_all_impl(user_id: str):
    async with _client() as c:
        r = await c.post(f"/api/v1/users/{user_id}/notifications/read-all")
        if r.status_code != 200:
            _fail(r)
        click.secho(f"Marked {r.json()['updated']} notification(s) read", fg="green")


# ---------------------------------------------------------------------------
# ripple token
# ---------------------------------------------------------------------------


@main.command()
@click.argument("service_name")
@click.option("--expires-minutes", type=int, help="Override RIPPLE_SERVICE_TOKEN_EXPIRE_MINUTES")
def token(service_name: str, expires_minutes: Optional[int]):
    """Mint a service token for a producer on the internal relay port."""
    from ripple.auth.jwt import create_service_token

    click.echo(create_service_token(service_name, expires_minutes=expires_minutes))


if __name__ == "__main__":
    main()
