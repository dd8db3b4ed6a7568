#!/usr/bin/env python3
"""
Clipstream CLI - inspect and operate the ingest API.
"""

import argparse
import os
import sys
import time
from datetime import datetime, timezone

import httpx
from rich.console import Console
from rich.table import Table

from api.enums import VideoStatus
from api.errors import truncate_string
from config import (
    ADMIN_API_SECRET,
    API_PORT,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = float(os.getenv("CLIPSTREAM_CLI_TIMEOUT", "30"))

# API URL - can override host and port, or use the port from config
_default_api_url = f"http://localhost:{API_PORT}"
API_BASE = os.getenv("CLIPSTREAM_API_URL", _default_api_url).rstrip("/") + "/api"

console = Console()
err_console = Console(stderr=True)


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_string(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_string(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def get_user_headers(user_id) -> dict:
    """Headers identifying the acting account (as the gateway would forward them)."""
    user_id = user_id or os.getenv("CLIPSTREAM_USER_ID")
    return {"X-User-Id": user_id} if user_id else {}


def get_admin_headers() -> dict:
    """Get headers for admin API requests."""
    headers = {}
    if ADMIN_API_SECRET:
        headers["X-Admin-Secret"] = ADMIN_API_SECRET
    return headers


def handle_auth_error(response, admin: bool = False) -> None:
    """Exit with a helpful message on 401/403/503 from an authenticated endpoint."""
    if response.status_code == 401:
        if admin:
            err_console.print("[red]Error:[/red] Set CLIPSTREAM_ADMIN_API_SECRET to use admin commands.")
        else:
            err_console.print("[red]Error:[/red] Authentication required. Pass --user or set CLIPSTREAM_USER_ID.")
        sys.exit(1)
    if response.status_code == 403:
        if admin:
            err_console.print("[red]Error:[/red] Invalid admin secret.")
        else:
            err_console.print("[red]Error:[/red] That account does not own this video.")
        sys.exit(1)
    if admin and response.status_code == 503:
        err_console.print("[red]Error:[/red] The server has no admin secret configured.")
        sys.exit(1)


def _run(command):
    """Run a command function, turning transport and API errors into exit code 1."""
    try:
        command()
    except httpx.ConnectError:
        err_console.print(f"[red]Error:[/red] Could not connect to the ingest API at {API_BASE}")
        sys.exit(1)
    except httpx.TimeoutException:
        err_console.print(f"[red]Error:[/red] Request timed out after {DEFAULT_API_TIMEOUT}s")
        sys.exit(1)
    except CLIError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def cmd_server_time(args):
    """Show the server clock and the local clock's offset from it."""

    def run():
        before = time.time()
        response = httpx.get(f"{API_BASE}/server-time", timeout=DEFAULT_API_TIMEOUT)
        after = time.time()
        result = safe_json_response(response)

        local_ms = int((before + after) / 2 * 1000)
        offset_ms = local_ms - result["timestamp"]
        console.print(f"Server time: {result['formatted']} ({result['timestamp']})")
        console.print(f"Local clock offset: {offset_ms:+d} ms")

    _run(run)


def cmd_status(args):
    """Show a video's lifecycle status."""

    def run():
        response = httpx.get(
            f"{API_BASE}/videos/{args.video_id}",
            headers=get_user_headers(args.user),
            timeout=DEFAULT_API_TIMEOUT,
        )
        if response.status_code == 404:
            raise CLIError(f"Video {args.video_id} not found (or not visible to this account)")
        video = safe_json_response(response)

        table = Table(title=video["title"], show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("External ID", video["external_id"])
        table.add_row("Owner", video["owner_id"])
        table.add_row("Status", video["status"])
        table.add_row("Ready", "yes" if video["is_ready"] else "no")
        table.add_row("Tags", ", ".join(video.get("tags") or []) or "-")
        table.add_row("Updated", video.get("updated_at") or "-")
        console.print(table)

    _run(run)


def cmd_authorize(args):
    """Issue an upload authorization and print the TUS headers."""

    def run():
        body = {}
        if args.expires is not None:
            body["expires"] = args.expires
        elif args.ttl is not None:
            body["expires"] = int(time.time()) + args.ttl

        response = httpx.post(
            f"{API_BASE}/uploads/{args.video_id}/authorization",
            json=body,
            headers=get_user_headers(args.user),
            timeout=DEFAULT_API_TIMEOUT,
        )
        handle_auth_error(response)
        result = safe_json_response(response)

        expires = datetime.fromtimestamp(result["expires"], tz=timezone.utc).isoformat()
        console.print(f"TUS endpoint: {result['tus_endpoint']}")
        console.print(f"Expires: {expires}" + (" [yellow](corrected)[/yellow]" if result["corrected"] else ""))

        table = Table("Header", "Value")
        for name, value in result["headers"].items():
            table.add_row(name, value)
        console.print(table)

    _run(run)


def cmd_set_status(args):
    """Override a video's status (admin)."""

    def run():
        response = httpx.put(
            f"{API_BASE}/admin/videos/{args.video_id}/status",
            json={"status": args.status},
            headers=get_admin_headers(),
            timeout=DEFAULT_API_TIMEOUT,
        )
        handle_auth_error(response, admin=True)
        if response.status_code == 404:
            raise CLIError(f"Video {args.video_id} not found")
        result = safe_json_response(response)

        outcome = result["outcome"]
        style = {"applied": "green", "unchanged": "dim", "ignored": "yellow"}.get(outcome, "")
        console.print(
            f"[{style}]{outcome}[/{style}]: {result['external_id']} is "
            f"{result['status']}{' (ready)' if result['is_ready'] else ''}"
        )
        if outcome == "ignored":
            console.print("Public videos are never moved back to an earlier status.")

    _run(run)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clipstream", description="Clipstream CLI - ingest API operations")
    subparsers = parser.add_subparsers(dest="command", required=True)

    time_parser = subparsers.add_parser("server-time", help="Show server time and local clock offset")
    time_parser.set_defaults(func=cmd_server_time)

    status_parser = subparsers.add_parser("status", help="Show a video's status")
    status_parser.add_argument("video_id", help="Origin video id (external id)")
    status_parser.add_argument("-u", "--user", help="Acting account id (default: $CLIPSTREAM_USER_ID)")
    status_parser.set_defaults(func=cmd_status)

    auth_parser = subparsers.add_parser("authorize", help="Issue an upload authorization")
    auth_parser.add_argument("video_id", help="Origin video id (external id)")
    auth_parser.add_argument("-u", "--user", help="Owner account id (default: $CLIPSTREAM_USER_ID)")
    expiry = auth_parser.add_mutually_exclusive_group()
    expiry.add_argument("--expires", type=positive_int, help="Requested expiry (Unix seconds)")
    expiry.add_argument("--ttl", type=positive_int, help="Requested lifetime in seconds from now")
    auth_parser.set_defaults(func=cmd_authorize)

    set_parser = subparsers.add_parser("set-status", help="Override a video's status (admin)")
    set_parser.add_argument("video_id", help="Origin video id (external id)")
    set_parser.add_argument("status", choices=[s.value for s in VideoStatus], help="Target status")
    set_parser.set_defaults(func=cmd_set_status)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
