#!/usr/bin/env python3
"""
Dojo CLI - browse the video library and manage the roster from a terminal.
"""

import argparse
import json
import os
import sys

import httpx
from rich.console import Console
from rich.table import Table

from api.enums import FilterMode, LibraryScope, LoadState, SortKey, SortOrder, ViewMode
from api.errors import summarize_error, truncate_error
from api.filters import parse_filter_token
from api.library import PREFERENCE_PREFIXES
from api.preferences import JsonFileBackend, PreferenceStore
from config import (
    ADMIN_API_SECRET,
    ADMIN_PORT,
    CLI_PREFERENCES_PATH,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    PUBLIC_PORT,
    USER_ID_HEADER,
)

console = Console()


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("DOJO_API_TIMEOUT", "30"))

# API URLs - can override host and port, or use the ports from config
_default_public_url = f"http://localhost:{PUBLIC_PORT}"
PUBLIC_API_BASE = os.getenv("DOJO_PUBLIC_API_URL", _default_public_url).rstrip("/") + "/api"

_default_admin_url = f"http://localhost:{ADMIN_PORT}"
ADMIN_API_BASE = os.getenv("DOJO_ADMIN_API_URL", _default_admin_url).rstrip("/") + "/api"

# Viewer id sent to the public API when --user is not given
DEFAULT_USER_ID = os.getenv("DOJO_USER_ID", "")


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


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
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def get_admin_headers() -> dict:
    """Get headers for admin API requests."""
    headers = {}
    if ADMIN_API_SECRET:
        headers["X-Admin-Secret"] = ADMIN_API_SECRET
    return headers


def get_viewer_headers(user_id: str = "") -> dict:
    headers = {}
    user_id = user_id or DEFAULT_USER_ID
    if user_id:
        headers[USER_ID_HEADER] = user_id
    return headers


def handle_auth_error(response) -> None:
    """Exit with a helpful message on 401/403."""
    if response.status_code == 401:
        raise CLIError(
            "Authentication required. Pass --user (or set DOJO_USER_ID) for personal views, "
            "or set DOJO_ADMIN_API_SECRET for admin commands."
        )
    if response.status_code == 403:
        raise CLIError("Authentication failed - check that DOJO_ADMIN_API_SECRET matches the server configuration.")


def get_preference_store(scope: str) -> PreferenceStore:
    return PreferenceStore(PREFERENCE_PREFIXES[LibraryScope(scope)], JsonFileBackend(CLI_PREFERENCES_PATH))


def build_library_params(args, prefs: PreferenceStore) -> dict:
    """
    Query parameters for /api/library.

    Explicit flags win; stored preferences fill in page size and sort order.
    """
    tokens = []
    for raw in args.filter or []:
        token = parse_filter_token(raw)
        if token is None:
            raise CLIError(f"Invalid filter token: {raw!r}")
        tokens.append(token.to_wire())

    sort = prefs.get_sort()
    params = {
        "scope": args.scope,
        "per_page": args.per_page or prefs.get_items_per_page(),
        "sort": args.sort or sort.key.value,
        "order": args.order or sort.direction.value,
    }
    if tokens:
        params["filters"] = json.dumps(tokens, separators=(",", ":"))
    if args.search:
        params["search"] = args.search
    if args.mode:
        params["mode"] = args.mode
    if args.page:
        params["page"] = str(args.page)
    return params


def _names(items) -> str:
    return ", ".join(item["name"] for item in items) or "-"


def _format_duration(seconds) -> str:
    if not seconds:
        return "-"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}:{secs:02d}"


def render_library(result: dict, view_mode: ViewMode) -> None:
    pagination = result["pagination"]

    if result.get("state") == LoadState.DEGRADED.value:
        message = summarize_error(result.get("error")) or "The library could not be refreshed."
        console.print(f"[yellow]{message}[/yellow]")
        if result.get("stale") and not result.get("empty"):
            console.print("[yellow]Showing cached results.[/yellow]")
    if result.get("empty"):
        console.print("No videos match the current filters.")
        return

    videos = result["videos"]

    table = Table(title=f"Videos ({pagination['total_items']} matching)")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="white", max_width=40)
    table.add_column("Belt", style="cyan")
    table.add_column("Views", justify="right", style="green")
    if view_mode == ViewMode.LIST:
        table.add_column("Categories", max_width=30)
        table.add_column("Performers", max_width=30)
        table.add_column("Recorded")
        table.add_column("Length", justify="right")
    table.add_column("Fav", justify="center")

    for v in videos:
        row = [v["id"][:8], v["title"], _names(v["curriculums"]), str(v["views"])]
        if view_mode == ViewMode.LIST:
            row += [
                _names(v["categories"]),
                _names(v["performers"]),
                v["recorded"] or "-",
                _format_duration(v["duration_seconds"]),
            ]
        row.append("*" if v["is_favorite"] else "")
        table.add_row(*row)

    console.print(table)
    console.print(
        f"Page {pagination['page']} of {pagination['total_pages']} "
        f"({pagination['per_page']} per page, mode {result['mode']})"
    )
    if result.get("next_belt_name"):
        console.print(f"Showing videos up to {result['next_belt_name']}.")
    if result.get("query"):
        console.print(f"[dim]?{result['query']}[/dim]")


def cmd_browse(args):
    """Browse one page of the library."""
    prefs = get_preference_store(args.scope)
    params = build_library_params(args, prefs)

    response = httpx.get(
        f"{PUBLIC_API_BASE}/library",
        params=params,
        headers=get_viewer_headers(args.user),
        timeout=DEFAULT_API_TIMEOUT,
    )
    handle_auth_error(response)
    result = safe_json_response(response)

    if args.json:
        print(json.dumps(result, indent=2))
        return
    render_library(result, prefs.get_view_mode())


def cmd_facets(args):
    """Show what the current selection can still be narrowed by."""
    prefs = get_preference_store(args.scope)
    params = build_library_params(args, prefs)
    response = httpx.get(
        f"{PUBLIC_API_BASE}/library",
        params=params,
        headers=get_viewer_headers(args.user),
        timeout=DEFAULT_API_TIMEOUT,
    )
    handle_auth_error(response)
    facets = safe_json_response(response)["facets"]
    counts = facets.get("counts", {})

    table = Table(title="Filters")
    table.add_column("Token", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Videos", justify="right", style="green")

    for c in facets["categories"]:
        table.add_row(c["id"], c["name"], str(counts.get(c["id"], 0)))
    for c in facets["curriculums"]:
        token = f"curriculum:{c['id']}"
        table.add_row(token, c["name"], str(counts.get(token, 0)))
    for p in facets["performers"]:
        token = f"performer:{p['id']}"
        table.add_row(token, p["name"], str(counts.get(token, 0)))
    for label in facets["recorded"]:
        token = f"recorded:{label}"
        table.add_row(token, label, str(counts.get(token, 0)))
    for threshold in facets["view_buckets"]:
        token = f"views:{threshold}"
        table.add_row(token, f"{threshold}+ views", str(counts.get(token, 0)))

    console.print(table)


def cmd_prefs(args):
    """Show, change or reset the stored display preferences for one library surface."""
    prefs = get_preference_store(args.scope)

    if args.prefs_command == "set":
        if args.view:
            prefs.set_view_mode(ViewMode(args.view))
        if args.per_page:
            stored = prefs.set_items_per_page(args.per_page)
            if stored != args.per_page:
                console.print(f"[yellow]{args.per_page} is not an allowed page size, using {stored}[/yellow]")
        if args.sort or args.order:
            current = prefs.get_sort()
            prefs.set_sort(
                SortKey(args.sort) if args.sort else current.key,
                SortOrder(args.order) if args.order else current.direction,
            )
    elif args.prefs_command == "reset":
        prefs.reset()
        print(f"Preferences for {args.scope} reset.")

    loaded = prefs.load()
    table = Table(title=f"Preferences ({args.scope})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("view", loaded.view_mode.value)
    table.add_row("per page", str(loaded.items_per_page))
    table.add_row("sort", loaded.sort.key.value)
    table.add_row("order", loaded.sort.direction.value)
    console.print(table)


def cmd_favorite(args):
    """Add or remove a favorite."""
    headers = get_viewer_headers(args.user)
    url = f"{PUBLIC_API_BASE}/favorites/{args.video_id}"
    if args.favorite_command == "add":
        response = httpx.put(url, headers=headers, timeout=DEFAULT_API_TIMEOUT)
    else:
        response = httpx.delete(url, headers=headers, timeout=DEFAULT_API_TIMEOUT)
    handle_auth_error(response)
    result = safe_json_response(response)
    state = "added to" if result["is_favorite"] else "removed from"
    print(f"Video {args.video_id} {state} favorites.")


def cmd_students(args):
    """List members through the admin API."""
    params = {}
    for name in ("role", "school", "belt", "search", "sort", "order"):
        value = getattr(args, name)
        if value:
            params[name] = value

    response = httpx.get(
        f"{ADMIN_API_BASE}/students",
        params=params,
        headers=get_admin_headers(),
        timeout=DEFAULT_API_TIMEOUT,
    )
    handle_auth_error(response)
    result = safe_json_response(response)

    students = result["students"]
    if not students:
        print("No students found.")
        return

    table = Table(title=f"Students ({result['total_count']})")
    table.add_column("Name", style="white")
    table.add_column("Email", style="dim")
    table.add_column("Role")
    table.add_column("School")
    table.add_column("Belt", style="cyan")
    table.add_column("Logins", justify="right")
    table.add_column("Views", justify="right", style="green")
    table.add_column("Last login")

    for s in students:
        table.add_row(
            s["full_name"] or "-",
            s["email"],
            s["role"],
            s["school"] or "-",
            s["belt"]["name"] if s["belt"] else "-",
            str(s["login_count"]),
            str(s["view_count"]),
            s["last_login"][:10] if s["last_login"] else "never",
        )
    console.print(table)


def _add_library_arguments(parser):
    parser.add_argument(
        "--scope",
        choices=[LibraryScope.LIBRARY.value, LibraryScope.FAVORITES.value, LibraryScope.MY_LEVEL.value],
        default=LibraryScope.LIBRARY.value,
        help="Which library to browse (default: library)",
    )
    parser.add_argument(
        "-f", "--filter", action="append", metavar="TOKEN",
        help="Filter token, e.g. <category id>, curriculum:<id>, views:100 (repeatable)",
    )
    parser.add_argument("-s", "--search", help="Search titles, descriptions and facet names")
    parser.add_argument("-m", "--mode", choices=[m.value for m in FilterMode], help="Combine filters with AND or OR")
    parser.add_argument("-p", "--page", type=positive_int, help="Page number")
    parser.add_argument("--per-page", type=positive_int, help="Videos per page (default: stored preference)")
    parser.add_argument("--sort", choices=[k.value for k in SortKey], help="Sort key (default: stored preference)")
    parser.add_argument("--order", choices=[o.value for o in SortOrder], help="Sort direction")
    parser.add_argument("-u", "--user", default="", help="Viewer id (default: $DOJO_USER_ID)")


def main():
    parser = argparse.ArgumentParser(prog="dojo", description="Dojo CLI - Browse the martial arts video library")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Browse command
    browse_parser = subparsers.add_parser("browse", help="Browse videos")
    _add_library_arguments(browse_parser)
    browse_parser.add_argument("--json", action="store_true", help="Print the raw API response")
    browse_parser.set_defaults(func=cmd_browse)

    # Facets command
    facets_parser = subparsers.add_parser("facets", help="List available filter tokens with counts")
    _add_library_arguments(facets_parser)
    facets_parser.set_defaults(func=cmd_facets)

    # Preferences command
    prefs_parser = subparsers.add_parser("prefs", help="Show or change display preferences")
    prefs_subparsers = prefs_parser.add_subparsers(dest="prefs_command", required=True)
    for name, help_text in (("show", "Show preferences"), ("set", "Change preferences"), ("reset", "Reset preferences")):
        sub = prefs_subparsers.add_parser(name, help=help_text)
        sub.add_argument(
            "--scope",
            choices=[s.value for s in LibraryScope],
            default=LibraryScope.LIBRARY.value,
            help="Library surface the preferences belong to",
        )
        if name == "set":
            sub.add_argument("--view", choices=[v.value for v in ViewMode], help="grid or list")
            sub.add_argument("--per-page", type=positive_int, help="Videos per page")
            sub.add_argument("--sort", choices=[k.value for k in SortKey], help="Sort key")
            sub.add_argument("--order", choices=[o.value for o in SortOrder], help="Sort direction")
    prefs_parser.set_defaults(func=cmd_prefs)

    # Favorite command
    fav_parser = subparsers.add_parser("favorite", help="Add or remove a favorite video")
    fav_subparsers = fav_parser.add_subparsers(dest="favorite_command", required=True)
    for name in ("add", "remove"):
        sub = fav_subparsers.add_parser(name, help=f"{name.capitalize()} a favorite")
        sub.add_argument("video_id", help="Video ID")
        sub.add_argument("-u", "--user", default="", help="Viewer id (default: $DOJO_USER_ID)")
    fav_parser.set_defaults(func=cmd_favorite)

    # Students command (admin API)
    students_parser = subparsers.add_parser("students", help="List members (admin)")
    students_parser.add_argument("--role", help="Student, Teacher or Admin")
    students_parser.add_argument("--school", help="School name")
    students_parser.add_argument("--belt", help="Belt id or name")
    students_parser.add_argument("-s", "--search", help="Search name, email, school and role")
    students_parser.add_argument(
        "--sort",
        choices=["full_name", "created_at", "last_login", "login_count", "last_view", "view_count"],
        help="Sort key (default: full_name)",
    )
    students_parser.add_argument("--order", choices=[o.value for o in SortOrder], help="Sort direction")
    students_parser.set_defaults(func=cmd_students)

    args = parser.parse_args()
    try:
        args.func(args)
    except httpx.ConnectError:
        print("Error: Could not connect to the Dojo API. Is the server running?")
        sys.exit(1)
    except httpx.TimeoutException:
        print("Error: Request timed out")
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
