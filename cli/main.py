#!/usr/bin/env python3
"""
thumbpick CLI - generate, inspect and override video thumbnails.
"""

import argparse
import os
import sys
from functools import wraps

import httpx
from rich.console import Console
from rich.table import Table

from api.errors import truncate_error
from config import API_PORT, ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH

# Generation runs can take up to the server's run deadline, plus some slack
GENERATE_TIMEOUT = int(os.getenv("THUMBPICK_CLI_GENERATE_TIMEOUT", "180"))

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("THUMBPICK_API_TIMEOUT", "30"))

_default_api_url = f"http://localhost:{API_PORT}"
API_BASE = os.getenv("THUMBPICK_API_URL", _default_api_url).rstrip("/")

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def non_negative_int(value: str) -> int:
    """Argparse type converter that validates non-negative integers."""
    i = int(value)
    if i < 0:
        raise argparse.ArgumentTypeError(f"must be a non-negative integer, got {i}")
    return i


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Args:
        response: httpx.Response object
        default_error: Default error message if response has no detail

    Returns:
        Parsed JSON data if successful

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, AttributeError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def handles_api_errors(func):
    """Turn connection and API failures into an error message and exit status 1."""

    @wraps(func)
    def wrapper(args):
        try:
            return func(args)
        except httpx.ConnectError:
            print(f"Error: Could not connect to thumbpick API at {API_BASE}")
            sys.exit(1)
        except httpx.TimeoutException:
            print(f"Error: Request timed out while connecting to {API_BASE}")
            sys.exit(1)
        except CLIError as e:
            print(f"Error: {e}")
            sys.exit(1)

    return wrapper


def format_score(value) -> str:
    return "-" if value is None else f"{value:.1f}"


def print_thumbnail_set(data: dict) -> None:
    """Render a thumbnail set as a table, best candidate first."""
    mode = data.get("selectionMode", "auto")
    console.print(f"[bold]{data['videoKey']}[/bold]  selection: {mode}")

    candidates = sorted(data.get("candidates", []), key=lambda c: (-c["combinedScore"], c["seekTimeSeconds"]))
    if not candidates:
        print("No candidates.")
        return

    table = Table()
    table.add_column("", width=1)
    table.add_column("Seek", justify="right")
    table.add_column("Pixel", justify="right")
    table.add_column("AI", justify="right")
    table.add_column("Combined", justify="right")
    table.add_column("Method")
    table.add_column("Upload")
    table.add_column("ID")
    for c in candidates:
        table.add_row(
            "*" if c.get("selected") else "",
            f"{c['seekTimeSeconds']}s",
            format_score(c["pixelScore"]),
            format_score(c.get("aiScore")),
            format_score(c["combinedScore"]),
            c["scoringMethod"],
            c["uploadStatus"],
            c["id"],
        )
    console.print(table)

    selected = next((c for c in candidates if c.get("selected")), None)
    if selected and selected.get("storageUrl"):
        print(f"Selected thumbnail: {selected['storageUrl']}")


@handles_api_errors
def cmd_generate(args):
    """Generate candidates for a video."""
    payload = {"videoKey": args.video_key, "replace": args.replace, "force": args.force}
    if args.seek:
        payload["seekTimes"] = args.seek

    response = httpx.post(f"{API_BASE}/thumbnails/generate", json=payload, timeout=GENERATE_TIMEOUT)
    result = safe_json_response(response)

    for outcome in result.get("outcomes", []):
        if outcome["state"] != "persisted":
            print(f"  {outcome['seekTimeSeconds']}s: {outcome['state']} ({outcome.get('error') or 'no detail'})")
        elif outcome.get("aiError"):
            print(f"  {outcome['seekTimeSeconds']}s: pixel score only ({outcome['aiError']})")
    if result.get("deadlineExceeded"):
        print("Warning: run deadline exceeded; some candidates were skipped or kept with partial scores.")

    print_thumbnail_set(result)


@handles_api_errors
def cmd_show(args):
    """Show the thumbnail set for a video."""
    response = httpx.get(f"{API_BASE}/thumbnails/{args.video_key}", timeout=DEFAULT_API_TIMEOUT)
    print_thumbnail_set(safe_json_response(response))


@handles_api_errors
def cmd_select(args):
    """Override the selected candidate."""
    response = httpx.put(
        f"{API_BASE}/thumbnails/{args.video_key}/selection",
        json={"candidateId": args.candidate_id},
        timeout=DEFAULT_API_TIMEOUT,
    )
    result = safe_json_response(response)
    print(f"Selection for {args.video_key} set to {args.candidate_id} (manual).")
    print_thumbnail_set(result)


@handles_api_errors
def cmd_retry_uploads(args):
    """Retry failed or deferred uploads for a video."""
    response = httpx.post(f"{API_BASE}/thumbnails/{args.video_key}/uploads/retry", timeout=GENERATE_TIMEOUT)
    result = safe_json_response(response)

    still_pending = [c for c in result.get("candidates", []) if c["uploadStatus"] != "uploaded"]
    if still_pending:
        print(f"{len(still_pending)} candidate(s) still not uploaded.")
    else:
        print("All candidates uploaded.")
    print_thumbnail_set(result)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="thumbpick", description="thumbpick CLI - Pick the best thumbnail for a video")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Generate command
    gen_parser = subparsers.add_parser("generate", help="Generate and score thumbnail candidates")
    gen_parser.add_argument("video_key", help="Video key")
    gen_parser.add_argument(
        "-s",
        "--seek",
        type=non_negative_int,
        action="append",
        metavar="SECONDS",
        help="Seek time in seconds (repeatable, default: server defaults)",
    )
    gen_parser.add_argument(
        "--replace", action="store_true", help="Drop existing candidates at seek times not in this run"
    )
    gen_parser.add_argument("--force", action="store_true", help="Discard a manual selection and reselect")
    gen_parser.set_defaults(func=cmd_generate)

    # Show command
    show_parser = subparsers.add_parser("show", help="Show candidates and the current selection")
    show_parser.add_argument("video_key", help="Video key")
    show_parser.set_defaults(func=cmd_show)

    # Select command
    select_parser = subparsers.add_parser("select", help="Manually select a candidate")
    select_parser.add_argument("video_key", help="Video key")
    select_parser.add_argument("candidate_id", help="Candidate ID (see 'thumbpick show')")
    select_parser.set_defaults(func=cmd_select)

    # Retry uploads command
    retry_parser = subparsers.add_parser("retry-uploads", help="Retry failed or deferred uploads")
    retry_parser.add_argument("video_key", help="Video key")
    retry_parser.set_defaults(func=cmd_retry_uploads)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
