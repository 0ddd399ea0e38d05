#!/usr/bin/env python3
"""CLI entrypoint for getgmail."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from attachment_extractor import AttachmentPolicy
from auth_manager import AuthConfig, AuthConfigError, AuthError, AuthManager, DependencyError
from downloader import DEFAULT_COUNT, DEFAULT_MAILBOX, DownloadConfig, DownloadTimeoutError, run_download
from gmail_client import GmailAPIError, GmailClient, RunTimeoutError
from token_store import TokenStoreError
from writer import OutputError, OutputWriter

logger = logging.getLogger("getgmail")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    output_format, cleaned_argv = extract_output_format(sys.argv[1:] if argv is None else argv)

    parser = argparse.ArgumentParser(description="Download Gmail messages to local folders")

    root = parser.add_subparsers(dest="domain", required=True)

    auth = root.add_parser("auth", help="Authentication operations")
    auth_sub = auth.add_subparsers(dest="action", required=True)

    auth_login = auth_sub.add_parser("login", help="Authorize read-only Gmail access")
    auth_login.add_argument("--open-browser", action="store_true")
    auth_login.add_argument("--profile", default=None)

    auth_status = auth_sub.add_parser("status", help="Show auth status")
    auth_status.add_argument("--profile", default=None)

    auth_logout = auth_sub.add_parser("logout", help="Clear cached auth for a profile")
    auth_logout.add_argument("--profile", default=None)

    download = root.add_parser("download", help="Download emails from a mailbox to a local folder")
    download.add_argument("-m", "--mailbox", default=DEFAULT_MAILBOX, help="Gmail mailbox/label to download from")
    download.add_argument("-d", "--output-dir", required=True, help="Existing directory for downloaded emails")
    download.add_argument("-c", "--count", type=int, default=DEFAULT_COUNT, help="Maximum number of emails")
    download.add_argument("--message-id", default=None, help="Only process this listed message")
    download.add_argument("--skip-inline-images", action="store_true")
    download.add_argument("--run-timeout", type=float, default=None, help="Run time budget in seconds")
    download.add_argument("--profile", default=None)
    download.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS)

    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(cleaned_argv)
    args.format = output_format
    return args


def extract_output_format(argv: List[str]) -> Tuple[str, List[str]]:
    fmt = "json"
    cleaned: List[str] = []
    skip_next = False

    for index, arg in enumerate(argv):
        if skip_next:
            skip_next = False
            continue

        if arg == "--format":
            if index + 1 >= len(argv):
                raise ValueError("--format requires a value: json or text")
            fmt = argv[index + 1].strip().lower()
            skip_next = True
            continue

        if arg.startswith("--format="):
            fmt = arg.split("=", 1)[1].strip().lower()
            continue

        cleaned.append(arg)

    if fmt not in {"json", "text"}:
        raise ValueError("--format must be one of: json, text")

    return fmt, cleaned


def configure_logging(verbose: bool) -> None:
    handler = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # Keep transport chatter out of the run log.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main(argv: Optional[List[str]] = None) -> int:
    output_format = "json"
    load_dotenv(override=False)
    try:
        args = parse_args(argv)
        output_format = args.format
        configure_logging(bool(args.verbose))

        if args.domain == "auth":
            result = run_auth(args)
        elif args.domain == "download":
            result = run_download_command(args)
        else:
            raise RuntimeError(f"Unsupported domain '{args.domain}'")

        ok = not result.get("all_failed", False)
        emit({"ok": ok, "result": result}, output_format)
        return 0 if ok else 1

    except DownloadTimeoutError as err:
        emit(
            {
                "ok": False,
                "error": {"type": err.__class__.__name__, "message": str(err)},
                "result": err.summary.to_dict(),
            },
            output_format,
        )
        return 1

    except (
        AuthConfigError,
        AuthError,
        DependencyError,
        TokenStoreError,
        GmailAPIError,
        RunTimeoutError,
        OutputError,
        ValueError,
        OSError,
    ) as err:
        logger.error("%s", err)
        emit(
            {
                "ok": False,
                "error": {
                    "type": err.__class__.__name__,
                    "message": str(err),
                },
            },
            output_format,
        )
        return 1


def run_auth(args: argparse.Namespace) -> Dict[str, Any]:
    manager = build_auth_manager(args.profile)
    if args.action == "login":
        return manager.login(open_browser=bool(args.open_browser))
    if args.action == "status":
        return manager.status()
    if args.action == "logout":
        return manager.logout()

    raise RuntimeError(f"Unsupported auth action '{args.action}'")


def run_download_command(args: argparse.Namespace) -> Dict[str, Any]:
    config = DownloadConfig.from_env(
        mailbox=args.mailbox,
        max_count=args.count,
        run_timeout_seconds=args.run_timeout,
        only_message_id=args.message_id,
    )
    writer = OutputWriter()
    output_dir = writer.validate_output_dir(Path(args.output_dir))

    policy = AttachmentPolicy.from_env()
    if args.skip_inline_images:
        policy.skip_inline_images = True

    client = build_gmail_client(args.profile, config, policy)
    logger.info("Connecting to Gmail API...")
    client.connect()
    logger.info(
        "Connected successfully, downloading from mailbox: %s (max %d emails)",
        config.mailbox, config.max_count,
    )

    stop_event = threading.Event()
    with stop_on_signals(stop_event):
        summary = run_download(client, writer, config, output_dir, stop_event=stop_event)

    if summary.all_failed:
        logger.error("All email downloads failed")
    return summary.to_dict()


def build_auth_manager(profile: Optional[str]) -> AuthManager:
    config = AuthConfig.from_env(profile_override=profile)
    return AuthManager(config)


def build_gmail_client(
    profile: Optional[str],
    config: DownloadConfig,
    policy: AttachmentPolicy,
) -> GmailClient:
    manager = build_auth_manager(profile)
    return GmailClient(
        manager,
        run_timeout_seconds=config.run_timeout_seconds,
        attachment_policy=policy,
    )


@contextmanager
def stop_on_signals(stop_event: threading.Event) -> Iterator[threading.Event]:
    """Turn SIGINT/SIGTERM into a stop request honored between messages."""

    def handle(signum: int, _frame: Any) -> None:
        logger.warning("Received signal %d, finishing the current message", signum)
        stop_event.set()

    previous: Dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handle)
        except ValueError:
            # Only the main thread may install handlers.
            pass
    try:
        yield stop_event
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def emit(payload: Dict[str, Any], fmt: str) -> None:
    if fmt == "json":
        print(json.dumps(payload, indent=2, sort_keys=True))
        return

    if payload.get("ok"):
        result = payload.get("result", {})
        print(render_text(result))
    else:
        err = payload.get("error")
        if err:
            print(f"ERROR [{err.get('type')}]: {err.get('message')}")
        if payload.get("result"):
            print(render_text(payload["result"]))


def render_text(result: Any) -> str:
    if isinstance(result, (str, int, float, bool)) or result is None:
        return str(result)

    if isinstance(result, list):
        return "\n".join(f"- {json.dumps(item, sort_keys=True)}" for item in result)

    if isinstance(result, dict):
        lines: List[str] = []
        for key in sorted(result.keys()):
            value = result[key]
            if isinstance(value, (dict, list)):
                lines.append(f"{key}:")
                lines.append(json.dumps(value, indent=2, sort_keys=True))
            else:
                lines.append(f"{key}: {value}")
        return "\n".join(lines)

    return json.dumps(result, sort_keys=True)


if __name__ == "__main__":
    raise SystemExit(main())
