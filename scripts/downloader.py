#!/usr/bin/env python3
"""Sequential mailbox download run: list, skip what is on disk, fetch, write."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from gmail_client import DEFAULT_RUN_TIMEOUT_SECONDS, GmailAPIError, GmailClient, RunTimeoutError
from naming import plan_message_name
from writer import OutputWriter

logger = logging.getLogger(__name__)

DEFAULT_MAILBOX = "INBOX"
DEFAULT_COUNT = 100
INTER_MESSAGE_DELAY_SECONDS = 0.1


@dataclass
class DownloadConfig:
    mailbox: str = DEFAULT_MAILBOX
    max_count: int = DEFAULT_COUNT
    run_timeout_seconds: float = DEFAULT_RUN_TIMEOUT_SECONDS
    only_message_id: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        mailbox: Optional[str] = None,
        max_count: Optional[int] = None,
        run_timeout_seconds: Optional[float] = None,
        only_message_id: Optional[str] = None,
    ) -> "DownloadConfig":
        if run_timeout_seconds is None:
            raw_timeout = os.environ.get("GETGMAIL_RUN_TIMEOUT", "").strip()
            try:
                run_timeout_seconds = float(raw_timeout) if raw_timeout else DEFAULT_RUN_TIMEOUT_SECONDS
            except ValueError as err:
                raise ValueError(f"GETGMAIL_RUN_TIMEOUT must be a number of seconds: {raw_timeout!r}") from err

        config = cls(
            mailbox=(mailbox or DEFAULT_MAILBOX).strip() or DEFAULT_MAILBOX,
            max_count=DEFAULT_COUNT if max_count is None else int(max_count),
            run_timeout_seconds=run_timeout_seconds,
            only_message_id=only_message_id or os.environ.get("DEBUG_EMAIL_ID", "").strip() or None,
        )
        if config.max_count <= 0:
            raise ValueError("--count must be greater than 0")
        if config.run_timeout_seconds <= 0:
            raise ValueError("run timeout must be greater than 0")
        return config


@dataclass
class RunSummary:
    mailbox: str
    output_dir: str
    listed: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    stopped: bool = False
    failures: List[Dict[str, str]] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.processed == 0 and self.skipped == 0 and self.failed > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mailbox": self.mailbox,
            "output_dir": self.output_dir,
            "listed": self.listed,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "stopped": self.stopped,
            "all_failed": self.all_failed,
            "failures": list(self.failures),
        }


class DownloadTimeoutError(RunTimeoutError):
    """Run budget exhausted; carries the counts reached so far."""

    def __init__(self, message: str, summary: RunSummary):
        super().__init__(message)
        self.summary = summary


def run_download(
    client: GmailClient,
    writer: OutputWriter,
    config: DownloadConfig,
    output_dir: Path,
    stop_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunSummary:
    output_dir = Path(output_dir)
    summary = RunSummary(mailbox=config.mailbox, output_dir=str(output_dir))

    logger.info("Fetching message list (max %d messages)...", config.max_count)
    message_ids = client.list_message_ids(config.mailbox, config.max_count)
    logger.info("Found %d messages to process", len(message_ids))

    if config.only_message_id:
        logger.info("DEBUG MODE: Looking for email %s", config.only_message_id)
        if config.only_message_id not in message_ids:
            raise GmailAPIError(
                f"Email {config.only_message_id} not found in first {len(message_ids)} messages"
            )
        message_ids = [config.only_message_id]

    summary.listed = len(message_ids)

    try:
        for index, message_id in enumerate(message_ids):
            if stop_event is not None and stop_event.is_set():
                logger.warning("Stop requested, %d messages left unprocessed", len(message_ids) - index)
                summary.stopped = True
                break
            if index > 0:
                sleep(INTER_MESSAGE_DELAY_SECONDS)

            logger.info("Processing message %d/%d (ID: %s)", index + 1, len(message_ids), message_id)
            _process_one(client, writer, output_dir, message_id, summary)
    except RunTimeoutError as err:
        logger.error("Operation timeout: %s", err)
        raise DownloadTimeoutError(str(err), summary) from err

    logger.info(
        "Download completed. Processed: %d, Skipped: %d, Failed: %d. Emails saved to: %s",
        summary.processed, summary.skipped, summary.failed, output_dir,
    )
    return summary


def _process_one(
    client: GmailClient,
    writer: OutputWriter,
    output_dir: Path,
    message_id: str,
    summary: RunSummary,
) -> None:
    try:
        headers = client.get_message_summary(message_id)
        plan = plan_message_name(headers.get("date"), headers.get("subject"))
        if writer.has_completed(output_dir, plan):
            logger.info("Email %s already downloaded, skipping", message_id)
            summary.skipped += 1
            return

        message = client.get_message(message_id)
    except GmailAPIError as err:
        _record_failure(summary, message_id, f"Failed to get message {message_id}: {err}")
        return

    if plan.date_is_fallback:
        logger.warning("Email %s has no parseable date; filed under %s", message_id, plan.prefix)

    try:
        written = writer.write_message(message, output_dir, plan)
    except OSError as err:
        _record_failure(summary, message_id, f"Failed to write message {message_id}: {err}")
        return

    if written:
        summary.processed += 1
    else:
        summary.skipped += 1


def _record_failure(summary: RunSummary, message_id: str, error: str) -> None:
    logger.error(error)
    summary.failed += 1
    summary.failures.append({"message_id": message_id, "error": error})
