#!/usr/bin/env python3
"""Attachment discovery, filtering and download for Gmail message parts.

Gmail occasionally hands out attachment references that cannot be fetched:
oversized parts, absurdly long ids, or specific records that make the
attachments endpoint hang. Those are skipped before any download is tried.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from email.utils import decode_rfc2231
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote

from gmail_errors import GmailAPIError
from models import Attachment
from part_tree import MessagePart, decode_base64url, walk_parts
from retry_policy import DEFAULT_BACKOFF_SECONDS, call_with_single_retry

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
MAX_ATTACHMENT_ID_LENGTH = 500
SMALL_ATTACHMENT_BYTES = 1024
SMALL_ATTACHMENT_TIMEOUT_SECONDS = 10.0
ATTACHMENT_TIMEOUT_SECONDS = 45.0
INTER_DOWNLOAD_DELAY_SECONDS = 0.05
LOG_ID_LENGTH = 50

_FILENAME_PARAM = re.compile(r"filename(\*?)\s*=", re.IGNORECASE)

DownloadFn = Callable[[str, str, float], str]


@dataclass(frozen=True)
class DenylistEntry:
    message_id: str
    attachment_id_fragment: str
    reason: str = ""

    def matches(self, message_id: str, attachment_id: str) -> bool:
        return message_id == self.message_id and self.attachment_id_fragment in attachment_id


DEFAULT_DENYLIST: Tuple[DenylistEntry, ...] = (
    DenylistEntry(
        message_id="19855d64da73b5be",
        attachment_id_fragment="ANGjdJ",
        reason="inline barcode image whose download never returns",
    ),
)


@dataclass
class AttachmentPolicy:
    max_size: int = MAX_ATTACHMENT_BYTES
    max_id_length: int = MAX_ATTACHMENT_ID_LENGTH
    skip_inline_images: bool = False
    denylist: List[DenylistEntry] = field(default_factory=lambda: list(DEFAULT_DENYLIST))

    @classmethod
    def from_env(cls) -> "AttachmentPolicy":
        policy = cls(skip_inline_images=_env_flag("SKIP_INLINE_IMAGES"))
        extra = os.environ.get("GETGMAIL_DENYLIST_FILE", "").strip()
        if extra:
            policy.denylist.extend(load_denylist(Path(extra).expanduser()))
        return policy

    def denylisted(self, message_id: str, attachment_id: str) -> Optional[DenylistEntry]:
        for entry in self.denylist:
            if entry.matches(message_id, attachment_id):
                return entry
        return None


def load_denylist(path: Path) -> List[DenylistEntry]:
    """Read denylist entries from a JSON list of objects."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as err:
        raise ValueError(f"Invalid JSON in denylist file '{path}': {err}") from err

    if not isinstance(payload, list):
        raise ValueError(f"Denylist file '{path}' must contain a JSON list")

    entries = []
    for item in payload:
        if not isinstance(item, dict):
            raise ValueError(f"Denylist entries must be objects, got {item!r}")
        message_id = str(item.get("message_id") or "").strip()
        fragment = str(item.get("attachment_id_fragment") or "").strip()
        if not message_id or not fragment:
            raise ValueError(f"Denylist entry needs message_id and attachment_id_fragment: {item!r}")
        entries.append(DenylistEntry(message_id, fragment, str(item.get("reason") or "")))
    return entries


class AttachmentExtractor:
    def __init__(
        self,
        download: DownloadFn,
        policy: Optional[AttachmentPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    ) -> None:
        self.download = download
        self.policy = policy or AttachmentPolicy()
        self.sleep = sleep
        self.backoff_seconds = backoff_seconds

    def extract(self, message_id: str, root: MessagePart) -> List[Attachment]:
        collected: Dict[str, Attachment] = {}

        def visit(part: MessagePart) -> None:
            if not self.is_attachment(part):
                return
            attachment = self.process(message_id, part)
            if attachment is not None:
                collected[attachment.remote_attachment_id] = attachment

        logger.debug("Extracting attachments for message %s", message_id)
        walk_parts(root, visit)
        logger.debug("Found %d attachments for message %s", len(collected), message_id)
        return list(collected.values())

    def is_attachment(self, part: MessagePart) -> bool:
        has_remote_bytes = bool(part.attachment_id) and part.size > 0

        content_id = part.header("Content-ID")
        if content_id is not None and has_remote_bytes:
            if self.policy.skip_inline_images:
                logger.debug("Skipping inline image %s", content_id)
                return False
            return True

        disposition = (part.header("Content-Disposition") or "").lower()
        if "attachment" in disposition or "filename" in disposition:
            return True

        return has_remote_bytes

    def process(self, message_id: str, part: MessagePart) -> Optional[Attachment]:
        attachment_id = part.attachment_id
        if not attachment_id:
            logger.debug("Attachment part without attachment id in message %s", message_id)
            return None

        filename = filename_from_headers(part) or f"attachment_{attachment_id}"
        log_id = _shorten(attachment_id)

        if part.size > self.policy.max_size:
            logger.warning(
                "Skipping large attachment %s (%d bytes) for message %s",
                filename, part.size, message_id,
            )
            return None

        if len(attachment_id) > self.policy.max_id_length:
            logger.warning(
                "Skipping attachment with extremely long ID (%d chars) for message %s",
                len(attachment_id), message_id,
            )
            return None

        entry = self.policy.denylisted(message_id, attachment_id)
        if entry is not None:
            logger.warning(
                "Skipping known problematic attachment %s in message %s: %s",
                log_id, message_id, entry.reason or "denylisted",
            )
            return None

        logger.debug(
            "Processing attachment %s (ID: %s, Size: %d bytes) for message %s",
            filename, log_id, part.size, message_id,
        )
        first_timeout = (
            SMALL_ATTACHMENT_TIMEOUT_SECONDS if part.size < SMALL_ATTACHMENT_BYTES else ATTACHMENT_TIMEOUT_SECONDS
        )

        def fetch(attempt: int) -> str:
            timeout = first_timeout if attempt == 0 else ATTACHMENT_TIMEOUT_SECONDS
            return self.download(message_id, attachment_id, timeout)

        self.sleep(INTER_DOWNLOAD_DELAY_SECONDS)
        try:
            encoded = call_with_single_retry(
                fetch,
                describe=f"attachment {filename} of message {message_id}",
                backoff_seconds=self.backoff_seconds,
                sleep=self.sleep,
            )
        except GmailAPIError as err:
            logger.error("Error downloading attachment %s for message %s: %s", filename, message_id, err)
            return None

        try:
            data = decode_base64url(encoded)
        except ValueError as err:
            logger.error("Error decoding attachment %s for message %s: %s", filename, message_id, err)
            return None

        return Attachment(
            filename=filename,
            content_kind=part.mime_type,
            size=part.size,
            data=data,
            remote_attachment_id=attachment_id,
        )


def filename_from_headers(part: MessagePart) -> str:
    for key, value in part.headers:
        if key.lower() != "content-disposition":
            continue
        match = _FILENAME_PARAM.search(value)
        if not match:
            continue
        raw = value[match.end():].split(";", 1)[0].strip().strip('"').strip()
        if match.group(1):
            raw = _decode_extended_value(raw)
        if raw:
            return raw
    return ""


def _decode_extended_value(raw: str) -> str:
    # RFC 2231: charset'language'percent-encoded
    charset, _language, text = decode_rfc2231(raw)
    try:
        return unquote(text, encoding=charset or "utf-8", errors="replace")
    except LookupError:
        return unquote(text, errors="replace")


def _shorten(attachment_id: str) -> str:
    if len(attachment_id) > LOG_ID_LENGTH:
        return attachment_id[:LOG_ID_LENGTH] + "..."
    return attachment_id


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}
