#!/usr/bin/env python3
"""Deterministic folder and file prefixes for downloaded messages.

Every message gets one prefix, ``YYYY-MM-DD_HH-MM-SS_subject``, used both as
its folder name and as the stem of every file inside the folder.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

logger = logging.getLogger(__name__)

PREFIX_BUDGET = 200
PREFIX_DATE_FORMAT = "%Y-%m-%d_%H-%M-%S"
NO_SUBJECT = "no-subject"

EMAIL_DATE_FORMATS = (
    "%a, %d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %z",
    "%a, %d %b %Y %H:%M %z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
)

_TRAILING_ZONE_COMMENT = re.compile(r"\s*\([^)]+\)\s*$")
_UNSAFE_CHARS = re.compile(r"[^\w\s.-]", re.ASCII)
_WHITESPACE = re.compile(r"\s+", re.ASCII)
_DASHES = re.compile(r"-+")


@dataclass(frozen=True)
class ResolvedDate:
    value: datetime
    is_fallback: bool = False


@dataclass(frozen=True)
class NamePlan:
    prefix: str
    timestamp: datetime
    date_is_fallback: bool = False

    @property
    def metadata_name(self) -> str:
        return f"{self.prefix}_metadata.txt"

    @property
    def body_name(self) -> str:
        return f"{self.prefix}_body.html"


def parse_email_date(raw: Optional[str], now: Callable[[], datetime] = datetime.now) -> ResolvedDate:
    """Parse a Date header, falling back to the current time with a warning."""
    cleaned = _TRAILING_ZONE_COMMENT.sub("", (raw or "").strip())

    parsed = _parse_known_formats(cleaned)
    if parsed is not None:
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return ResolvedDate(parsed)

    logger.warning("Could not parse date '%s', using current time", raw)
    return ResolvedDate(now(), is_fallback=True)


def _parse_known_formats(cleaned: str) -> Optional[datetime]:
    for fmt in EMAIL_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt)
        except ValueError:
            continue

    # Zone abbreviations (EST, CET, ...) and other RFC 2822 spellings.
    try:
        return parsedate_to_datetime(cleaned)
    except (TypeError, ValueError, IndexError):
        return None


def sanitize_for_filename(text: Optional[str]) -> str:
    cleaned = _UNSAFE_CHARS.sub("", text or "")
    cleaned = _WHITESPACE.sub("-", cleaned)
    cleaned = _DASHES.sub("-", cleaned)
    return cleaned.strip("-")


def plan_message_name(
    date: Optional[str],
    subject: Optional[str],
    now: Callable[[], datetime] = datetime.now,
) -> NamePlan:
    resolved = parse_email_date(date, now=now)
    date_part = resolved.value.strftime(PREFIX_DATE_FORMAT)

    subject_part = sanitize_for_filename(subject) or NO_SUBJECT
    max_subject = PREFIX_BUDGET - len(date_part) - 1
    subject_part = subject_part[:max_subject].rstrip("-.") or NO_SUBJECT

    return NamePlan(
        prefix=f"{date_part}_{subject_part}",
        timestamp=resolved.value,
        date_is_fallback=resolved.is_fallback,
    )
