#!/usr/bin/env python3
"""Gmail message part tree and a depth-first walker over it."""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64


@dataclass
class MessagePart:
    mime_type: str = ""
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body_data: str = ""
    attachment_id: str = ""
    size: int = 0
    parts: List["MessagePart"] = field(default_factory=list)

    @classmethod
    def from_api(cls, payload: Optional[Dict[str, Any]]) -> "MessagePart":
        if not isinstance(payload, dict):
            payload = {}
        body = payload.get("body")
        if not isinstance(body, dict):
            body = {}
        headers = [
            (str(header.get("name") or ""), str(header.get("value") or ""))
            for header in payload.get("headers") or []
            if isinstance(header, dict)
        ]
        try:
            size = int(body.get("size") or 0)
        except (TypeError, ValueError):
            size = 0

        return cls(
            mime_type=str(payload.get("mimeType") or "").lower(),
            headers=headers,
            body_data=str(body.get("data") or ""),
            attachment_id=str(body.get("attachmentId") or ""),
            size=size,
            parts=[cls.from_api(child) for child in payload.get("parts") or []],
        )

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None


def walk_parts(
    root: MessagePart,
    visitor: Callable[[MessagePart], None],
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> None:
    """Visit every part depth-first, parents before children."""
    _walk(root, visitor, 0, max_depth)


def _walk(part: MessagePart, visitor: Callable[[MessagePart], None], depth: int, max_depth: int) -> None:
    if depth > max_depth:
        logger.warning("Part tree deeper than %d levels, ignoring the rest of this branch", max_depth)
        return

    visitor(part)
    for child in part.parts:
        _walk(child, visitor, depth + 1, max_depth)


def decode_base64url(data: str) -> bytes:
    """Strict base64url decode; raises ValueError on malformed input."""
    cleaned = "".join(data.split())
    padded = cleaned + "=" * (-len(cleaned) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"Invalid base64url data: {err}") from err


def content_type_param(part: MessagePart, name: str) -> Optional[str]:
    raw = part.header("Content-Type")
    if not raw:
        return None
    wanted = name.lower()
    for chunk in raw.split(";")[1:]:
        key, sep, value = chunk.partition("=")
        if sep and key.strip().lower() == wanted:
            return value.strip().strip('"') or None
    return None
