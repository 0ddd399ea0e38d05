#!/usr/bin/env python3
"""Pick the displayable body of a Gmail message and normalize it to HTML."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from models import HTML_MIME_TYPE, PLAIN_MIME_TYPE
from part_tree import MessagePart, content_type_param, decode_base64url, walk_parts

logger = logging.getLogger(__name__)

HTML_ESCAPES = (
    ("&", "&amp;"),
    ("<", "&lt;"),
    (">", "&gt;"),
    ('"', "&quot;"),
    ("'", "&#39;"),
)

PLAIN_TEXT_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
\t<meta charset="utf-8">
\t<title>Email Content</title>
\t<style>
\t\tbody {
\t\t\tfont-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
\t\t\tline-height: 1.6;
\t\t\tmax-width: 800px;
\t\t\tmargin: 20px;
\t\t\tpadding: 20px;
\t\t}
\t\tpre {
\t\t\twhite-space: pre-wrap;
\t\t\tword-wrap: break-word;
\t\t\tbackground-color: #f5f5f5;
\t\t\tpadding: 15px;
\t\t\tborder-radius: 5px;
\t\t\tborder: 1px solid #ddd;
\t\t}
\t</style>
</head>
<body>
\t<pre>{content}</pre>
</body>
</html>"""


def extract_body(root: MessagePart) -> Tuple[str, str]:
    """Return ``(body, mime_type)``; the mime type is always HTML."""
    found: Dict[str, Tuple[str, str]] = {}

    def visit(part: MessagePart) -> None:
        if part.mime_type not in (HTML_MIME_TYPE, PLAIN_MIME_TYPE):
            return
        # First match per kind wins.
        if part.mime_type in found:
            return
        text = _decode_part_text(part)
        if text:
            found[part.mime_type] = (text, part.mime_type)

    walk_parts(root, visit)

    if HTML_MIME_TYPE in found:
        return found[HTML_MIME_TYPE]
    if PLAIN_MIME_TYPE in found:
        return wrap_plain_text_as_html(found[PLAIN_MIME_TYPE][0]), HTML_MIME_TYPE
    return "", HTML_MIME_TYPE


def wrap_plain_text_as_html(text: str) -> str:
    escaped = text
    for char, entity in HTML_ESCAPES:
        escaped = escaped.replace(char, entity)
    return PLAIN_TEXT_TEMPLATE.replace("{content}", escaped)


def _decode_part_text(part: MessagePart) -> Optional[str]:
    if not part.body_data:
        return None
    try:
        raw = decode_base64url(part.body_data)
    except ValueError as err:
        logger.debug("Ignoring undecodable %s part: %s", part.mime_type, err)
        return None

    charset = content_type_param(part, "charset") or "utf-8"
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")
