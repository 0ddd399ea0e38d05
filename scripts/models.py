#!/usr/bin/env python3
"""Value types handed from the Gmail client to the output writer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

HTML_MIME_TYPE = "text/html"
PLAIN_MIME_TYPE = "text/plain"


@dataclass
class Attachment:
    filename: str
    content_kind: str
    size: int
    data: bytes
    remote_attachment_id: str


@dataclass
class Message:
    id: str
    subject: str = ""
    from_: str = ""
    to: str = ""
    date: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    body_content_kind: str = HTML_MIME_TYPE
    attachments: List[Attachment] = field(default_factory=list)
