#!/usr/bin/env python3
"""Writes downloaded messages to per-message folders on local disk.

Layout for one message, all sharing the planned prefix::

    <output>/<prefix>/<prefix>_body.html
    <output>/<prefix>/<prefix>_<attachment filename>
    <output>/<prefix>/<prefix>_metadata.txt

The metadata file is written last and marks the message as complete.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Set

from models import Message
from naming import NamePlan, plan_message_name, sanitize_for_filename

logger = logging.getLogger(__name__)

METADATA_GLOB = "*_metadata.txt"
MAX_DUPLICATE_SUFFIX = 1000


class OutputError(RuntimeError):
    """Raised when the output directory cannot be used."""


class OutputWriter:
    def validate_output_dir(self, output_dir: Path) -> Path:
        path = Path(output_dir).expanduser()
        if not path.exists():
            raise OutputError(f"Output directory does not exist: {path}")
        if not path.is_dir():
            raise OutputError(f"Output path is not a directory: {path}")
        logger.info("Output directory validated: %s", path)
        return path

    def plan(self, message: Message) -> NamePlan:
        return plan_message_name(message.date, message.subject)

    def has_completed(self, output_dir: Path, plan: NamePlan) -> bool:
        folder = Path(output_dir) / plan.prefix
        return folder.is_dir() and any(folder.glob(METADATA_GLOB))

    def create_message_folder(self, output_dir: Path, plan: NamePlan) -> Path:
        folder = Path(output_dir) / plan.prefix
        if folder.is_dir():
            logger.info("Email folder already exists: %s", plan.prefix)
            return folder

        folder.mkdir(parents=True, exist_ok=True)
        logger.info("Created email folder: %s", plan.prefix)
        return folder

    def write_message(self, message: Message, output_dir: Path, plan: Optional[NamePlan] = None) -> bool:
        """Materialize ``message``; returns False if it was already complete."""
        plan = plan or self.plan(message)
        if self.has_completed(output_dir, plan):
            logger.info("Email %s already downloaded, leaving %s untouched", message.id, plan.prefix)
            return False

        # A folder without metadata is left over from an interrupted run.
        resuming = (Path(output_dir) / plan.prefix).is_dir()
        folder = self.create_message_folder(output_dir, plan)

        (folder / plan.body_name).write_text(message.body, encoding="utf-8")

        claimed: Set[str] = {plan.body_name, plan.metadata_name}
        written = 0
        for index, attachment in enumerate(message.attachments, start=1):
            filename = sanitize_for_filename(attachment.filename) or f"attachment_{index}"
            target = resolve_duplicate_name(folder / f"{plan.prefix}_{filename}", claimed, check_disk=not resuming)
            claimed.add(target.name)
            try:
                target.write_bytes(attachment.data)
            except OSError as err:
                logger.warning("Failed to write attachment %s: %s", target.name, err)
                continue
            written += 1
            logger.info("Wrote attachment: %s (%d bytes)", target.name, len(attachment.data))

        if message.attachments:
            logger.info("Wrote %d attachments to %s", written, folder)

        (folder / plan.metadata_name).write_text(render_metadata(message), encoding="utf-8")

        set_folder_times(folder, plan)
        logger.info("Wrote email %s to %s", message.id, folder)
        return True


def resolve_duplicate_name(path: Path, claimed: Iterable[str], check_disk: bool = True) -> Path:
    """Append ``_1``, ``_2``, ... before the extension until the name is free."""
    taken = set(claimed)

    def is_free(candidate: Path) -> bool:
        if candidate.name in taken:
            return False
        return not (check_disk and candidate.exists())

    if is_free(path):
        return path

    stem = path.stem
    suffix = path.suffix
    for index in range(1, MAX_DUPLICATE_SUFFIX):
        candidate = path.parent / f"{stem}_{index}{suffix}"
        if is_free(candidate):
            return candidate

    raise OSError(f"Could not find free filename for '{path.name}'")


def render_metadata(message: Message) -> str:
    lines: List[str] = [
        f"Email ID: {message.id}",
        f"Subject: {message.subject}",
        f"From: {message.from_}",
        f"To: {message.to}",
        f"Date: {message.date}",
        f"Body MIME Type: {message.body_content_kind}",
        f"Attachments: {len(message.attachments)}",
        "",
        "Headers:",
    ]
    lines.extend(f"{name}: {value}" for name, value in message.headers.items())

    if message.attachments:
        lines.append("")
        lines.append("Attachments:")
        for index, attachment in enumerate(message.attachments, start=1):
            lines.append(
                f"  {index}. {attachment.filename} ({attachment.content_kind}, {attachment.size} bytes)"
            )

    return "\n".join(lines) + "\n"


def set_folder_times(folder: Path, plan: NamePlan) -> None:
    stamp = plan.timestamp.timestamp()
    logger.debug("Setting folder timestamp to: %s", plan.timestamp.isoformat())
    try:
        os.utime(folder, (stamp, stamp))
    except OSError as err:
        logger.warning("Failed to set folder timestamp: %s", err)
