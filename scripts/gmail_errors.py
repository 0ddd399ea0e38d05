#!/usr/bin/env python3
"""Exceptions raised by the Gmail client."""

from __future__ import annotations

from typing import Optional


class GmailAPIError(RuntimeError):
    """Raised on Gmail API failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RunTimeoutError(RuntimeError):
    """Raised once the run-level time budget is spent."""

    fatal = True
