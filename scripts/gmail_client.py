#!/usr/bin/env python3
"""Gmail REST API client for mailbox download operations."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote, urljoin

from attachment_extractor import AttachmentExtractor, AttachmentPolicy
from auth_manager import AuthManager, DependencyError
from body_extractor import extract_body
from gmail_errors import GmailAPIError, RunTimeoutError
from models import Message
from part_tree import MessagePart
from retry_policy import DEFAULT_BACKOFF_SECONDS, call_with_single_retry

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500
MESSAGE_TIMEOUT_SECONDS = 30.0
DEFAULT_RUN_TIMEOUT_SECONDS = 300.0
SUMMARY_HEADERS = ("Subject", "Date")

__all__ = ["GmailAPIError", "GmailClient", "RunTimeoutError"]


class GmailClient:
    def __init__(
        self,
        auth: AuthManager,
        base_url: str = "https://gmail.googleapis.com/gmail/v1",
        timeout_seconds: float = 60.0,
        run_timeout_seconds: Optional[float] = DEFAULT_RUN_TIMEOUT_SECONDS,
        attachment_policy: Optional[AttachmentPolicy] = None,
        session: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        user_id: str = "me",
    ) -> None:
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.run_timeout_seconds = run_timeout_seconds
        self.user_id = user_id
        self.sleep = sleep
        self.clock = clock
        self.backoff_seconds = backoff_seconds
        self.state = "disconnected"
        self.account: Optional[str] = None
        self._session = session
        self._deadline: Optional[float] = None
        self._requests = self._load_requests()
        self.attachments = AttachmentExtractor(
            download=self.download_attachment,
            policy=attachment_policy,
            sleep=sleep,
            backoff_seconds=backoff_seconds,
        )

    def connect(self) -> Dict[str, Any]:
        if self.run_timeout_seconds is not None:
            self._deadline = self.clock() + float(self.run_timeout_seconds)
        if self._session is None:
            self._session = self._requests.Session()

        # Fails fast on missing or revoked credentials.
        self.auth.get_access_token()
        profile = self._request_json("GET", self._user_path("profile"))
        self.account = profile.get("emailAddress")
        self.state = "connected"
        logger.debug("Connected to Gmail as %s", self.account or "unknown account")
        return profile

    def list_message_ids(self, mailbox: str, max_count: int) -> List[str]:
        self._require_connected()
        if max_count <= 0:
            raise ValueError("max_count must be greater than 0")

        self.state = "listing"
        ids: List[str] = []
        page_token: Optional[str] = None

        while len(ids) < max_count:
            params: Dict[str, Any] = {
                "labelIds": mailbox,
                "maxResults": str(min(max_count - len(ids), MAX_PAGE_SIZE)),
            }
            if page_token:
                params["pageToken"] = page_token

            try:
                payload = self._request_json("GET", self._user_path("messages"), params=params)
            except GmailAPIError as err:
                raise GmailAPIError(f"Unable to retrieve messages: {err}", status_code=err.status_code) from err

            for entry in payload.get("messages") or []:
                message_id = str(entry.get("id") or "").strip()
                if message_id and len(ids) < max_count:
                    ids.append(message_id)

            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        return ids

    def get_message_summary(self, message_id: str) -> Dict[str, str]:
        """Fetch only the Subject and Date headers of a message."""
        self._require_connected()
        params = {
            "format": "metadata",
            "metadataHeaders": list(SUMMARY_HEADERS),
        }
        payload = self._fetch_message(message_id, params)
        summary = {"id": str(payload.get("id") or message_id), "subject": "", "date": ""}
        for name, value in MessagePart.from_api(payload.get("payload")).headers:
            lowered = name.lower()
            if lowered in ("subject", "date"):
                summary[lowered] = value
        return summary

    def get_message(self, message_id: str) -> Message:
        self._require_connected()
        self.state = "fetching"
        payload = self._fetch_message(message_id, {"format": "full"})
        root = MessagePart.from_api(payload.get("payload"))

        message = Message(id=str(payload.get("id") or message_id))
        for name, value in root.headers:
            message.headers[name] = value
            lowered = name.lower()
            if lowered == "subject":
                message.subject = value
            elif lowered == "from":
                message.from_ = value
            elif lowered == "to":
                message.to = value
            elif lowered == "date":
                message.date = value

        message.body, message.body_content_kind = extract_body(root)
        message.attachments = self.attachments.extract(message.id, root)
        return message

    def download_attachment(self, message_id: str, attachment_id: str, timeout: float) -> str:
        """Return the base64url payload of one attachment."""
        path = self._user_path(
            f"messages/{_quote_segment(message_id)}/attachments/{_quote_segment(attachment_id)}"
        )
        payload = self._request_json("GET", path, timeout=timeout)
        data = payload.get("data")
        if not isinstance(data, str):
            raise GmailAPIError(f"Attachment response for message {message_id} has no data")
        return data

    def _fetch_message(self, message_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        path = self._user_path(f"messages/{_quote_segment(message_id)}")

        def fetch(attempt: int) -> Dict[str, Any]:
            return self._request_json("GET", path, params=params, timeout=MESSAGE_TIMEOUT_SECONDS)

        try:
            return call_with_single_retry(
                fetch,
                describe=f"message {message_id}",
                backoff_seconds=self.backoff_seconds,
                sleep=self.sleep,
            )
        except GmailAPIError as err:
            raise GmailAPIError(
                f"Unable to retrieve message {message_id}: {err}",
                status_code=err.status_code,
            ) from err

    def _request_json(
        self,
        method: str,
        path_or_url: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        response = self._request(method, path_or_url, params=params, timeout=timeout)
        if response.status_code == 204 or not response.content:
            return {}

        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type.lower():
            raise GmailAPIError(
                f"Expected JSON response but got content type '{content_type}'",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as err:
            raise GmailAPIError(
                f"Malformed JSON in Gmail API response: {err}",
                status_code=response.status_code,
            ) from err
        if not isinstance(payload, dict):
            raise GmailAPIError(
                f"Expected a JSON object from Gmail API but got {type(payload).__name__}",
                status_code=response.status_code,
            )
        return payload

    def _request(
        self,
        method: str,
        path_or_url: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ):
        if self._session is None:
            raise GmailAPIError("Gmail client is not connected")

        token = self.auth.get_access_token()
        url = path_or_url if path_or_url.startswith("http") else self._build_url(path_or_url)
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

        try:
            response = self._session.request(
                method=method,
                url=url,
                params=params,
                headers=headers,
                timeout=self._effective_timeout(timeout or self.timeout_seconds),
            )
        except self._requests.Timeout as err:
            self._check_deadline()
            raise GmailAPIError(f"Gmail API request timeout: {err}") from err
        except self._requests.ConnectionError as err:
            self._check_deadline()
            raise GmailAPIError(f"Gmail API connection error: {err}") from err
        except self._requests.RequestException as err:
            self._check_deadline()
            raise GmailAPIError(f"Gmail API request failed: {err}") from err

        if response.status_code >= 400:
            raise GmailAPIError(_extract_gmail_error(response), status_code=response.status_code)

        return response

    def _effective_timeout(self, timeout: float) -> float:
        self._check_deadline()
        if self._deadline is None:
            return timeout
        return max(0.1, min(timeout, self._deadline - self.clock()))

    def _check_deadline(self) -> None:
        if self._deadline is not None and self.clock() >= self._deadline:
            raise RunTimeoutError(
                f"Run time budget of {self.run_timeout_seconds:.0f}s exhausted"
            )

    def _require_connected(self) -> None:
        if self.state == "disconnected":
            raise GmailAPIError("Gmail client is not connected")

    def _user_path(self, suffix: str) -> str:
        return f"/users/{_quote_segment(self.user_id)}/{suffix}"

    def _build_url(self, path: str) -> str:
        normalized = path if path.startswith("/") else f"/{path}"
        return urljoin(self.base_url + "/", normalized.lstrip("/"))

    @staticmethod
    def _load_requests():
        try:
            import requests  # type: ignore
        except Exception as err:
            raise DependencyError(
                "Missing dependency 'requests'. Install with: python3 -m pip install requests"
            ) from err

        return requests


def _extract_gmail_error(response: Any) -> str:
    prefix = f"Gmail API request failed with status {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        body = (response.text or "").strip()
        if body:
            return f"{prefix}: {body[:500]}"
        return prefix

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        status = error.get("status")
        message = error.get("message")
        if status and message:
            return f"{prefix}: {status} - {message}"
        if message:
            return f"{prefix}: {message}"

    return prefix


def _quote_segment(value: str) -> str:
    return quote(str(value), safe="")
