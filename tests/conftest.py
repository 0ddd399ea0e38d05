"""Shared fakes for the Gmail API and message payload builders."""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, List, Optional, Union

import pytest

from gmail_client import GmailClient


def b64url(value: Union[str, bytes]) -> str:
    raw = value.encode("utf-8") if isinstance(value, str) else value
    return base64.urlsafe_b64encode(raw).decode("ascii")


def part(
    mime_type: str,
    data: Optional[Union[str, bytes]] = None,
    headers: Optional[Dict[str, str]] = None,
    attachment_id: str = "",
    size: int = 0,
    parts: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"size": size}
    if data is not None:
        body["data"] = b64url(data)
        body["size"] = size or len(data)
    if attachment_id:
        body["attachmentId"] = attachment_id
    return {
        "mimeType": mime_type,
        "headers": [{"name": key, "value": value} for key, value in (headers or {}).items()],
        "body": body,
        "parts": parts or [],
    }


def attachment_part(attachment_id: str, filename: str, size: int = 10, mime_type: str = "application/pdf"):
    return part(
        mime_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        attachment_id=attachment_id,
        size=size,
    )


def message_payload(message_id: str, headers: Dict[str, str], payload: Dict[str, Any]) -> Dict[str, Any]:
    root = dict(payload)
    root["headers"] = [{"name": key, "value": value} for key, value in headers.items()]
    return {"id": message_id, "payload": root}


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, content_type: str = "application/json"):
        self.status_code = status_code
        self._payload = payload
        self.headers = {"Content-Type": content_type}
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class MalformedResponse(FakeResponse):
    """JSON content type with a body that does not parse."""

    def __init__(self, status_code: int = 200, text: str = "<html>oops"):
        super().__init__(status_code)
        self.text = text
        self.content = text.encode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text)


class FakeSession:
    """Routes requests by the path after ``/users/me/``.

    Each route holds a list of outcomes consumed in order; the last outcome
    repeats. An outcome is a FakeResponse or an exception instance to raise.
    """

    def __init__(self, routes: Optional[Dict[str, List[Any]]] = None):
        self.routes: Dict[str, List[Any]] = {"profile": [FakeResponse(200, {"emailAddress": "me@example.com"})]}
        self.routes.update(routes or {})
        self.calls: List[Dict[str, Any]] = []

    def add(self, path: str, *outcomes: Any) -> None:
        self.routes[path] = list(outcomes)

    def request(self, method, url, params=None, headers=None, timeout=None):
        path = url.split("/users/me/", 1)[1]
        self.calls.append({"method": method, "path": path, "params": params, "timeout": timeout})
        outcomes = self.routes.get(path)
        if not outcomes:
            return FakeResponse(404, {"error": {"status": "NOT_FOUND", "message": f"No route {path}"}})
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def paths(self, fmt: Optional[str] = None) -> List[str]:
        return [
            call["path"]
            for call in self.calls
            if fmt is None or (call["params"] or {}).get("format") == fmt
        ]


class FakeAuth:
    def __init__(self):
        self.calls = 0

    def get_access_token(self) -> str:
        self.calls += 1
        return "access-token"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(session, sleeps):
    def build(**kwargs) -> GmailClient:
        kwargs.setdefault("run_timeout_seconds", None)
        client = GmailClient(FakeAuth(), session=session, sleep=sleeps.append, **kwargs)
        client.connect()
        return client

    return build
