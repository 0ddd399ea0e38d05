"""Tests for the Gmail REST client against a fake session."""

import pytest
import requests

from conftest import (
    FakeAuth,
    FakeClock,
    FakeResponse,
    MalformedResponse,
    attachment_part,
    b64url,
    message_payload,
    part,
)
from gmail_client import GmailAPIError, GmailClient, RunTimeoutError


def ids_page(ids, next_token=None):
    payload = {"messages": [{"id": message_id, "threadId": f"t-{message_id}"} for message_id in ids]}
    if next_token:
        payload["nextPageToken"] = next_token
    return FakeResponse(200, payload)


def full_message(message_id="m1"):
    return message_payload(
        message_id,
        {
            "Subject": "Quarterly report",
            "From": "Alice <alice@example.com>",
            "To": "bob@example.com",
            "Date": "Mon, 2 Jan 2006 15:04:05 -0700",
            "X-Custom": "first",
        },
        part(
            "multipart/mixed",
            parts=[
                part(
                    "multipart/alternative",
                    parts=[
                        part("text/plain", "plain version"),
                        part("text/html", "<p>html version</p>"),
                    ],
                ),
                attachment_part("att-1", "report.pdf", size=12),
            ],
        ),
    )


class TestConnect:
    def test_connect_reads_profile(self, session):
        client = GmailClient(FakeAuth(), session=session, run_timeout_seconds=None)

        profile = client.connect()

        assert profile["emailAddress"] == "me@example.com"
        assert client.account == "me@example.com"
        assert client.state == "connected"
        assert session.paths() == ["profile"]

    def test_connect_fails_on_api_error(self, session):
        session.add("profile", FakeResponse(401, {"error": {"status": "UNAUTHENTICATED", "message": "bad token"}}))
        client = GmailClient(FakeAuth(), session=session, run_timeout_seconds=None)

        with pytest.raises(GmailAPIError) as excinfo:
            client.connect()

        assert excinfo.value.status_code == 401
        assert "UNAUTHENTICATED - bad token" in str(excinfo.value)
        assert client.state == "disconnected"

    def test_operations_require_connect(self, session):
        client = GmailClient(FakeAuth(), session=session, run_timeout_seconds=None)

        with pytest.raises(GmailAPIError, match="not connected"):
            client.list_message_ids("INBOX", 10)


class TestListMessageIds:
    def test_single_page(self, session, make_client):
        session.add("messages", ids_page(["a", "b", "c"]))
        client = make_client()

        assert client.list_message_ids("INBOX", 10) == ["a", "b", "c"]

        call = session.calls[-1]
        assert call["params"]["labelIds"] == "INBOX"
        assert call["params"]["maxResults"] == "10"
        assert "pageToken" not in call["params"]

    def test_follows_page_tokens(self, session, make_client):
        session.add("messages", ids_page(["a", "b"], "page-2"), ids_page(["c"]))
        client = make_client()

        assert client.list_message_ids("Label_7", 10) == ["a", "b", "c"]

        list_calls = [call for call in session.calls if call["path"] == "messages"]
        assert len(list_calls) == 2
        assert list_calls[1]["params"]["pageToken"] == "page-2"
        assert list_calls[1]["params"]["maxResults"] == "8"

    def test_truncates_to_requested_count(self, session, make_client):
        session.add("messages", ids_page(["a", "b", "c", "d"], "more"))
        client = make_client()

        assert client.list_message_ids("INBOX", 2) == ["a", "b"]
        assert len([call for call in session.calls if call["path"] == "messages"]) == 1

    def test_page_size_capped(self, session, make_client):
        session.add("messages", ids_page([f"id-{i}" for i in range(500)], "next"), ids_page(["last"]))
        client = make_client()

        ids = client.list_message_ids("INBOX", 1200)

        assert len(ids) == 501
        list_calls = [call for call in session.calls if call["path"] == "messages"]
        assert list_calls[0]["params"]["maxResults"] == "500"
        assert list_calls[1]["params"]["maxResults"] == "500"

    def test_empty_mailbox(self, session, make_client):
        session.add("messages", FakeResponse(200, {"resultSizeEstimate": 0}))
        client = make_client()

        assert client.list_message_ids("INBOX", 5) == []

    def test_list_failure_is_wrapped(self, session, make_client):
        session.add("messages", FakeResponse(404, {"error": {"status": "NOT_FOUND", "message": "Invalid label"}}))
        client = make_client()

        with pytest.raises(GmailAPIError, match="Unable to retrieve messages"):
            client.list_message_ids("NOPE", 5)

    def test_rejects_non_positive_count(self, make_client):
        client = make_client()
        with pytest.raises(ValueError):
            client.list_message_ids("INBOX", 0)


class TestGetMessage:
    def test_full_message(self, session, make_client):
        session.add("messages/m1", FakeResponse(200, full_message()))
        session.add("messages/m1/attachments/att-1", FakeResponse(200, {"size": 12, "data": b64url(b"%PDF-payload")}))
        client = make_client()

        message = client.get_message("m1")

        assert message.id == "m1"
        assert message.subject == "Quarterly report"
        assert message.from_ == "Alice <alice@example.com>"
        assert message.to == "bob@example.com"
        assert message.date == "Mon, 2 Jan 2006 15:04:05 -0700"
        assert message.headers["X-Custom"] == "first"
        assert message.body == "<p>html version</p>"
        assert message.body_content_kind == "text/html"
        assert len(message.attachments) == 1
        assert message.attachments[0].data == b"%PDF-payload"
        assert session.calls[1]["params"] == {"format": "full"}

    def test_repeated_header_keeps_last_value(self, session, make_client):
        payload = full_message()
        payload["payload"]["headers"].append({"name": "X-Custom", "value": "second"})
        session.add("messages/m1", FakeResponse(200, payload))
        session.add("messages/m1/attachments/att-1", FakeResponse(200, {"data": b64url(b"x")}))
        client = make_client()

        assert client.get_message("m1").headers["X-Custom"] == "second"

    def test_summary_requests_metadata_only(self, session, make_client):
        session.add("messages/m1", FakeResponse(200, full_message()))
        client = make_client()

        summary = client.get_message_summary("m1")

        assert summary == {"id": "m1", "subject": "Quarterly report", "date": "Mon, 2 Jan 2006 15:04:05 -0700"}
        assert session.calls[-1]["params"] == {"format": "metadata", "metadataHeaders": ["Subject", "Date"]}
        assert session.paths(fmt="full") == []

    def test_retries_once_on_server_error(self, session, make_client, sleeps):
        session.add(
            "messages/m1",
            FakeResponse(503, {"error": {"status": "UNAVAILABLE", "message": "backend"}}),
            FakeResponse(200, full_message()),
        )
        session.add("messages/m1/attachments/att-1", FakeResponse(200, {"data": b64url(b"x")}))
        client = make_client()

        assert client.get_message("m1").subject == "Quarterly report"
        assert session.paths(fmt="full") == ["messages/m1", "messages/m1"]
        assert 2.0 in sleeps

    def test_retries_once_on_rate_limit(self, session, make_client):
        session.add("messages/m1", FakeResponse(429, {"error": {"message": "slow down"}}), FakeResponse(200, full_message()))
        client = make_client()

        assert client.get_message_summary("m1")["subject"] == "Quarterly report"

    def test_retries_transport_timeout(self, session, make_client):
        session.add("messages/m1", requests.Timeout("read timed out"), FakeResponse(200, full_message()))
        client = make_client()

        assert client.get_message_summary("m1")["subject"] == "Quarterly report"
        assert len(session.paths()) == 3

    def test_does_not_retry_client_error(self, session, make_client, sleeps):
        session.add("messages/m1", FakeResponse(404, {"error": {"status": "NOT_FOUND", "message": "gone"}}))
        client = make_client()

        with pytest.raises(GmailAPIError) as excinfo:
            client.get_message("m1")

        assert excinfo.value.status_code == 404
        assert "Unable to retrieve message m1" in str(excinfo.value)
        assert session.paths(fmt="full") == ["messages/m1"]
        assert sleeps == []

    def test_gives_up_after_second_failure(self, session, make_client):
        session.add("messages/m1", FakeResponse(500, {"error": {"message": "boom"}}))
        client = make_client()

        with pytest.raises(GmailAPIError) as excinfo:
            client.get_message("m1")

        assert excinfo.value.status_code == 500
        assert session.paths(fmt="full") == ["messages/m1", "messages/m1"]

    def test_attachment_failure_does_not_fail_message(self, session, make_client):
        session.add("messages/m1", FakeResponse(200, full_message()))
        session.add("messages/m1/attachments/att-1", FakeResponse(403, {"error": {"message": "denied"}}))
        client = make_client()

        message = client.get_message("m1")

        assert message.body == "<p>html version</p>"
        assert message.attachments == []

    def test_attachment_without_data_is_dropped(self, session, make_client):
        session.add("messages/m1", FakeResponse(200, full_message()))
        session.add("messages/m1/attachments/att-1", FakeResponse(200, {"size": 12}))
        client = make_client()

        assert client.get_message("m1").attachments == []


class TestMalformedResponses:
    def test_unparseable_json_body(self, session, make_client):
        session.add("messages/m1", MalformedResponse())
        client = make_client()

        with pytest.raises(GmailAPIError) as excinfo:
            client.get_message("m1")

        assert excinfo.value.status_code == 200
        assert "Malformed JSON" in str(excinfo.value)

    def test_json_array_instead_of_object(self, session, make_client):
        session.add("messages/m1", FakeResponse(200, ["not", "an", "object"]))
        client = make_client()

        with pytest.raises(GmailAPIError, match="JSON object"):
            client.get_message_summary("m1")

    def test_other_transport_failures_are_wrapped(self, session, make_client):
        session.add("messages/m1", requests.exceptions.ChunkedEncodingError("connection broken"))
        client = make_client()

        with pytest.raises(GmailAPIError, match="request failed"):
            client.get_message("m1")

    def test_malformed_attachment_only_drops_attachment(self, session, make_client):
        session.add("messages/m1", FakeResponse(200, full_message()))
        session.add("messages/m1/attachments/att-1", MalformedResponse())
        client = make_client()

        message = client.get_message("m1")

        assert message.body == "<p>html version</p>"
        assert message.attachments == []

    def test_malformed_parts_are_ignored(self, session, make_client):
        payload = full_message()
        payload["payload"]["parts"].append({"mimeType": "text/plain", "headers": ["junk"], "body": "junk"})
        session.add("messages/m1", FakeResponse(200, payload))
        session.add("messages/m1/attachments/att-1", FakeResponse(200, {"data": b64url(b"x")}))
        client = make_client()

        assert client.get_message("m1").body == "<p>html version</p>"


class TestRunDeadline:
    def test_request_timeout_clamped_to_remaining_budget(self, session):
        clock = FakeClock()
        client = GmailClient(FakeAuth(), session=session, run_timeout_seconds=10, clock=clock, sleep=lambda _: None)
        client.connect()
        session.add("messages", ids_page(["a"]))

        clock.now += 6
        client.list_message_ids("INBOX", 1)

        assert session.calls[-1]["timeout"] == pytest.approx(4.0)

    def test_spent_budget_raises(self, session):
        clock = FakeClock()
        client = GmailClient(FakeAuth(), session=session, run_timeout_seconds=10, clock=clock, sleep=lambda _: None)
        client.connect()
        session.add("messages/m1", FakeResponse(200, full_message()))

        clock.now += 11
        with pytest.raises(RunTimeoutError):
            client.get_message("m1")

        assert session.paths(fmt="full") == []

    def test_timeout_after_budget_is_not_retried(self, session):
        clock = FakeClock()
        client = GmailClient(FakeAuth(), session=session, run_timeout_seconds=10, clock=clock, sleep=lambda _: None)
        client.connect()

        class ExpiringSession(type(session)):
            def request(self, *args, **kwargs):
                clock.now += 20
                return super().request(*args, **kwargs)

        expiring = ExpiringSession({"messages/m1": [requests.Timeout("read timed out")]})
        client._session = expiring

        with pytest.raises(RunTimeoutError):
            client.get_message_summary("m1")

        assert len(expiring.calls) == 1
