"""Tests for the Gmail delivery vendor."""

import base64
import json
from email import message_from_bytes
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from lazydraft.integrations.gmail import (
    GmailError, GmailVendor, build_raw_message, extract_body, parse_gmail_message,
)
from lazydraft.models import MailCredentials, OutboundEmail

API_URL = "https://gmail.test/gmail/v1"
TOKEN_URL = "https://oauth.test/token"


def make_vendor(handler) -> GmailVendor:
    """Vendor wired to an in-process transport."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GmailVendor(
        client=client,
        api_url=API_URL,
        token_url=TOKEN_URL,
        client_id="client-id",
        client_secret="client-secret",
    )


def decode_raw(raw: str):
    padded = raw + "=" * (-len(raw) % 4)
    return message_from_bytes(base64.urlsafe_b64decode(padded))


@pytest.fixture
def outbound() -> OutboundEmail:
    """A message with cc and bcc."""
    return OutboundEmail(
        from_address="me@example.com",
        to="you@example.com",
        cc="cc@example.com",
        bcc="bcc@example.com",
        subject="Status",
        html="<p>All good</p>",
        access_token="live-token",
    )


class TestBuildRawMessage:
    """Test suite for build_raw_message."""

    def test_headers_and_html_body(self, outbound):
        """The raw message carries all headers and an HTML body."""
        raw = build_raw_message(outbound)
        message = decode_raw(raw)

        assert "=" not in raw
        assert message["From"] == "me@example.com"
        assert message["To"] == "you@example.com"
        assert message["Cc"] == "cc@example.com"
        assert message["Bcc"] == "bcc@example.com"
        assert message["Subject"] == "Status"
        assert message.get_content_type() == "text/html"
        assert "<p>All good</p>" in message.get_payload(decode=True).decode("utf-8")

    def test_optional_headers_omitted(self, outbound):
        """No Cc/Bcc headers when unset."""
        outbound.cc = None
        outbound.bcc = None
        message = decode_raw(build_raw_message(outbound))

        assert message["Cc"] is None
        assert message["Bcc"] is None
        assert message["In-Reply-To"] is None

    def test_reply_threading_headers(self, outbound):
        """A reply references the message it answers."""
        outbound.in_reply_to = "<orig@mail.example.com>"
        message = decode_raw(build_raw_message(outbound))

        assert message["In-Reply-To"] == "<orig@mail.example.com>"
        assert message["References"] == "<orig@mail.example.com>"


class TestSendEmail:
    """Test suite for GmailVendor.send_email."""

    @pytest.mark.asyncio
    async def test_send_with_access_token(self, outbound):
        """A live access token is used directly."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "msg-1", "threadId": "t-1"})

        vendor = make_vendor(handler)
        assert await vendor.send_email(outbound) is True
        await vendor.aclose()

        assert len(requests) == 1
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == f"{API_URL}/users/me/messages/send"
        assert request.headers["Authorization"] == "Bearer live-token"
        body = json.loads(request.content)
        assert decode_raw(body["raw"])["To"] == "you@example.com"
        assert "threadId" not in body

    @pytest.mark.asyncio
    async def test_reply_sent_into_thread(self, outbound):
        """A thread id on the outbound message is passed to Gmail."""
        outbound.thread_id = "t-9"
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "msg-3", "threadId": "t-9"})

        vendor = make_vendor(handler)
        assert await vendor.send_email(outbound) is True
        assert bodies[0]["threadId"] == "t-9"

    @pytest.mark.asyncio
    async def test_refresh_token_exchanged_first(self, outbound):
        """Without an access token the refresh token is exchanged."""
        outbound.access_token = None
        outbound.refresh_token = "refresh-1"
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            if str(request.url) == TOKEN_URL:
                form = parse_qs(request.content.decode())
                assert form["grant_type"] == ["refresh_token"]
                assert form["refresh_token"] == ["refresh-1"]
                return httpx.Response(200, json={"access_token": "fresh-token"})
            assert request.headers["Authorization"] == "Bearer fresh-token"
            return httpx.Response(200, json={"id": "msg-2"})

        vendor = make_vendor(handler)
        assert await vendor.send_email(outbound) is True
        assert seen == [TOKEN_URL, f"{API_URL}/users/me/messages/send"]

    @pytest.mark.asyncio
    async def test_api_error_returns_false(self, outbound):
        """A Gmail error response is reported as False, not raised."""
        vendor = make_vendor(lambda request: httpx.Response(403, json={"error": "forbidden"}))
        assert await vendor.send_email(outbound) is False

    @pytest.mark.asyncio
    async def test_token_refresh_failure_returns_false(self, outbound):
        """A revoked refresh token is reported as False."""
        outbound.access_token = None
        outbound.refresh_token = "revoked"
        vendor = make_vendor(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        assert await vendor.send_email(outbound) is False

    @pytest.mark.asyncio
    async def test_network_error_returns_false(self, outbound):
        """Connection failures are reported as False."""
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        vendor = make_vendor(handler)
        assert await vendor.send_email(outbound) is False

    @pytest.mark.asyncio
    async def test_no_credentials_returns_false(self, outbound):
        """Nothing to authenticate with means no send."""
        outbound.access_token = None
        vendor = make_vendor(lambda request: httpx.Response(200, json={}))
        assert await vendor.send_email(outbound) is False

    @pytest.mark.asyncio
    async def test_unconfigured_oauth_client(self):
        """Refreshing without client credentials raises GmailError."""
        vendor = GmailVendor(
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))),
        )
        vendor.client_id = None
        vendor.client_secret = None
        with pytest.raises(GmailError):
            await vendor.refresh_access_token("refresh")


class TestHasReply:
    """Test suite for GmailVendor.has_reply."""

    @pytest.mark.asyncio
    async def test_query_shape_and_result(self):
        """The search query targets the first recipient, subject and send time."""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = request.url
            return httpx.Response(200, json={"messages": [{"id": "r-1"}]})

        vendor = make_vendor(handler)
        since = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        result = await vendor.has_reply(
            "a@example.com, b@example.com", 'The "Q1" plan', since,
            MailCredentials(access_token="tok"),
        )

        assert result is True
        assert captured["url"].path == "/gmail/v1/users/me/messages"
        query = captured["url"].params["q"]
        assert query == f'from:a@example.com subject:"The Q1 plan" after:{int(since.timestamp())}'
        assert captured["url"].params["maxResults"] == "1"

    @pytest.mark.asyncio
    async def test_no_messages(self):
        """An empty search means no reply."""
        vendor = make_vendor(lambda request: httpx.Response(200, json={"resultSizeEstimate": 0}))
        result = await vendor.has_reply(
            "a@example.com", "Hi", datetime.now(timezone.utc), MailCredentials(access_token="tok")
        )
        assert result is False

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        """Search errors are raised for the caller to log."""
        vendor = make_vendor(lambda request: httpx.Response(500, text="oops"))
        with pytest.raises(GmailError):
            await vendor.has_reply(
                "a@example.com", "Hi", datetime.now(timezone.utc), MailCredentials(access_token="tok")
            )


def encode(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def gmail_message(message_id: str = "m-1", internal_ms: int = 1767603600000, **payload) -> dict:
    """A Gmail API message as returned with format=full."""
    return {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "internalDate": str(internal_ms),
        "snippet": "Can we meet...",
        "payload": {
            "headers": [
                {"name": "From", "value": "Client Person <client@example.com>"},
                {"name": "To", "value": "me@example.com"},
                {"name": "Subject", "value": "Meeting"},
                {"name": "Message-ID", "value": f"<{message_id}@mail.example.com>"},
            ],
            **payload,
        },
    }


class TestParseGmailMessage:
    """Test suite for parse_gmail_message and extract_body."""

    def test_headers_and_plain_body(self):
        """Sender address, ids and the text/plain part are extracted."""
        msg = gmail_message(
            mimeType="multipart/alternative",
            parts=[
                {"mimeType": "text/html", "body": {"data": encode("<p>Can we meet?</p>")}},
                {"mimeType": "text/plain", "body": {"data": encode("Can we meet?")}},
            ],
        )

        inbound = parse_gmail_message(msg)

        assert inbound.message_id == "m-1"
        assert inbound.thread_id == "t-m-1"
        assert inbound.from_address == "client@example.com"
        assert inbound.to == "me@example.com"
        assert inbound.subject == "Meeting"
        assert inbound.rfc_message_id == "<m-1@mail.example.com>"
        assert inbound.body == "Can we meet?"
        assert inbound.received_at == datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def test_nested_parts_and_html_fallback(self):
        """Nested multiparts are searched; HTML is used when there is no plain text."""
        nested = {
            "mimeType": "multipart/mixed",
            "parts": [{
                "mimeType": "multipart/alternative",
                "parts": [{"mimeType": "text/plain", "body": {"data": encode("inner text")}}],
            }],
        }
        html_only = {"parts": [{"mimeType": "text/html", "body": {"data": encode("<b>hi</b>")}}]}

        assert extract_body(nested) == "inner text"
        assert extract_body(html_only) == "<b>hi</b>"

    def test_snippet_when_no_body(self):
        """A message without a readable body falls back to the snippet."""
        inbound = parse_gmail_message(gmail_message(body={"size": 0}))
        assert inbound.body == "Can we meet..."


class TestFetchInbound:
    """Test suite for GmailVendor.fetch_inbound."""

    @pytest.mark.asyncio
    async def test_lists_then_reads_each_message_oldest_first(self):
        """The inbox query excludes own mail and results come back oldest first."""
        urls = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(request.url)
            if request.url.path.endswith("/messages"):
                return httpx.Response(200, json={"messages": [{"id": "newer"}, {"id": "older"}]})
            message_id = request.url.path.rsplit("/", 1)[-1]
            body = {"body": {"data": encode(f"body of {message_id}")}}
            return httpx.Response(200, json=gmail_message(message_id, **body))

        vendor = make_vendor(handler)
        since = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        messages = await vendor.fetch_inbound(MailCredentials(access_token="tok"), since, limit=5)

        assert [m.message_id for m in messages] == ["older", "newer"]
        assert messages[0].body == "body of older"
        assert urls[0].params["q"] == f"in:inbox -from:me after:{int(since.timestamp())}"
        assert urls[0].params["maxResults"] == "5"
        assert urls[1].params["format"] == "full"

    @pytest.mark.asyncio
    async def test_empty_inbox(self):
        """No matches means no message reads."""
        vendor = make_vendor(lambda request: httpx.Response(200, json={"resultSizeEstimate": 0}))
        messages = await vendor.fetch_inbound(
            MailCredentials(access_token="tok"), datetime.now(timezone.utc)
        )
        assert messages == []

    @pytest.mark.asyncio
    async def test_errors_propagate(self):
        """A failed read is raised for the caller to log."""
        vendor = make_vendor(lambda request: httpx.Response(401, text="expired"))
        with pytest.raises(GmailError):
            await vendor.fetch_inbound(MailCredentials(access_token="tok"), datetime.now(timezone.utc))
