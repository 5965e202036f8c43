"""
Gmail client used as the delivery vendor.

Talks to the Gmail REST API with the user's OAuth credentials: sends mail
(optionally as a reply in an existing thread), searches for replies and
reads new inbox messages for the auto-reply workflow. Access tokens are
exchanged from the stored refresh token when the caller does not hold a
live one.
"""

import base64
import logging
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import parseaddr
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings
from ..models import InboundMessage, MailCredentials, OutboundEmail, ensure_utc

logger = logging.getLogger(__name__)


class GmailError(Exception):
    """Error communicating with Google."""
    pass


def build_raw_message(email: OutboundEmail) -> str:
    """Render an outbound email as the base64url "raw" string Gmail expects."""
    message = EmailMessage()
    message["From"] = email.from_address
    message["To"] = email.to
    if email.cc:
        message["Cc"] = email.cc
    if email.bcc:
        # Gmail delivers to Bcc recipients and strips the header
        message["Bcc"] = email.bcc
    message["Subject"] = email.subject
    if email.in_reply_to:
        message["In-Reply-To"] = email.in_reply_to
        message["References"] = email.in_reply_to
    message.set_content(email.html, subtype="html", charset="utf-8")

    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


def _decode_part(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def extract_body(payload: Dict[str, Any]) -> str:
    """Pull the text body out of a Gmail message payload, preferring text/plain."""
    body_data = payload.get("body", {}).get("data")
    if body_data and not payload.get("parts"):
        return _decode_part(body_data)

    html_fallback = ""
    for part in payload.get("parts", []):
        mime_type = part.get("mimeType", "")
        data = part.get("body", {}).get("data")
        if mime_type == "text/plain" and data:
            return _decode_part(data)
        if mime_type == "text/html" and data and not html_fallback:
            html_fallback = _decode_part(data)
        # Recurse into nested parts
        if part.get("parts"):
            nested = extract_body(part)
            if nested:
                return nested
    return html_fallback


def parse_gmail_message(msg: Dict[str, Any]) -> InboundMessage:
    """Convert a Gmail API message (format=full) into an InboundMessage."""
    payload = msg.get("payload", {})
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}

    _, sender = parseaddr(headers.get("from", ""))
    received_at = None
    if msg.get("internalDate"):
        received_at = datetime.fromtimestamp(int(msg["internalDate"]) / 1000, tz=timezone.utc)

    return InboundMessage(
        message_id=msg.get("id", ""),
        thread_id=msg.get("threadId"),
        from_address=sender,
        to=headers.get("to", ""),
        subject=headers.get("subject", ""),
        body=extract_body(payload) or msg.get("snippet", ""),
        rfc_message_id=headers.get("message-id"),
        received_at=received_at,
    )


class GmailVendor:
    """
    Sends mail through the sender's own Gmail account.

    Every call is bounded by `timeout` so a hung request cannot hold a
    sweep open indefinitely.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        api_url: Optional[str] = None,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_url = (api_url or settings.gmail_api_url).rstrip("/")
        self.token_url = token_url or settings.google_token_url
        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.client = client or httpx.AsyncClient(
            timeout=timeout or settings.vendor_timeout_seconds
        )

    def _get_headers(self, access_token: str) -> Dict[str, str]:
        """Get request headers with authentication."""
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def refresh_access_token(self, refresh_token: str) -> str:
        """Exchange a refresh token for a short-lived access token."""
        if not self.client_id or not self.client_secret:
            raise GmailError("Google OAuth client is not configured")

        try:
            response = await self.client.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GmailError(f"Token refresh failed: {e.response.status_code} {e.response.text[:200]}")
        except httpx.RequestError as e:
            raise GmailError(f"Token refresh connection error: {e}")

        access_token = response.json().get("access_token")
        if not access_token:
            raise GmailError("Token response did not include an access token")
        return access_token

    async def _resolve_access_token(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str]
    ) -> str:
        if access_token:
            return access_token
        if refresh_token:
            return await self.refresh_access_token(refresh_token)
        raise GmailError("No access token or refresh token provided")

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        **kwargs: Any
    ) -> Dict[str, Any]:
        """Call the Gmail API and return the decoded JSON body."""
        try:
            response = await self.client.request(
                method,
                f"{self.api_url}{path}",
                headers=self._get_headers(access_token),
                **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GmailError(f"Gmail API {path} failed: {e.response.status_code} {e.response.text[:200]}")
        except httpx.RequestError as e:
            raise GmailError(f"Gmail API connection error: {e}")
        return response.json() if response.content else {}

    async def send_email(self, email: OutboundEmail) -> bool:
        """
        Send one message.

        Args:
            email: Fully composed message plus the sender's credentials

        Returns:
            True if Gmail accepted the message for delivery
        """
        try:
            access_token = await self._resolve_access_token(email.access_token, email.refresh_token)
            logger.info(f"Gmail: sending to {email.to} from {email.from_address}")
            body = {"raw": build_raw_message(email)}
            if email.thread_id:
                body["threadId"] = email.thread_id
            result = await self._request(
                "POST",
                "/users/me/messages/send",
                access_token,
                json=body,
            )
            logger.info(f"Gmail: message accepted (id: {result.get('id')}, thread: {result.get('threadId')})")
            return True
        except GmailError as e:
            logger.error(f"Gmail send failed: {e}")
            return False

    async def has_reply(
        self,
        to: str,
        subject: str,
        since: datetime,
        credentials: MailCredentials
    ) -> bool:
        """
        Check whether a recipient has answered a sent message.

        Looks for a message from the first recipient carrying the same
        subject, received after `since`.
        """
        sender = to.split(",")[0].strip()
        after = int(ensure_utc(since).timestamp())
        query = f'from:{sender} subject:"{subject.replace(chr(34), "")}" after:{after}'

        access_token = await self._resolve_access_token(
            credentials.access_token, credentials.refresh_token
        )
        result = await self._request(
            "GET",
            "/users/me/messages",
            access_token,
            params={"q": query, "maxResults": 1},
        )
        return bool(result.get("messages"))

    async def fetch_inbound(
        self,
        credentials: MailCredentials,
        since: datetime,
        limit: int = 25
    ) -> List[InboundMessage]:
        """
        Read inbox messages received after `since`, oldest first.

        Messages the user sent themselves are excluded. Errors propagate
        as GmailError for the caller to log.
        """
        access_token = await self._resolve_access_token(
            credentials.access_token, credentials.refresh_token
        )
        after = int(ensure_utc(since).timestamp())
        listing = await self._request(
            "GET",
            "/users/me/messages",
            access_token,
            params={"q": f"in:inbox -from:me after:{after}", "maxResults": limit},
        )

        messages = []
        for ref in listing.get("messages") or []:
            data = await self._request(
                "GET",
                f"/users/me/messages/{ref['id']}",
                access_token,
                params={"format": "full"},
            )
            messages.append(parse_gmail_message(data))

        # Gmail lists newest first
        messages.reverse()
        logger.info(f"Gmail: {len(messages)} inbound message(s) since {ensure_utc(since).isoformat()}")
        return messages

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()
