"""Tests for AIService."""

import json
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from lazydraft.services import AIServiceError, ValidationError
from lazydraft.services.ai import AIService, extract_json, sender_name_from_email


def _response(text: str) -> MagicMock:
    """Create a mock Messages API response."""
    block = MagicMock()
    block.text = text
    response = MagicMock()
    response.content = [block]
    return response


@pytest.fixture
def client() -> MagicMock:
    """Mock AsyncAnthropic client."""
    mock = MagicMock()
    mock.messages.create = AsyncMock()
    return mock


@pytest.fixture
def ai(client) -> AIService:
    """AIService over the mock client."""
    return AIService(client=client, model="test-model", max_tokens=512)


class TestParseTextToEmail:
    """Test suite for parse_text_to_email."""

    @pytest.mark.asyncio
    async def test_parses_fenced_json(self, ai, client):
        """JSON inside a markdown fence is accepted."""
        payload = {"from": "", "to": "bob@example.com", "subject": "Leave request", "body": "<p>Dear Bob,</p>"}
        client.messages.create.return_value = _response(f"```json\n{json.dumps(payload)}\n```")

        parsed = await ai.parse_text_to_email(
            "ask bob for leave next monday", from_email="jane.doe@example.com", tone="Friendly", length="short"
        )

        assert parsed.to == "bob@example.com"
        assert parsed.subject == "Leave request"
        assert parsed.from_address == "jane.doe@example.com"

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        prompt = kwargs["messages"][0]["content"]
        assert "Friendly tone" in prompt
        assert "approximately 100 words" in prompt
        assert "Jane Doe" in prompt

    @pytest.mark.asyncio
    async def test_defaults(self, ai, client):
        """Tone, language and length fall back to Formal, English, medium."""
        client.messages.create.return_value = _response('{"from": "", "to": "", "subject": "", "body": ""}')

        await ai.parse_text_to_email("hello")

        prompt = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "Formal tone" in prompt
        assert "in English" in prompt
        assert "approximately 200 words" in prompt
        assert "Your Name" in prompt

    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, ai, client):
        """Empty input never reaches the model."""
        with pytest.raises(ValidationError):
            await ai.parse_text_to_email("   ")
        client.messages.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self, ai, client):
        """Unparseable output is an AIServiceError."""
        client.messages.create.return_value = _response("Sure! Here is your email.")
        with pytest.raises(AIServiceError):
            await ai.parse_text_to_email("hello")

    @pytest.mark.asyncio
    async def test_provider_error_wrapped(self, ai, client):
        """SDK errors become AIServiceError."""
        client.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        )
        with pytest.raises(AIServiceError):
            await ai.parse_text_to_email("hello")


class TestSuggestSubjects:
    """Test suite for suggest_subjects."""

    @pytest.mark.asyncio
    async def test_returns_at_most_three(self, ai, client):
        """Extra suggestions are dropped."""
        client.messages.create.return_value = _response('{"subjects": ["A", "B", "C", "D"]}')
        assert await ai.suggest_subjects("body") == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_failure_returns_empty(self, ai, client):
        """Bad output degrades to no suggestions."""
        client.messages.create.return_value = _response("not json")
        assert await ai.suggest_subjects("body") == []

    @pytest.mark.asyncio
    async def test_empty_body(self, ai, client):
        """No body, no call."""
        assert await ai.suggest_subjects("") == []
        client.messages.create.assert_not_awaited()


class TestReplyAndClassify:
    """Test suite for draft_reply and classify_inbound."""

    @pytest.mark.asyncio
    async def test_draft_reply(self, ai, client):
        """The reply text is returned stripped, with the signature requested."""
        client.messages.create.return_value = _response("  <p>Thanks!</p>\n")

        draft = await ai.draft_reply("Meeting", "Can we meet?", tone="Casual", signature="Jane")

        assert draft == "<p>Thanks!</p>"
        prompt = client.messages.create.call_args.kwargs["messages"][0]["content"]
        assert "Casual tone" in prompt
        assert "signature: Jane" in prompt

    @pytest.mark.asyncio
    async def test_classify_normalizes_category(self, ai, client):
        """Unknown categories collapse to other."""
        client.messages.create.return_value = _response(
            '{"needs_reply": true, "category": "Invoice", "reason": "asks for payment"}'
        )

        result = await ai.classify_inbound("Invoice", "Please pay")

        assert result == {"needs_reply": True, "category": "other", "reason": "asks for payment"}


class TestHelpers:
    """Test suite for module helpers."""

    @pytest.mark.parametrize("address,expected", [
        ("jane.doe@example.com", "Jane Doe"),
        ("j_smith-jr@example.com", "J Smith Jr"),
        (None, "Your Name"),
        ("", "Your Name"),
    ])
    def test_sender_name(self, address, expected):
        """Display names are derived from the local part."""
        assert sender_name_from_email(address) == expected

    def test_extract_json_plain_and_fenced(self):
        """Plain and fenced JSON both parse."""
        assert extract_json('{"a": 1}') == {"a": 1}
        assert extract_json('```\n{"a": 2}\n```') == {"a": 2}
