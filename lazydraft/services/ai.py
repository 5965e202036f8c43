"""
AI drafting service.

Turns free text into a structured HTML email, suggests subject lines,
drafts auto-replies and classifies inbound mail. Uses Claude for all of it.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import anthropic

from ..config import settings
from ..models import ParsedEmail
from .errors import AIServiceError, ValidationError

logger = logging.getLogger(__name__)

WORD_COUNT_MAP = {"short": 100, "medium": 200, "detailed": 400}

DRAFTING_SYSTEM_PROMPT = """You are a world-class professional email writer.

Guidelines:
- Be polite, clear and concise
- Never invent facts, dates or commitments the user did not give you
- Follow the requested tone and language exactly
- Output only what is asked for, with no commentary
"""

PARSE_PROMPT = """Today's date is {today}.
Parse the unstructured text below and convert it into a polite, professional HTML email.
Write in a {tone} tone. Write the email in {language}.
Keep the email body to approximately {word_count} words.

Return ONLY a valid JSON object with these exact 4 fields: "from", "to", "subject", "body".

Rules for the "body" HTML:
1. Start with <p>Dear [Recipient Name if known, otherwise "Sir/Madam"],</p>
2. Use exactly 3 body paragraphs in <p> tags: purpose, details, closing action.
   Convert relative dates ("next Tuesday", "in 3 days") to real calendar dates based on today
   and wrap dates, deadlines, names and quantities in <strong>.
3. Close with:
   <p>Thank you for your time and consideration.</p>
   <p>Yours sincerely,<br/>{sender_name}</p>
4. Only use <p>, <strong>, <br/>, <ul>, <li>. No <html>, <body>, markdown or code fences.

Text to parse:
\"\"\"
{text}
\"\"\"
"""

CLASSIFY_CATEGORIES = ["question", "request", "meeting", "fyi", "newsletter", "spam", "other"]


def sender_name_from_email(from_email: Optional[str]) -> str:
    """Derive a display name from an address, e.g. jane.doe@x.com -> Jane Doe."""
    if not from_email:
        return "Your Name"
    local_part = from_email.split("@")[0]
    words = [w for w in re.split(r"[._-]", local_part) if w]
    if not words:
        return "Your Name"
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def extract_json(text: str) -> Any:
    """Parse JSON from a model response, tolerating markdown fences."""
    if "```json" in text:
        start = text.find("```json") + 7
        end = text.find("```", start)
        text = text[start:end].strip()
    elif "```" in text:
        start = text.find("```") + 3
        end = text.find("```", start)
        text = text[start:end].strip()
    return json.loads(text)


class AIService:
    """
    Claude-backed drafting helpers.

    The service owns no state beyond the API client.
    """

    def __init__(
        self,
        client: Optional[anthropic.AsyncAnthropic] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ):
        self.client = client or anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.model = model or settings.agent_model
        self.max_tokens = max_tokens or settings.max_tokens

    async def call_claude(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.7
    ) -> str:
        """
        Send a single-turn prompt and return the text of the response.

        Args:
            prompt: User message
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature

        Returns:
            Claude's response text
        """
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens or self.max_tokens,
                system=DRAFTING_SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
            )
        except anthropic.APIError as e:
            logger.error(f"Claude API error: {e}")
            raise AIServiceError(f"AI provider error: {e}") from e

        text_content = ""
        for block in response.content:
            if hasattr(block, "text"):
                text_content += block.text
        return text_content

    async def call_claude_json(self, prompt: str, temperature: float = 0.2) -> Any:
        """Call Claude expecting a JSON response."""
        response_text = await self.call_claude(prompt, temperature=temperature)
        try:
            return extract_json(response_text)
        except (json.JSONDecodeError, ValueError) as e:
            logger.error(f"Failed to parse Claude response as JSON: {e}")
            logger.error(f"Response was: {response_text[:500]}")
            raise AIServiceError("AI returned an invalid response") from e

    async def parse_text_to_email(
        self,
        text: str,
        from_email: Optional[str] = None,
        tone: Optional[str] = None,
        language: Optional[str] = None,
        length: Optional[str] = None,
    ) -> ParsedEmail:
        """
        Convert rough notes into a structured HTML email.

        Args:
            text: Free text describing what to write
            from_email: Sender address, used for the signature
            tone: e.g. Formal, Casual, Friendly (default Formal)
            language: Output language (default English)
            length: short, medium or detailed (default medium)

        Returns:
            ParsedEmail with from, to, subject and HTML body
        """
        if not text or not text.strip():
            raise ValidationError("Text content is required for AI parsing")

        logger.info(f"Parsing text to email: {text[:50]}...")
        prompt = PARSE_PROMPT.format(
            today=datetime.now().strftime("%A, %d %B %Y"),
            tone=tone or "Formal",
            language=language or "English",
            word_count=WORD_COUNT_MAP.get((length or "medium").lower(), 200),
            sender_name=sender_name_from_email(from_email),
            text=text,
        )
        data = await self.call_claude_json(prompt)
        if not isinstance(data, dict):
            raise AIServiceError("AI returned an invalid response")

        return ParsedEmail(
            from_address=data.get("from") or from_email or "",
            to=data.get("to") or "",
            subject=data.get("subject") or "",
            body=data.get("body") or "",
        )

    async def suggest_subjects(self, body: str) -> List[str]:
        """Suggest up to three subject lines. Returns [] on any failure."""
        if not body or not body.strip():
            return []

        prompt = (
            "Generate 3 alternative professional email subject lines for this email body. "
            'Return ONLY a valid JSON object with a single key "subjects" containing an array '
            "of 3 strings. No explanations.\n\n"
            f'Email body:\n"""\n{body[:1000]}\n"""'
        )
        try:
            data = await self.call_claude_json(prompt, temperature=0.5)
        except AIServiceError as e:
            logger.warning(f"Subject suggestion failed: {e}")
            return []

        subjects = data.get("subjects") if isinstance(data, dict) else None
        if not isinstance(subjects, list):
            return []
        return [str(s).strip() for s in subjects if str(s).strip()][:3]

    async def draft_reply(
        self,
        inbound_subject: str,
        inbound_body: str,
        tone: Optional[str] = None,
        signature: Optional[str] = None,
    ) -> str:
        """Draft an HTML reply to an inbound email."""
        if not inbound_body or not inbound_body.strip():
            raise ValidationError("Inbound email body is required to draft a reply")

        prompt = f"""Generate a reply to this email:

Subject: {inbound_subject}

{inbound_body}

---

Instructions:
- Write in a {tone or "Professional"} tone
- Start with an appropriate greeting
- Do NOT make specific commitments about dates, times, or amounts
- If you need more information, say you'll follow up
- Use only <p>, <strong>, <br/> HTML tags
{f"- End with this signature: {signature}" if signature else "- End with an appropriate sign-off"}

Only output the email reply body, nothing else."""

        draft = await self.call_claude(prompt, max_tokens=1000, temperature=0.7)
        return draft.strip()

    async def classify_inbound(self, subject: str, body: str) -> Dict[str, Any]:
        """
        Decide whether an inbound email deserves an automatic reply.

        Returns:
            Dict with needs_reply (bool), category and a short reason
        """
        prompt = f"""Classify this inbound email.

Subject: {subject}

{body[:2000]}

Return ONLY a JSON object with keys:
- "needs_reply": true if the sender expects a personal response
- "category": one of {", ".join(CLASSIFY_CATEGORIES)}
- "reason": one short sentence"""

        data = await self.call_claude_json(prompt, temperature=0.2)
        if not isinstance(data, dict):
            raise AIServiceError("AI returned an invalid classification")

        category = str(data.get("category") or "other").lower()
        if category not in CLASSIFY_CATEGORIES:
            category = "other"
        return {
            "needs_reply": bool(data.get("needs_reply")),
            "category": category,
            "reason": str(data.get("reason") or ""),
        }
