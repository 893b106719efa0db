"""Text shaping around the model call: reply context, response cleanup, apologies."""
import logging
import random
import re
from typing import Optional

from config import PERSONA_NAME
from models.message import QuotedMessage

logger = logging.getLogger(__name__)

APOLOGY_MESSAGES = [
    "Aney sorry, mata mokak weda una! Try again please.",
    "Ehh, error wela! Mata brain freeze wela thiyenawa.",
    "Oops! Mata thoda issue ekak. Try again karanna?",
    "Sorry sorry, mata system eka hang wela. Eka try karanna!",
    "Mata thoda slow wela, sorry! Try again please?",
]

EMPTY_RESPONSE_FALLBACK = "Sorry, mata response eka generate karanna bari una. Try again please!"
CONFUSED_RESPONSE_FALLBACK = "Hmm, mata mokak reply karanna ona kiyala confuse una. Try again?"

# Artifacts the model sometimes leaks into replies
_ARTIFACT_PATTERNS = [
    re.compile(r"```json[\s\S]*?```"),
    re.compile(r"\{[\s\S]*?\}"),
    re.compile(r"MEMORY ANALYSIS[\s\S]*$", re.IGNORECASE),
    re.compile(r"TOOL ANALYSIS[\s\S]*$", re.IGNORECASE),
    re.compile(r"\[SYSTEM\][\s\S]*?\[/SYSTEM\]", re.IGNORECASE),
    re.compile(r"DEBUG:[\s\S]*$", re.IGNORECASE),
]


class ContentAssembler:
    """Builds the user text sent to the model and tidies the model's reply."""

    def __init__(self, persona_name: str = PERSONA_NAME):
        self.persona_name = persona_name

    def assemble(self, raw_text: str, quoted_message: Optional[QuotedMessage] = None) -> str:
        """
        Combine the user's text with the message they replied to.

        Args:
            raw_text: Text as typed by the user
            quoted_message: Message being replied to, if any

        Returns:
            Text for the user turn
        """
        if quoted_message is None or not quoted_message.text:
            return raw_text
        return f"{self.format_reply_context(quoted_message)}\n\nUser's reply: {raw_text}"

    def format_reply_context(self, quoted_message: QuotedMessage) -> str:
        author = self.persona_name if quoted_message.is_from_bot else "User"
        return f'[REPLYING TO {author.upper()}: "{quoted_message.text}"]'

    @staticmethod
    def clean_response(response: Optional[str]) -> str:
        """Strip JSON blocks, debug sections and system tags from a reply."""
        if not response:
            return EMPTY_RESPONSE_FALLBACK

        cleaned = response
        for pattern in _ARTIFACT_PATTERNS:
            cleaned = pattern.sub("", cleaned)
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned.strip())

        if len(cleaned) < 3:
            logger.debug("Reply was empty after cleanup, using fallback")
            return CONFUSED_RESPONSE_FALLBACK
        return cleaned

    @staticmethod
    def random_apology() -> str:
        return random.choice(APOLOGY_MESSAGES)
