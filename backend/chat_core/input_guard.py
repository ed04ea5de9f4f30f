from __future__ import annotations

import logging
import re
from typing import Any

from .errors import ValidationError

logger = logging.getLogger(__name__)


class InputGuard:
    _SESSION_ID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
    _SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
    _TAG_RE = re.compile(r"<[^>]+>")
    # ASCII control characters only; Unicode text passes through untouched.
    _CONTROL_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
    _REPEATED_CHARS_RE = re.compile(r"(.)\1{10,}")

    def __init__(self, *, min_message_length: int = 1, max_message_length: int = 2000) -> None:
        self.min_message_length = min_message_length
        self.max_message_length = max_message_length

    def ensure_session_token(self, session_token: Any) -> str:
        if not session_token or not isinstance(session_token, str):
            raise ValidationError("Session ID is required", code="SESSION_REQUIRED")
        candidate = session_token.strip()
        if not self._SESSION_ID_RE.fullmatch(candidate):
            raise ValidationError("Invalid session ID format", code="INVALID_SESSION_ID")
        return candidate

    def clean_message(self, message: Any) -> str:
        if message is None or message == "":
            raise ValidationError("Message content is required", code="MESSAGE_REQUIRED")
        if not isinstance(message, str):
            raise ValidationError("Message must be a string", code="INVALID_MESSAGE_TYPE")

        trimmed = message.strip()
        if len(trimmed) < self.min_message_length:
            raise ValidationError("Message is too short", code="MESSAGE_TOO_SHORT")
        if len(trimmed) > self.max_message_length:
            raise ValidationError(
                f"Message exceeds maximum length of {self.max_message_length} characters",
                code="MESSAGE_TOO_LONG",
            )

        cleaned = self._SCRIPT_RE.sub("", trimmed)
        cleaned = self._TAG_RE.sub("", cleaned)
        cleaned = self._CONTROL_RE.sub("", cleaned)
        cleaned = re.sub(r"\s+", " ", cleaned).strip()
        if len(cleaned) < self.min_message_length:
            raise ValidationError("Message is too short", code="MESSAGE_TOO_SHORT")

        self._check_spam(cleaned)
        return cleaned

    def _check_spam(self, message: str) -> None:
        if self._REPEATED_CHARS_RE.search(message):
            logger.warning("spam detected: repeated characters preview=%r", message[:100])
            raise ValidationError("Message appears to be spam", code="SPAM_DETECTED")

        caps_ratio = sum(1 for char in message if "A" <= char <= "Z") / len(message)
        if caps_ratio > 0.7 and len(message) > 20:
            logger.warning("excessive caps in message caps_ratio=%.2f preview=%r", caps_ratio, message[:100])
