import re
from typing import Optional, Tuple

from query_agent.core.observability import TraceManager
from query_agent.core.security_rules import (
    IMPERSONATION_MARKERS,
    PROHIBITED_CONTENT_PATTERNS,
    PROMPT_INJECTION_PATTERNS,
)
from query_agent.services.schema import ALLOWED_TABLES

MAX_MESSAGE_LENGTH = 2000

VALID_MODES = ALLOWED_TABLES + ("auto",)

_MODE_PREFIX_RE = re.compile(r"^\[mode:(\w+)\]\s*(.*)$", re.IGNORECASE | re.DOTALL)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HORIZONTAL_WS_RE = re.compile(r"[ \t]+")
_INJECTION_RES = [re.compile(p, re.IGNORECASE) for p in PROMPT_INJECTION_PATTERNS]
_PROHIBITED_RES = [re.compile(p, re.IGNORECASE) for p in PROHIBITED_CONTENT_PATTERNS]


class Guardrails:
    """
    Input and output guardrails for the chat endpoint.
    """

    @staticmethod
    def is_impersonation(text: str) -> bool:
        lowered = text.lower()
        return any(marker in lowered for marker in IMPERSONATION_MARKERS)

    @staticmethod
    def sanitize_user_input(text: str) -> str:
        """
        Strip control characters and known instruction-override phrases,
        then collapse runs of spaces. May return an empty string.
        """
        sanitized = _CONTROL_CHARS_RE.sub("", text)
        for pattern in _INJECTION_RES:
            if pattern.search(sanitized):
                TraceManager.info("Guardrail stripped injection pattern", pattern=pattern.pattern)
                sanitized = pattern.sub(" ", sanitized)
        sanitized = _HORIZONTAL_WS_RE.sub(" ", sanitized)
        return "\n".join(line.strip() for line in sanitized.strip().splitlines()).strip()

    @staticmethod
    def parse_mode_prefix(content: str) -> Tuple[Optional[str], str]:
        """
        `[mode:companies] list them` -> ("companies", "list them").
        Unknown modes leave the content untouched. `auto` is returned as-is,
        the caller decides what it means.
        """
        match = _MODE_PREFIX_RE.match(content)
        if not match:
            return None, content
        mode = match.group(1).lower()
        if mode not in VALID_MODES:
            return None, content
        cleaned = match.group(2).strip() or content
        return mode, cleaned

    @staticmethod
    def validate_user_message(content: str) -> Tuple[bool, Optional[str]]:
        """
        Client-side check before anything is sent.
        Returns: (is_valid, error_message)
        """
        trimmed = (content or "").strip()
        if not trimmed:
            return False, "Message cannot be empty"
        if len(trimmed) > MAX_MESSAGE_LENGTH:
            return False, f"Message exceeds maximum length of {MAX_MESSAGE_LENGTH} characters"
        if any(p.search(trimmed) for p in _PROHIBITED_RES):
            return False, "Message contains prohibited content for security reasons"
        return True, None

