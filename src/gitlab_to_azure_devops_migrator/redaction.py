"""Secret redaction for log lines, error messages and git output."""

from __future__ import annotations

import logging
import re
import threading
from typing import Final, override

MASK: Final[str] = "***TOKEN***"  # noqa: S105

# Renders tracebacks so they can be masked before any handler formats them
_TRACEBACK_FORMATTER: Final[logging.Formatter] = logging.Formatter()

# Token-like substrings that are masked even when the secret itself was never registered
_TOKEN_PATTERNS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (re.compile(r"(?i)(authorization[\"']?\s*[:=]\s*[\"']?(?:basic|bearer)\s+)[A-Za-z0-9+/=._~-]+"), rf"\g<1>{MASK}"),
    (re.compile(r"(?i)(private-token[\"']?\s*[:=]\s*[\"']?)[A-Za-z0-9._~-]+"), rf"\g<1>{MASK}"),
    (re.compile(r"(https?://)[^/@\s:]*:?[^/@\s]*@"), rf"\g<1>{MASK}@"),
    (re.compile(r"glpat-[A-Za-z0-9_-]{20,}"), MASK),
)


class SecretRedactor:
    """Replaces registered secrets and token-like substrings with a fixed-width mask."""

    def __init__(self) -> None:
        self._secrets: set[str] = set()
        self._lock = threading.Lock()

    def register(self, secret: str | None) -> None:
        if secret:
            with self._lock:
                self._secrets.add(secret)

    def forget_all(self) -> None:
        with self._lock:
            self._secrets.clear()

    def redact(self, text: str) -> str:
        """Return text with every known secret and token-like substring masked."""
        if not text:
            return text
        with self._lock:
            # Longest first so a secret containing another one is masked whole
            secrets = sorted(self._secrets, key=len, reverse=True)
        result = text
        for secret in secrets:
            result = result.replace(secret, MASK)
        for pattern, replacement in _TOKEN_PATTERNS:
            result = pattern.sub(replacement, result)
        return result


class RedactingFilter(logging.Filter):
    """Logging filter that masks secrets in the formatted message, traceback and stack."""

    def __init__(self, redactor: SecretRedactor) -> None:
        super().__init__()
        self.redactor = redactor

    @override
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redactor.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        if record.exc_info:
            # Formatter.format reuses exc_text and skips formatting when exc_info is unset
            record.exc_text = record.exc_text or _TRACEBACK_FORMATTER.formatException(record.exc_info)
            record.exc_info = None
        if record.exc_text:
            record.exc_text = self.redactor.redact(record.exc_text)
        if record.stack_info:
            record.stack_info = self.redactor.redact(record.stack_info)
        return True
