"""
Classifier for server signals carried in free text and error codes.

The server does not send structured auth results or retry-after values.
Authentication outcomes and throttling are recognized by matching
vocabulary in inbound text and kick reasons, and abrupt resets by the
transport error code. Matching is case-insensitive and heuristic; the
vocabulary is data so it can be extended per server.
"""

from __future__ import annotations

import errno
from dataclasses import dataclass
from enum import Enum
from typing import Any

import orjson


class AuthSignal(str, Enum):
    """Authentication outcome recognized in inbound text."""

    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class SignalVocabulary:
    """
    Token sets used by the classifier. All tokens are lowercase.

    Attributes:
        success_tokens: Any of these plus a login token marks a successful login.
        failure_tokens: Any of these plus a login token marks a failed login.
        login_tokens: Tokens that tie a message to authentication.
        text_throttle_phrases: Inbound text phrases meaning "slow down".
        kick_throttle_tokens: Kick-reason tokens meaning "slow down".
        soft_error_codes: Transport error codes treated as soft throttling.
    """

    success_tokens: tuple[str, ...] = ("success",)
    failure_tokens: tuple[str, ...] = ("wrong password", "failed")
    login_tokens: tuple[str, ...] = ("log",)
    text_throttle_phrases: tuple[str, ...] = ("logging in too fast", "try again later")
    kick_throttle_tokens: tuple[str, ...] = ("too fast", "try again", "rate", "limit")
    soft_error_codes: tuple[str, ...] = ("ECONNRESET",)


def _contains_any(text: str, tokens: tuple[str, ...]) -> bool:
    return any(token in text for token in tokens)


class SignalClassifier:
    """
    Pattern-match server text and error codes into signals.

    Usage:
        classifier = SignalClassifier()
        classifier.classify_auth("Successfully logged in!")  # AuthSignal.SUCCESS
        classifier.is_throttle_kick("You are logging in too fast")  # True
    """

    def __init__(self, vocabulary: SignalVocabulary | None = None) -> None:
        self._vocab = vocabulary or SignalVocabulary()

    @property
    def vocabulary(self) -> SignalVocabulary:
        """Get the active vocabulary."""
        return self._vocab

    def classify_auth(self, text: str) -> AuthSignal | None:
        """
        Recognize a login success or failure marker.

        Success is checked first, so a message carrying both markers counts
        as success.

        Returns:
            AuthSignal, or None when the text is not about authentication.
        """
        msg = text.lower()
        if not _contains_any(msg, self._vocab.login_tokens):
            return None
        if _contains_any(msg, self._vocab.success_tokens):
            return AuthSignal.SUCCESS
        if _contains_any(msg, self._vocab.failure_tokens):
            return AuthSignal.FAILURE
        return None

    def is_throttle_text(self, text: str) -> bool:
        """Check inbound text for throttling phrases."""
        return _contains_any(text.lower(), self._vocab.text_throttle_phrases)

    def is_throttle_kick(self, reason: str) -> bool:
        """Check a kick/disconnect reason for throttling vocabulary."""
        return _contains_any(reason.lower(), self._vocab.kick_throttle_tokens)

    def is_soft_error(self, code: str | None) -> bool:
        """Check whether a transport error code signals an abrupt reset."""
        return code is not None and code.upper() in self._vocab.soft_error_codes


def error_code_for(exc: BaseException) -> str | None:
    """
    Map an exception to a symbolic error code such as "ECONNRESET".

    Walks ``__cause__``/``__context__`` so wrapped OS errors are found too.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ConnectionResetError):
            return "ECONNRESET"
        err_no = getattr(current, "errno", None)
        if isinstance(err_no, int) and err_no in errno.errorcode:
            return errno.errorcode[err_no]
        current = current.__cause__ or current.__context__
    return None


def normalize_reason(reason: Any) -> str:
    """
    Render a kick reason as a single string.

    Reasons may arrive as JSON chat components (string or already parsed)
    or as plain text. JSON is re-serialized compactly; anything unparsable
    is used as-is.
    """
    if isinstance(reason, (dict, list)):
        return orjson.dumps(reason).decode()
    if isinstance(reason, bytes):
        reason = reason.decode("utf-8", errors="replace")
    if not isinstance(reason, str):
        return str(reason)
    try:
        parsed = orjson.loads(reason)
    except orjson.JSONDecodeError:
        return reason
    if isinstance(parsed, (dict, list)):
        return orjson.dumps(parsed).decode()
    return str(parsed)
