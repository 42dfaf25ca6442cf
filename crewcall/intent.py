import re
from enum import StrEnum


class ReplyIntent(StrEnum):
    ACCEPT = "accept"
    DECLINE = "decline"
    UNKNOWN = "unknown"


_ACCEPT_WORDS = {
    "yes",
    "y",
    "ok",
    "okay",
    "accept",
    "accepted",
    "coming",
    "omw",
}
_DECLINE_WORDS = {
    "no",
    "n",
    "decline",
    "declined",
    "busy",
    "cant",
    "can't",
    "pass",
}
_ACCEPT_PHRASES = ("on my way", "on it")


def parse_reply_intent(text: str) -> ReplyIntent:
    """Classify a short reply sent from a watch."""
    cleaned = text.strip().lower()
    if not cleaned:
        return ReplyIntent.UNKNOWN
    if any(cleaned.startswith(phrase) for phrase in _ACCEPT_PHRASES):
        return ReplyIntent.ACCEPT
    first = re.split(r"[\s,.!]+", cleaned, maxsplit=1)[0]
    if first in _ACCEPT_WORDS:
        return ReplyIntent.ACCEPT
    if first in _DECLINE_WORDS:
        return ReplyIntent.DECLINE
    return ReplyIntent.UNKNOWN
