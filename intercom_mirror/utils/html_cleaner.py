"""
HTML to plain text for Intercom message bodies.

Intercom returns conversation bodies as HTML fragments. These helpers turn
them into readable plain text, keeping line and paragraph breaks.
"""

import html
import re

_BR = re.compile(r"<br\s*/?>", re.IGNORECASE)
_P_CLOSE = re.compile(r"</p>", re.IGNORECASE)
_BLOCK_CLOSE = re.compile(r"</(?:div|li)>", re.IGNORECASE)
_HR = re.compile(r"<hr\s*/?>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]*>")
_IMAGE_MARKER = re.compile(r"\[image\]", re.IGNORECASE)


def _tidy_lines(text: str) -> str:
    # Trim every line, keep at most one blank line between paragraphs
    text = "\n".join(line.strip() for line in text.split("\n"))
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def html_to_plain_text(body: str) -> str:
    """Convert an HTML fragment to plain text, preserving line breaks."""
    if not body:
        return ""

    text = _BR.sub("\n", body)
    text = _P_CLOSE.sub("\n\n", text)
    text = _BLOCK_CLOSE.sub("\n", text)
    text = _HR.sub("\n---\n", text)
    text = _TAG.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    return _tidy_lines(text)


def clean_conversation_message(body: str) -> str:
    """
    Plain text of an Intercom message body.

    Same as html_to_plain_text, plus image placeholders removed and runs of
    spaces collapsed.
    """
    if not body:
        return ""

    text = html_to_plain_text(body)
    text = _IMAGE_MARKER.sub("", text)
    text = re.sub(r"[ \t]+", " ", text)
    return _tidy_lines(text)


def is_valid_message(text: str) -> bool:
    """True if text has at least 2 characters and one letter or digit."""
    if not text or len(text.strip()) < 2:
        return False
    return re.search(r"[A-Za-z0-9]", text) is not None


def extract_message_summary(text: str, max_length: int = 100) -> str:
    """First sentence of a message, or the message truncated near a word boundary."""
    if not text:
        return ""

    cleaned = clean_conversation_message(text)
    first_sentence = re.split(r"[.!?]\s+", cleaned)[0]
    if first_sentence and len(first_sentence) <= max_length:
        return first_sentence

    if len(cleaned) <= max_length:
        return cleaned

    truncated = cleaned[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.7:
        return truncated[:last_space] + "..."
    return truncated + "..."
