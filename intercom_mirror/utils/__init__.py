"""Utility modules for the Intercom mirror."""

from .html_cleaner import (
    clean_conversation_message,
    extract_message_summary,
    html_to_plain_text,
    is_valid_message,
)

__all__ = [
    "clean_conversation_message",
    "extract_message_summary",
    "html_to_plain_text",
    "is_valid_message",
]
