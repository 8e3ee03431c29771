"""Ingestion pipeline components."""

from .fetcher import MailFetcher, ProviderFactory
from .parser import MessageDecoder, html_to_text, redact_card_numbers

__all__ = [
    "MailFetcher",
    "MessageDecoder",
    "ProviderFactory",
    "html_to_text",
    "redact_card_numbers",
]
