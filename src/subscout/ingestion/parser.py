"""Decode provider payloads into the message view used by the receipt parser."""

from __future__ import annotations

import base64
import re
from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC, datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parseaddr, parsedate_to_datetime
from html.parser import HTMLParser
from typing import Any

from ..core.datetime_utils import ensure_utc, utcnow
from ..core.models import RawMessage

# 13-19 digits, optionally grouped by spaces or dashes.
_CARD_NUMBER = re.compile(r"\b(?:\d[ -]?){12,18}\d\b")
_WHITESPACE_RUN = re.compile(r"[ \t\r\f\v\xa0]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")


class MessageDecoder:
    """Convert raw RFC822 bytes or Gmail JSON payloads into ``RawMessage``."""

    def __init__(self) -> None:
        """Prepare internal parser instance."""
        self._parser = BytesParser(policy=policy.default)

    def from_rfc822(
        self,
        message_id: str,
        payload: bytes,
        *,
        received_at: datetime | None = None,
    ) -> RawMessage:
        """Parse raw RFC822 bytes, as returned by IMAP ``FETCH``."""
        message = self._parser.parsebytes(payload)
        sender_name, sender = parseaddr(str(message.get("From") or ""))
        sent_at = _try_parse_datetime(message.get("Date"))
        plain, html = _extract_bodies(message)
        return RawMessage(
            message_id=message_id,
            sender=sender.lower(),
            sender_name=sender_name or None,
            subject=str(message.get("Subject") or "").strip(),
            received_at=received_at or sent_at or utcnow(),
            body=_compose_body(plain, html),
        )

    def from_gmail(self, payload: Mapping[str, Any]) -> RawMessage:
        """Convert a Gmail ``users.messages.get`` resource in ``full`` format."""
        part = payload.get("payload") or {}
        headers = {
            str(header.get("name", "")).lower(): str(header.get("value", ""))
            for header in part.get("headers", ())
        }
        sender_name, sender = parseaddr(headers.get("from", ""))
        received_at = _from_epoch_millis(payload.get("internalDate"))
        if received_at is None:
            received_at = _try_parse_datetime(headers.get("date")) or utcnow()

        plain_chunks: list[str] = []
        html_chunks: list[str] = []
        for mime_type, text in _walk_gmail_parts(part):
            if mime_type == "text/plain":
                plain_chunks.append(text)
            elif mime_type == "text/html":
                html_chunks.append(text)

        return RawMessage(
            message_id=str(payload["id"]),
            sender=sender.lower(),
            sender_name=sender_name or None,
            subject=headers.get("subject", "").strip(),
            received_at=received_at,
            body=_compose_body(
                _collapse_chunks(plain_chunks, "\n\n"),
                _collapse_chunks(html_chunks, "\n"),
            ),
        )


def redact_card_numbers(text: str) -> str:
    """Mask every digit of card-like numbers except the last four."""

    def _mask(match: re.Match[str]) -> str:
        digits = re.sub(r"\D", "", match.group(0))
        return "*" * (len(digits) - 4) + digits[-4:]

    return _CARD_NUMBER.sub(_mask, text)


def html_to_text(markup: str) -> str:
    """Return the visible text of an HTML document."""
    extractor = _TextExtractor()
    extractor.feed(markup)
    extractor.close()
    return _normalize_whitespace(extractor.text())


class _TextExtractor(HTMLParser):
    _SKIPPED = frozenset({"script", "style", "head", "title"})
    _BREAKS = frozenset({"br", "p", "div", "tr", "li", "table", "h1", "h2", "h3"})

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._chunks: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIPPED:
            self._skip_depth += 1
        elif tag in self._BREAKS:
            self._chunks.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIPPED and self._skip_depth:
            self._skip_depth -= 1
        elif tag in self._BREAKS:
            self._chunks.append("\n")

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._chunks.append(data)

    def text(self) -> str:
        return "".join(self._chunks)


def _normalize_whitespace(text: str) -> str:
    lines = (_WHITESPACE_RUN.sub(" ", line).strip() for line in text.splitlines())
    return _BLANK_LINES.sub("\n\n", "\n".join(lines)).strip()


def _compose_body(plain: str | None, html: str | None) -> str:
    if plain:
        body = plain
    elif html:
        body = html_to_text(html)
    else:
        body = ""
    return redact_card_numbers(body)


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except LookupError:
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    return _collapse_chunks(plain_chunks, "\n\n"), _collapse_chunks(html_chunks, "\n")


def _walk_gmail_parts(part: Mapping[str, Any]) -> Iterator[tuple[str, str]]:
    if part.get("filename"):
        return
    children = part.get("parts") or ()
    if children:
        for child in children:
            yield from _walk_gmail_parts(child)
        return
    data = (part.get("body") or {}).get("data")
    if not data:
        return
    yield str(part.get("mimeType", "")), _decode_base64url(data).strip()


def _decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode(
        "utf-8", errors="replace"
    )


def _from_epoch_millis(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


def _try_parse_datetime(header_value: Any) -> datetime | None:
    if not header_value:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(str(header_value)))
    except (TypeError, ValueError):
        return None


__all__ = ["MessageDecoder", "html_to_text", "redact_card_numbers"]
