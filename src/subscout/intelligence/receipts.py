"""Heuristic extraction of subscription details from billing receipts."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime

from ..core.datetime_utils import add_period
from ..core.interfaces import ReceiptParserService
from ..core.models import BillingCycle, ParsedReceipt, RawMessage, ReceiptType
from .merchants import (
    GENERIC_DOMAINS,
    KnownMerchant,
    MerchantDirectory,
    StaticMerchantDirectory,
)

LOGGER = logging.getLogger(__name__)

MAX_AMOUNT = 10_000.0

SENDER_WEIGHT = 0.4
KEYWORD_WEIGHT = 0.2
AMOUNT_WEIGHT = 0.2
CADENCE_WEIGHT = 0.2

# Checked against the subject only: footers routinely mention marketing emails.
_SUBJECT_EXCLUSIONS = (
    re.compile(r"\bnewsletter\b", re.IGNORECASE),
    re.compile(r"\bmarketing\b", re.IGNORECASE),
    re.compile(r"\bpromotion(?:al)?\b", re.IGNORECASE),
)
_EXCLUSIONS = (
    re.compile(
        r"\b(?:verify|confirm)\s+(?:your\s+)?(?:email|account)\b", re.IGNORECASE
    ),
    re.compile(r"\bhas\s+(?:been\s+)?shipped\b", re.IGNORECASE),
    re.compile(r"\bout\s+for\s+delivery\b", re.IGNORECASE),
    re.compile(r"\bdelivery\s+(?:confirmation|update|scheduled)\b", re.IGNORECASE),
    re.compile(r"\border\s+confirmation\b", re.IGNORECASE),
    re.compile(r"\bthank\s+you\s+for\s+your\s+order\b", re.IGNORECASE),
    re.compile(r"\byour\s+order\s+#", re.IGNORECASE),
)

_BILLING_KEYWORDS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (label, re.compile(pattern, re.IGNORECASE))
    for label, pattern in (
        ("receipt", r"\breceipt\b"),
        ("invoice", r"\binvoice\b"),
        ("your subscription", r"\byour\s+subscription\b"),
        ("payment confirmation", r"\bpayment\s+confirm(?:ation|ed)\b"),
        ("payment received", r"\bpayment\s+received\b"),
        ("renewal", r"\brenew(?:al|ed|s)\b"),
        ("billing statement", r"\bbilling\s+(?:statement|confirmation)\b"),
        ("membership", r"\bmembership\b"),
        ("recurring", r"\brecurring\b|\bauto[\s-]?renew"),
        ("subscription", r"\bsubscription\b"),
    )
)

_CADENCES: tuple[tuple[BillingCycle, re.Pattern[str]], ...] = (
    (
        "monthly",
        re.compile(
            r"\bmonthly\b|\bper\s+month\b|\bevery\s+month\b|/\s?mo(?:nth)?\b",
            re.IGNORECASE,
        ),
    ),
    (
        "yearly",
        re.compile(
            r"\byearly\b|\bannual(?:ly)?\b|\bper\s+year\b|\bevery\s+year\b"
            r"|/\s?y(?:ea)?r\b",
            re.IGNORECASE,
        ),
    ),
    (
        "quarterly",
        re.compile(r"\bquarterly\b|\bevery\s+(?:3|three)\s+months\b", re.IGNORECASE),
    ),
    (
        "weekly",
        re.compile(r"\bweekly\b|\bper\s+week\b|/\s?w(?:ee)?k\b", re.IGNORECASE),
    ),
)

_RECEIPT_TYPES: tuple[tuple[ReceiptType, tuple[str, ...]], ...] = (
    (
        "cancellation",
        (
            r"subscription\s+(?:has\s+been\s+)?cancel(?:l?ed|lation)",
            r"(?:we've|we\s+have)\s+cancel(?:l?ed)\s+your\s+subscription",
            r"your\s+subscription\s+(?:will\s+)?end",
            r"subscription\s+(?:has\s+)?ended",
            r"(?:will\s+)?no\s+longer\s+be\s+charged",
            r"membership\s+(?:has\s+been\s+)?cancel(?:l?ed|lation)",
            r"cancel(?:l?ed|lation)\s+confirmation",
            r"sorry\s+to\s+see\s+you\s+go",
        ),
    ),
    (
        "payment_failed",
        (
            r"payment\s+(?:method\s+)?(?:failed|declined|unsuccessful)",
            r"unable\s+to\s+(?:process\s+)?(?:your\s+)?payment",
            r"payment\s+(?:could\s+)?not\s+(?:be\s+)?processed",
            r"update\s+(?:your\s+)?payment\s+(?:method|information|details)",
            r"billing\s+(?:problem|issue|error)",
        ),
    ),
    (
        "trial_started",
        (
            r"(?:free\s+)?trial\s+(?:has\s+)?started",
            r"welcome\s+to\s+(?:your\s+)?(?:free\s+)?trial",
            r"(?:you've|you\s+have)\s+started\s+(?:a\s+|your\s+)?(?:free\s+)?trial",
            r"enjoy\s+your\s+(?:free\s+)?trial",
        ),
    ),
    (
        "trial_ending",
        (
            r"trial\s+(?:is\s+)?ending",
            r"trial\s+(?:will\s+)?ends?\b",
            r"trial\s+expires?",
            r"trial\s+period\s+(?:is\s+)?(?:almost\s+)?over",
        ),
    ),
    (
        "price_change",
        (
            r"price\s+(?:increase|change|update)",
            r"new\s+(?:pricing|price|rate)",
            r"subscription\s+(?:price|cost)\s+(?:is\s+)?changing",
            r"pricing\s+update",
        ),
    ),
    (
        "new_subscription",
        (
            r"welcome\s+to",
            r"thank\s+you\s+for\s+(?:subscribing|joining)",
            r"(?:you've|you\s+have)\s+subscribed",
            r"subscription\s+(?:has\s+been\s+)?(?:activated|confirmed)",
            r"first\s+(?:payment|charge)",
        ),
    ),
    (
        "renewal",
        (
            r"subscription\s+(?:has\s+been\s+)?renewed",
            r"renewal\s+(?:confirmation|receipt)",
            r"recurring\s+(?:payment|charge)",
            r"(?:monthly|annual|yearly)\s+(?:payment|charge)",
            r"payment\s+(?:confirmation|received)",
            r"thank\s+you\s+for\s+your\s+payment",
            r"billing\s+confirmation",
        ),
    ),
)
_COMPILED_RECEIPT_TYPES = tuple(
    (receipt_type, tuple(re.compile(p, re.IGNORECASE) for p in patterns))
    for receipt_type, patterns in _RECEIPT_TYPES
)

_SYMBOL_CURRENCIES = {
    "US$": "USD",
    "CA$": "CAD",
    "C$": "CAD",
    "AU$": "AUD",
    "A$": "AUD",
    "$": "USD",
    "£": "GBP",
    "€": "EUR",
    "¥": "JPY",
    "₹": "INR",
}
_ISO_CODES = (
    "USD", "EUR", "GBP", "CAD", "AUD", "NZD", "JPY", "INR", "CHF", "SEK", "NOK",
    "DKK", "MXN", "BRL",
)
_NUMBER = r"(?P<num>(?<![\d.,])\d+(?:[.,]\d{3})*(?:[.,]\d{1,2})?(?![\d]))"
_SYMBOL = "|".join(
    re.escape(symbol) for symbol in sorted(_SYMBOL_CURRENCIES, key=len, reverse=True)
)
_CODE = "|".join(_ISO_CODES)
_AMOUNT_PATTERNS = (
    re.compile(rf"(?P<sym>{_SYMBOL})\s?{_NUMBER}"),
    re.compile(rf"\b(?P<code>{_CODE})\s?{_NUMBER}"),
    re.compile(rf"{_NUMBER}\s?(?P<sym>{_SYMBOL})"),
    re.compile(rf"{_NUMBER}\s?(?P<code>{_CODE})\b"),
)
_AMOUNT_CONTEXT = re.compile(r"\b(?:total|charged|amount|paid)\b", re.IGNORECASE)
_CONTEXT_WINDOW = 40

_DATE = (
    r"(?P<date>[A-Za-z]{3,9}\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}"
    r"|\d{1,2}(?:st|nd|rd|th)?\s+[A-Za-z]{3,9}\.?,?\s+\d{4}"
    r"|\d{4}-\d{2}-\d{2})"
)
_NEXT_DATE_PATTERNS = (
    re.compile(
        r"next\s+(?:charge|payment|billing)(?:\s+date)?"
        rf"\s*(?:on|is|will\s+be)?\s*:?\s*{_DATE}",
        re.IGNORECASE,
    ),
    re.compile(rf"renews?\s+on\s*:?\s*{_DATE}", re.IGNORECASE),
    re.compile(rf"(?:due|charged)\s+on\s*:?\s*{_DATE}", re.IGNORECASE),
)
_ISO_DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_ORDINAL = re.compile(r"(?<=\d)(?:st|nd|rd|th)\b")
_DATE_FORMATS = ("%B %d %Y", "%b %d %Y", "%d %B %Y", "%d %b %Y", "%Y-%m-%d")
_SENDER_NAME_NOISE = re.compile(
    r"\b(?:billing|payments?|receipts?|no[\s-]?reply|team|support|notifications?)\b",
    re.IGNORECASE,
)


@dataclass(slots=True)
class _AmountMatch:
    amount: float
    currency: str
    score: int
    order: tuple[int, int]


class ReceiptParser(ReceiptParserService):
    """Classify a message as billing or not and extract subscription fields.

    Pure and deterministic: the same message always yields the same result.
    """

    def __init__(self, directory: MerchantDirectory | None = None) -> None:
        self._directory = directory or StaticMerchantDirectory()

    def parse(self, message: RawMessage) -> ParsedReceipt:
        """Return the extraction result for ``message``."""
        subject = message.subject or ""
        body = message.body or ""
        combined = f"{subject}\n{body}"

        exclusion = _matched_exclusion(subject, combined)
        if exclusion is not None:
            LOGGER.debug("Message %s excluded (%s)", message.message_id, exclusion)
            return _not_billing(message)

        domain = message.sender.rpartition("@")[2].lower()
        known = self._directory.lookup_domain(domain) if domain else None
        keyword = _first_keyword(combined)
        amount = _best_amount(subject, body)

        if keyword is None and not (known is not None and amount is not None):
            return _not_billing(message)

        signals: list[str] = []
        if known is not None:
            signals.append(f"sender:{domain}")
        if keyword is not None:
            signals.append(f"keyword:{keyword}")
        if amount is not None:
            signals.append("amount")

        cadence = _extract_cadence(subject, body)
        if cadence != "unknown":
            signals.append(f"cadence:{cadence}")

        next_charge = _extract_next_charge(combined, message.received_at)
        if next_charge is not None:
            signals.append("next_date:explicit")
        else:
            next_charge = add_period(message.received_at, cadence)
            if next_charge is not None:
                signals.append("next_date:projected")

        confidence = 0.0
        if known is not None:
            confidence += SENDER_WEIGHT
        if keyword is not None:
            confidence += KEYWORD_WEIGHT
        if amount is not None:
            confidence += AMOUNT_WEIGHT
        if cadence != "unknown":
            confidence += CADENCE_WEIGHT

        return ParsedReceipt(
            message_id=message.message_id,
            parsed=True,
            confidence=round(max(0.0, min(confidence, 1.0)), 4),
            merchant_name=self._extract_merchant(message, known, domain),
            amount=amount.amount if amount else None,
            currency=amount.currency if amount else None,
            billing_cycle=cadence,
            next_charge_date=next_charge,
            receipt_type=classify_receipt_type(combined),
            signals=tuple(signals),
        )

    def _extract_merchant(
        self, message: RawMessage, known: KnownMerchant | None, domain: str
    ) -> str | None:
        if known is not None:
            return known.display_name
        aliased = self._directory.find_alias(message.subject or "")
        if aliased is not None:
            return aliased.display_name
        if message.sender_name:
            cleaned = _SENDER_NAME_NOISE.sub(" ", message.sender_name)
            cleaned = " ".join(cleaned.split()).strip(" -|,")
            if cleaned and cleaned.lower() not in GENERIC_DOMAINS:
                return cleaned
        labels = [label for label in domain.split(".") if label]
        if len(labels) >= 2:
            name = labels[-2]
            if name not in GENERIC_DOMAINS:
                return name.capitalize()
        return None


def classify_receipt_type(text: str) -> ReceiptType:
    """Return the receipt type for billing text; earlier types take priority."""
    for receipt_type, patterns in _COMPILED_RECEIPT_TYPES:
        if any(pattern.search(text) for pattern in patterns):
            return receipt_type
    return "unknown"


def parse_amount(raw: str) -> float | None:
    """Convert ``15,49``, ``1,234.56`` or ``1.234,56`` style numbers to float."""
    value = raw.replace(" ", "")
    if "," in value and "." in value:
        if value.rfind(",") > value.rfind("."):
            value = value.replace(".", "").replace(",", ".")
        else:
            value = value.replace(",", "")
    elif "," in value:
        head, _, tail = value.rpartition(",")
        if value.count(",") == 1 and len(tail) <= 2:
            value = f"{head}.{tail}"
        else:
            value = value.replace(",", "")
    elif value.count(".") > 1:
        head, _, tail = value.rpartition(".")
        value = head.replace(".", "") + ("." + tail if len(tail) <= 2 else tail)
    try:
        return float(value)
    except ValueError:
        return None


def _not_billing(message: RawMessage) -> ParsedReceipt:
    return ParsedReceipt(message_id=message.message_id, parsed=False, confidence=0.0)


def _matched_exclusion(subject: str, combined: str) -> str | None:
    for pattern in _SUBJECT_EXCLUSIONS:
        if pattern.search(subject):
            return pattern.pattern
    for pattern in _EXCLUSIONS:
        if pattern.search(combined):
            return pattern.pattern
    return None


def _first_keyword(text: str) -> str | None:
    for label, pattern in _BILLING_KEYWORDS:
        if pattern.search(text):
            return label
    return None


def _best_amount(subject: str, body: str) -> _AmountMatch | None:
    best: _AmountMatch | None = None
    for source_index, text in enumerate((subject, body)):
        for match in _iter_amounts(text, source_index):
            if best is None or (match.score, _negate(match.order)) > (
                best.score,
                _negate(best.order),
            ):
                best = match
    return best


def _negate(order: tuple[int, int]) -> tuple[int, int]:
    return (-order[0], -order[1])


def _iter_amounts(text: str, source_index: int) -> list[_AmountMatch]:
    seen: set[int] = set()
    found: list[_AmountMatch] = []
    for pattern in _AMOUNT_PATTERNS:
        for match in pattern.finditer(text):
            start = match.start("num")
            if start in seen:
                continue
            amount = parse_amount(match.group("num"))
            if amount is None or not 0 < amount < MAX_AMOUNT:
                continue
            seen.add(start)
            groups = match.groupdict()
            currency = (
                _SYMBOL_CURRENCIES[groups["sym"]]
                if groups.get("sym")
                else str(groups["code"])
            )
            window = text[max(0, match.start() - _CONTEXT_WINDOW) : match.start()]
            score = (2 if source_index == 0 else 0) + (
                1 if _AMOUNT_CONTEXT.search(window) else 0
            )
            found.append(_AmountMatch(amount, currency, score, (source_index, start)))
    return found


def _extract_cadence(subject: str, body: str) -> BillingCycle:
    for text in (subject, body):
        earliest: tuple[int, BillingCycle] | None = None
        for cadence, pattern in _CADENCES:
            match = pattern.search(text)
            if match and (earliest is None or match.start() < earliest[0]):
                earliest = (match.start(), cadence)
        if earliest is not None:
            return earliest[1]
    return "unknown"


def _extract_next_charge(text: str, received_at: datetime) -> datetime | None:
    for pattern in _NEXT_DATE_PATTERNS:
        match = pattern.search(text)
        if match:
            parsed = _parse_date(match.group("date"))
            if parsed is not None:
                return parsed
    # A bare ISO date only counts when it lies after the receipt itself.
    for match in _ISO_DATE.finditer(text):
        parsed = _parse_date(match.group(1))
        if parsed is not None and parsed.date() > received_at.date():
            return parsed
    return None


def _parse_date(raw: str) -> datetime | None:
    cleaned = _ORDINAL.sub("", raw).replace(",", " ").replace(".", " ")
    cleaned = " ".join(cleaned.split())
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


__all__ = ["ReceiptParser", "classify_receipt_type", "parse_amount"]
