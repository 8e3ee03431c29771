"""Receipt extraction, merchant lookup and candidate reconciliation."""

from .merchants import (
    DEFAULT_MERCHANTS,
    KnownMerchant,
    MerchantDirectory,
    StaticMerchantDirectory,
    normalize_merchant_name,
)
from .receipts import ReceiptParser, classify_receipt_type, parse_amount
from .reconciler import NON_CANDIDATE_TYPES, CandidateReconciler, cadences_compatible
from .review import CandidateReviewService

__all__ = [
    "CandidateReconciler",
    "CandidateReviewService",
    "DEFAULT_MERCHANTS",
    "KnownMerchant",
    "MerchantDirectory",
    "NON_CANDIDATE_TYPES",
    "ReceiptParser",
    "StaticMerchantDirectory",
    "cadences_compatible",
    "classify_receipt_type",
    "normalize_merchant_name",
    "parse_amount",
]
