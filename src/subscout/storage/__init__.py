"""Persistence layer for connections, receipts and detection candidates."""

from .sqlite import SqliteScanRepository

__all__ = ["SqliteScanRepository"]
