"""Transport adapters for external mailbox providers."""

from __future__ import annotations

from ..core.config import AppSettings
from ..core.interfaces import CredentialProvider, MailProvider, ProviderFetchError
from ..core.models import Connection
from .credentials import EnvSecretStore, OAuthCredentialProvider, SecretStore
from .gmail_client import GmailClient, GmailCursor
from .imap_client import ImapClient

SUPPORTED_PROVIDERS = ("gmail", "imap")


def build_mail_provider(
    connection: Connection,
    settings: AppSettings,
    credentials: CredentialProvider,
) -> MailProvider:
    """Return the provider adapter matching ``connection.provider``."""
    if connection.provider == "gmail":
        return GmailClient(settings.gmail, connection, credentials)
    if connection.provider == "imap":
        return ImapClient(
            settings.imap,
            connection,
            credentials,
            lookback_days=settings.imap.initial_lookback_days,
        )
    raise ProviderFetchError(f"Unsupported mail provider '{connection.provider}'")


__all__ = [
    "EnvSecretStore",
    "GmailClient",
    "GmailCursor",
    "ImapClient",
    "OAuthCredentialProvider",
    "SUPPORTED_PROVIDERS",
    "SecretStore",
    "build_mail_provider",
]
