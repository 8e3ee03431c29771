"""Service wiring shared by the CLI and the web application."""

from __future__ import annotations

from pathlib import Path

from .core import AppSettings, ServiceContainer
from .core.interfaces import CredentialProvider, ScanRepository
from .ingestion import MailFetcher, ProviderFactory
from .intelligence import (
    CandidateReconciler,
    CandidateReviewService,
    ReceiptParser,
    StaticMerchantDirectory,
)
from .scanning import (
    OrchestratorFactory,
    ScanAdministrator,
    ScanOrchestrator,
    ScanScheduler,
    TierDirectory,
    TierQuotaService,
)
from .storage.connection_pool import ConnectionPool
from .transport import EnvSecretStore, OAuthCredentialProvider, build_mail_provider


def build_container(
    settings: AppSettings,
    *,
    env_file: Path | str | None = None,
    credentials: CredentialProvider | None = None,
    provider_factory: ProviderFactory | None = None,
    tier_directory: TierDirectory | None = None,
) -> ServiceContainer:
    """Register the scan pipeline services for ``settings``.

    ``credentials``, ``provider_factory`` and ``tier_directory`` replace the
    default adapters, which is how tests run scans without a network.
    """
    container = ServiceContainer()
    container.register_instance("settings", settings)
    container.register("pool", lambda _: ConnectionPool(settings.storage))
    container.register(
        "merchants",
        lambda _: StaticMerchantDirectory.with_extensions(
            settings.detection.merchant_aliases_path
        ),
    )
    container.register("parser", lambda c: ReceiptParser(c.resolve("merchants")))

    if credentials is not None:
        container.register_instance("credentials", credentials)
    else:
        container.register(
            "credentials",
            lambda _: OAuthCredentialProvider(
                settings.oauth, EnvSecretStore(env_file=env_file)
            ),
        )

    def _provider_factory(c: ServiceContainer) -> ProviderFactory:
        if provider_factory is not None:
            return provider_factory
        provider_credentials = c.resolve("credentials")
        return lambda connection: build_mail_provider(
            connection, settings, provider_credentials
        )

    container.register("provider_factory", _provider_factory)
    container.register(
        "fetcher",
        lambda c: MailFetcher(
            c.resolve("provider_factory"),
            settings.fetch,
            page_sizes={
                "gmail": settings.gmail.page_size,
                "imap": settings.imap.page_size,
            },
        ),
    )

    def _orchestrator_factory(c: ServiceContainer) -> OrchestratorFactory:
        fetcher = c.resolve("fetcher")
        parser = c.resolve("parser")
        merchants = c.resolve("merchants")

        def build(repository: ScanRepository) -> ScanOrchestrator:
            return ScanOrchestrator(
                repository,
                fetcher,
                parser,
                CandidateReconciler(repository, settings.detection, merchants),
                TierQuotaService(settings.quota, repository, tier_directory),
                settings.scan,
            )

        return build

    container.register("orchestrator_factory", _orchestrator_factory)
    container.register(
        "scheduler",
        lambda c: ScanScheduler(
            c.resolve("pool"), c.resolve("orchestrator_factory"), settings.scan
        ),
    )
    return container


def build_admin(
    container: ServiceContainer, repository: ScanRepository
) -> ScanAdministrator:
    """Return an administrator bound to ``repository``."""
    settings: AppSettings = container.resolve("settings")
    return ScanAdministrator(
        repository,
        container.resolve("parser"),
        CandidateReconciler(
            repository, settings.detection, container.resolve("merchants")
        ),
        scheduler=container.try_resolve("scheduler"),
    )


def build_review(repository: ScanRepository) -> CandidateReviewService:
    """Return a review service bound to ``repository``."""
    return CandidateReviewService(repository)


__all__ = ["build_admin", "build_container", "build_review"]
