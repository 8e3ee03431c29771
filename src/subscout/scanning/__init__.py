"""Scan orchestration, scheduling, quota and operator actions."""

from .admin import ScanAdministrator
from .orchestrator import ScanOrchestrator
from .quota import ConfiguredTierDirectory, TierDirectory, TierQuotaService
from .scheduler import OrchestratorFactory, ScanScheduler

__all__ = [
    "ConfiguredTierDirectory",
    "OrchestratorFactory",
    "ScanAdministrator",
    "ScanOrchestrator",
    "ScanScheduler",
    "TierDirectory",
    "TierQuotaService",
]
