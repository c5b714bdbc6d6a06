"""Service layer: quota service, config loading and CLI."""

from surveyquota.service.config import load_config
from surveyquota.service.orchestrator import QuotaService

__all__ = ["QuotaService", "load_config"]
