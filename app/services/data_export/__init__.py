"""Finance data export with provider abstraction."""

from app.config import get_settings

from .base import DataExportError, ExportPayload, FinancialDataExporter
from .http import HttpDataExporter
from .null import NullDataExporter

__all__ = [
    "DataExportError",
    "ExportPayload",
    "FinancialDataExporter",
    "HttpDataExporter",
    "NullDataExporter",
    "get_data_exporter",
    "reset_data_exporter",
]

_exporter_instance: FinancialDataExporter | None = None


def get_data_exporter() -> FinancialDataExporter:
    """
    Get the configured exporter instance.

    Falls back to NullDataExporter if no ledger URL is configured.
    """
    global _exporter_instance
    if _exporter_instance is not None:
        return _exporter_instance

    settings = get_settings()

    if not settings.ledger_export_url:
        _exporter_instance = NullDataExporter()
    else:
        _exporter_instance = HttpDataExporter(
            base_url=settings.ledger_export_url,
            token=settings.ledger_export_token,
            timeout_seconds=settings.ledger_export_timeout,
        )

    return _exporter_instance


def reset_data_exporter() -> None:
    """Reset the exporter instance. Useful for testing."""
    global _exporter_instance
    _exporter_instance = None
