"""Exporter used when no ledger service is configured."""

import uuid

from .base import ExportPayload, FinancialDataExporter


class NullDataExporter(FinancialDataExporter):
    """Returns every requested section empty."""

    provider_name = "null"

    async def export(self, user_id: uuid.UUID, include: list[str]) -> ExportPayload:
        return {section: [] for section in include}
