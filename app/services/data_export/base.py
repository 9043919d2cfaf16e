"""Abstract base class for finance data exporters."""

import uuid
from abc import ABC, abstractmethod

ExportPayload = dict[str, list[dict]]


class FinancialDataExporter(ABC):
    """Supplies the release payload for a user.

    The ledger itself lives outside this service; exporters only fetch the
    sections a switch asked to include.
    """

    provider_name: str = "unknown"

    @abstractmethod
    async def export(self, user_id: uuid.UUID, include: list[str]) -> ExportPayload:
        """
        Export the user's financial data.

        Args:
            user_id: Owner of the switch
            include: Section names to export (accounts, transactions, ...)

        Returns:
            Mapping of section name to list of records, one key per included section

        Raises:
            DataExportError: If the ledger could not be read
        """
        pass


class DataExportError(Exception):
    """The ledger export failed; delivery must be retried."""
