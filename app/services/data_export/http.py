"""Exporter backed by the ledger service's export endpoint."""

import uuid

import httpx

from app.core.logging import get_logger

from .base import DataExportError, ExportPayload, FinancialDataExporter

logger = get_logger(__name__)


class HttpDataExporter(FinancialDataExporter):
    """Fetch sections from `GET {base_url}/users/{user_id}/export?sections=...`."""

    provider_name = "http"

    def __init__(self, base_url: str, token: str = "", timeout_seconds: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout_seconds

    async def export(self, user_id: uuid.UUID, include: list[str]) -> ExportPayload:
        if not include:
            return {}

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        url = f"{self.base_url}/users/{user_id}/export"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    url,
                    params={"sections": ",".join(include)},
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.bind(user_id=str(user_id), error=str(e)).error("ledger_export_failed")
            raise DataExportError(f"Ledger export failed: {e}") from e

        if not isinstance(data, dict):
            raise DataExportError("Ledger export returned a non-object payload")

        # Only pass through what was asked for; missing sections become empty
        return {section: list(data.get(section) or []) for section in include}
