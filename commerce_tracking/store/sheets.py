"""
Google Sheets backend

Talks to the Sheets v4 REST API with an async httpx client. Access tokens
come from a google-auth service account; refreshing one is a blocking
call, so it runs in a worker thread.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import google.auth.transport.requests
import httpx
import structlog
from google.oauth2 import service_account

from commerce_tracking.config.settings import GoogleSheetsSettings
from commerce_tracking.errors import StoreError

from .a1 import column_letter, quote_sheet
from .base import Row, TabularStore

logger = structlog.get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]


def _serialize(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (int, float, str, bool)):
        return value
    return str(value)


class ServiceAccountTokens:
    """Caches a service account access token and refreshes it when stale"""

    def __init__(self, settings: GoogleSheetsSettings):
        self._credentials = service_account.Credentials.from_service_account_info(
            settings.service_account_info(),
            scopes=SCOPES,
        )
        self._lock = asyncio.Lock()

    async def token(self) -> str:
        async with self._lock:
            if not self._credentials.valid:
                request = google.auth.transport.requests.Request()
                await asyncio.to_thread(self._credentials.refresh, request)
                logger.debug("Sheets access token refreshed")
            return self._credentials.token


class SheetsStore(TabularStore):
    """
    Spreadsheet store backed by Google Sheets.

    Values are written RAW so that timestamps and two-decimal amounts are
    stored exactly as formatted by the trackers.
    """

    def __init__(
        self,
        spreadsheet_id: str,
        settings: GoogleSheetsSettings,
        tokens: Optional[ServiceAccountTokens] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(spreadsheet_id)
        self._tokens = tokens or ServiceAccountTokens(settings)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)
        self._base_url = f"{settings.api_url}/{spreadsheet_id}"

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {await self._tokens.token()}"}
        try:
            response = await self._client.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "Sheets request failed",
                spreadsheet_id=self.spreadsheet_id,
                path=path,
                status_code=e.response.status_code,
            )
            raise StoreError(
                f"Sheets API {method} {path} returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("Sheets request error", spreadsheet_id=self.spreadsheet_id, path=path, error=str(e))
            raise StoreError(f"Sheets API {method} {path} failed: {e}") from e

        return response.json() if response.content else {}

    @staticmethod
    def _values_path(range_: str, suffix: str = "") -> str:
        return f"/values/{quote(range_, safe='')}{suffix}"

    async def get_values(self, range_: str) -> List[List[str]]:
        data = await self._request("GET", self._values_path(range_))
        return data.get("values", [])

    async def append_rows(self, sheet: str, rows: Sequence[Row]) -> None:
        if not rows:
            return
        await self._request(
            "POST",
            self._values_path(f"{quote_sheet(sheet)}!A:A", ":append"),
            params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
            json={"values": [[_serialize(v) for v in row] for row in rows]},
        )
        logger.debug("Rows appended", sheet=sheet, count=len(rows))

    async def update_range(self, range_: str, rows: Sequence[Row]) -> None:
        await self._request(
            "PUT",
            self._values_path(range_),
            params={"valueInputOption": "RAW"},
            json={"values": [[_serialize(v) for v in row] for row in rows]},
        )

    async def clear_range(self, range_: str) -> None:
        await self._request("POST", self._values_path(range_, ":clear"), json={})

    async def sheet_titles(self) -> List[str]:
        data = await self._request("GET", "", params={"fields": "sheets.properties.title"})
        return [sheet["properties"]["title"] for sheet in data.get("sheets", [])]

    async def ensure_sheet(self, sheet: str, headers: Sequence[str]) -> None:
        if sheet not in await self.sheet_titles():
            await self._request(
                "POST",
                ":batchUpdate",
                json={"requests": [{"addSheet": {"properties": {"title": sheet}}}]},
            )
            logger.info("Sheet created", spreadsheet_id=self.spreadsheet_id, sheet=sheet)

        last_column = column_letter(len(headers))
        await self.update_range(f"{quote_sheet(sheet)}!A1:{last_column}1", [list(headers)])
