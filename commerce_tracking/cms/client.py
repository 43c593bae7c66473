"""
Strapi CMS client

Pages through collections of the Strapi v4 REST API. Entries are yielded
raw (flattened) so that callers can map and reject them one at a time.
"""

from typing import Any, AsyncIterator, Dict, Optional

import httpx
import structlog

from commerce_tracking.config.settings import StrapiSettings
from commerce_tracking.errors import UpstreamError

logger = structlog.get_logger(__name__)


def flatten_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten Strapi's ``{id, attributes: {...}}`` envelope.

    Relations nested as ``{data: {id, attributes}}`` are flattened too;
    entries that are already flat are returned unchanged.
    """
    if not isinstance(entry, dict):
        return entry
    if "attributes" in entry:
        entry = {"id": entry.get("id"), **entry["attributes"]}

    flat = {}
    for key, value in entry.items():
        if isinstance(value, dict) and set(value.keys()) <= {"data", "meta"} and "data" in value:
            data = value["data"]
            if isinstance(data, list):
                value = [flatten_entry(item) for item in data]
            elif isinstance(data, dict):
                value = flatten_entry(data)
            else:
                value = None
        flat[key] = value
    return flat


class StrapiClient:
    """
    Async client for the CMS collections the trackers resync from.

    Example:
        async for entry in client.iter_entries("orders"):
            order = map_strapi_order(entry)
    """

    def __init__(
        self,
        settings: StrapiSettings,
        batch_size: int = 100,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.batch_size = batch_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.api_url,
            timeout=settings.timeout_seconds,
            headers={"Authorization": f"Bearer {settings.api_token.get_secret_value()}"},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"CMS {path} returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"CMS {path} failed: {e}") from e
        return response.json()

    async def iter_entries(self, collection: str) -> AsyncIterator[Dict[str, Any]]:
        page = 1
        while True:
            payload = await self._get(
                f"/api/{collection}",
                {
                    "populate": "*",
                    "pagination[page]": page,
                    "pagination[pageSize]": self.batch_size,
                },
            )
            entries = payload.get("data") or []
            for entry in entries:
                yield flatten_entry(entry)

            pagination = payload.get("meta", {}).get("pagination", {})
            page_count = pagination.get("pageCount", page)
            logger.debug("CMS page fetched", collection=collection, page=page, pages=page_count, entries=len(entries))
            if page >= page_count or not entries:
                break
            page += 1

    def iter_orders(self) -> AsyncIterator[Dict[str, Any]]:
        return self.iter_entries("orders")

    def iter_products(self) -> AsyncIterator[Dict[str, Any]]:
        return self.iter_entries("products")
