"""
Upstream release API client.

Provides:
- fetch_recent(query, count): GET {base}/?q=<query>&count=<count>
  -> {"data": {"rows": [Release, ...]}}
- check_health(): GET {base}/stats -> healthy iff status == "success"
  and data.total is a positive number

Rows are validated into Release models here; nothing untyped reaches the
matching pipeline.
"""
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from models.release import Release, SearchResponse

logger = logging.getLogger(__name__)


class ReleaseApiError(Exception):
    """Upstream request failed or returned an unexpected payload."""


class ReleaseApiClient:
    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url)

    async def close(self):
        await self._client.aclose()

    async def fetch_recent(self, query: str, count: int = 5) -> list[Release]:
        try:
            resp = await self._client.get("/", params={"q": query, "count": count})
            resp.raise_for_status()
            body = SearchResponse.model_validate(resp.json())
        except httpx.HTTPError as e:
            raise ReleaseApiError(f"search for '{query}' failed: {e}") from e
        except (ValueError, ValidationError) as e:
            raise ReleaseApiError(f"search for '{query}' returned an unexpected payload: {e}") from e

        releases = []
        for row in body.data.rows:
            try:
                releases.append(Release.model_validate(row))
            except ValidationError as e:
                logger.warning("[poll] Dropping malformed row for '%s': %s", query, e.errors()[:3])
        return releases

    async def check_health(self) -> bool:
        try:
            resp = await self._client.get("/stats")
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("[api-status] API health check failed: %s", e)
            return False

        if not isinstance(data, dict):
            data = {}
        inner = data.get("data")
        total = inner.get("total") if isinstance(inner, dict) else None
        healthy = (
            data.get("status") == "success"
            and isinstance(total, (int, float))
            and not isinstance(total, bool)
            and total > 0
        )
        if healthy:
            logger.info("[api-status] API is healthy! Total releases: %s", f"{total:,}")
        else:
            logger.warning("[api-status] API health check failed: invalid response structure or no data")
        return healthy
