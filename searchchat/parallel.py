from typing import Any, Dict, List, Optional

import httpx

PARALLEL_SEARCH_URL = "https://api.parallel.ai/v1beta/search"
MAX_QUERIES = 5


class ParallelClient:
    """Thin client for the objective-driven multi-query search API."""

    def __init__(self, api_key: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        queries: List[str],
        objective: Optional[str] = None,
        max_results: int = 10,
        max_chars_per_result: int = 6000,
        processor: str = "base",
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        limited = [q for q in queries if q and q.strip()][:MAX_QUERIES]
        if not limited:
            return {"error": "empty_query"}
        payload = {
            "objective": objective or limited[0],
            "search_queries": limited,
            "processor": processor,
            "max_results": max_results,
            "max_chars_per_result": max_chars_per_result,
        }
        headers = {"Content-Type": "application/json", "x-api-key": self.api_key or ""}
        try:
            resp = await self.client.post(PARALLEL_SEARCH_URL, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            return {"error": "http_status", "status_code": e.response.status_code, "detail": e.response.text}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
