from typing import Any, Dict, Optional

import httpx

TAVILY_SEARCH_URL = "https://api.tavily.com/search"


class TavilyClient:
    def __init__(self, api_key: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        # Shared pool so concurrent requests reuse connections instead of opening one per call.
        self.client = client or httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 15,
        include_images: bool = True,
        api_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        key = api_key or self.api_key
        if not key:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": False,
            "include_raw_content": False,
            "include_images": include_images,
        }
        return await self._post(TAVILY_SEARCH_URL, payload, key)

    async def _post(self, url: str, payload: Dict[str, Any], api_key: str) -> Dict[str, Any]:
        """Shared POST helper; failures come back as ``{"error": ...}`` dicts rather than exceptions."""
        # Tavily accepts the key in the body as well as the bearer header; send both.
        payload = {**payload, "api_key": api_key}
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            return {"error": "http_status", "status_code": e.response.status_code, "detail": detail}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
