from typing import Any, Dict, Optional

import httpx

EXA_CONTENTS_URL = "https://api.exa.ai/contents"
LIVE_CRAWL_MODES = ("never", "auto", "preferred")


def ensure_scheme(url: str) -> str:
    url = url.strip()
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"https://{url}"


class ExaClient:
    def __init__(self, api_key: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def get_contents(self, url: str, include_summary: bool = True, live_crawl: str = "preferred") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            "urls": [ensure_scheme(url)],
            "text": True,
            "livecrawl": live_crawl if live_crawl in LIVE_CRAWL_MODES else "preferred",
        }
        if include_summary:
            payload["summary"] = True
        headers = {"Content-Type": "application/json", "x-api-key": self.api_key or ""}
        try:
            resp = await self.client.post(EXA_CONTENTS_URL, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            return {"error": "http_status", "status_code": e.response.status_code, "detail": e.response.text}
        except httpx.RequestError as e:
            return {"error": "request_failed", "detail": str(e)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
