import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from .config import AppSettings
from .db import Database
from .errors import (
    SEARCH_FAILED_MESSAGE,
    SEARCH_TIMEOUT_MESSAGE,
    ConfigurationError,
    UpstreamError,
    UpstreamTimeout,
)
from .llm import OpenRouterClient
from .parallel import MAX_QUERIES, ParallelClient
from .prompts import build_query_expansion_messages
from .schemas import ABSOLUTE_URL_RE, SearchOutcome, SearchQuery, SearchResult
from .tavily import TavilyClient

logger = logging.getLogger("uvicorn.error")

MAX_IMAGES = 15
BACKENDS = ("parallels", "tavily")
_LIST_PREFIX_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def normalize_results(rows: Any) -> List[SearchResult]:
    """Map raw backend rows to ranked results, dropping rows without an absolute http(s) URL."""
    results: List[SearchResult] = []
    if not isinstance(rows, list):
        return results
    for row in rows:
        if not isinstance(row, dict):
            continue
        url = row.get("url")
        if not isinstance(url, str) or not ABSOLUTE_URL_RE.match(url.strip()):
            continue
        excerpts = row.get("excerpts")
        if isinstance(excerpts, list):
            content = "\n\n".join(str(e).strip() for e in excerpts if str(e).strip())
        else:
            content = row.get("content") or ""
        results.append(
            SearchResult(
                rank=len(results) + 1,
                title=str(row.get("title") or ""),
                url=url.strip(),
                content=str(content),
            )
        )
    return results


def extract_image_urls(raw_images: Any, limit: int = MAX_IMAGES) -> List[str]:
    images: List[str] = []
    if not isinstance(raw_images, list):
        return images
    for item in raw_images:
        url = item if isinstance(item, str) else (item.get("url") if isinstance(item, dict) else None)
        if not isinstance(url, str) or not ABSOLUTE_URL_RE.match(url):
            continue
        if url in images:
            continue
        images.append(url)
        if len(images) >= limit:
            break
    return images


def parse_sub_queries(raw: str, text: str) -> List[str]:
    """Read the expansion reply as a JSON array, falling back to one query per line."""
    candidates: List[str] = []
    text = (text or "").strip()
    if text:
        start, end = text.find("["), text.rfind("]")
        parsed: Any = None
        if start != -1 and end > start:
            try:
                parsed = json.loads(text[start:end + 1])
            except json.JSONDecodeError:
                parsed = None
        if isinstance(parsed, list):
            candidates = [str(q) for q in parsed]
        else:
            candidates = [_LIST_PREFIX_RE.sub("", line) for line in text.splitlines()]
    queries = [raw]
    for candidate in candidates:
        candidate = candidate.strip().strip('"').strip()
        if candidate and candidate.lower() not in (q.lower() for q in queries):
            queries.append(candidate)
        if len(queries) >= MAX_QUERIES:
            break
    return queries


def _raise_for_error(backend: str, data: Dict[str, Any]) -> None:
    err = data.get("error")
    if not err:
        return
    if err == "missing_api_key":
        raise ConfigurationError(f"{backend} API key not configured")
    logger.error("%s search failed: %s %s", backend, err, data.get("detail") or data.get("status_code") or "")
    raise UpstreamError(SEARCH_FAILED_MESSAGE, code="SEARCH_FAILED")


class TavilyBackend:
    name = "tavily"
    label = "Tavily"

    def __init__(self, client: TavilyClient, api_key: Optional[str], timeout_s: float):
        self.client = client
        self.api_key = api_key
        self.timeout_s = timeout_s

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: SearchQuery) -> Tuple[List[SearchResult], List[str]]:
        """Results and images come back in the same Tavily response."""
        if not self.api_key:
            raise ConfigurationError("Tavily API key not configured")
        try:
            data = await asyncio.wait_for(
                self.client.search(query.raw, max_results=15, include_images=True, api_key=self.api_key),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Tavily search timed out after %.1fs", self.timeout_s)
            raise UpstreamTimeout(SEARCH_TIMEOUT_MESSAGE, code="SEARCH_TIMEOUT") from exc
        _raise_for_error(self.name, data)
        return normalize_results(data.get("results")), extract_image_urls(data.get("images"))


class ParallelBackend:
    name = "parallels"
    label = "Parallel AI"

    def __init__(
        self,
        client: ParallelClient,
        llm: Optional[OpenRouterClient],
        settings: AppSettings,
        image_source: Optional[TavilyClient] = None,
        image_api_key: Optional[str] = None,
    ):
        self.client = client
        self.llm = llm
        self.settings = settings
        self.image_source = image_source
        self.image_api_key = image_api_key

    @property
    def configured(self) -> bool:
        return self.client.enabled

    async def expand(self, raw: str) -> SearchQuery:
        if self.llm is None:
            return SearchQuery(raw)
        try:
            reply = await asyncio.wait_for(
                self.llm.chat_completion(
                    self.settings.query_expansion_model,
                    build_query_expansion_messages(raw),
                    temperature=0.3,
                    max_tokens=300,
                ),
                timeout=self.settings.query_expansion_timeout_s,
            )
        except Exception as exc:
            logger.warning("Query expansion failed, using the original query: %s", exc)
            return SearchQuery(raw)
        return SearchQuery(raw, tuple(parse_sub_queries(raw, reply)))

    async def search(self, query: SearchQuery) -> Tuple[List[SearchResult], List[str]]:
        """Parallel results plus Tavily images for the original query, fetched concurrently."""
        results, images = await asyncio.gather(self._results(query), self.images(query))
        return results, images

    async def _results(self, query: SearchQuery) -> List[SearchResult]:
        if not self.client.enabled:
            raise ConfigurationError("Parallel AI API key not configured")
        data = await self.client.search(list(query.sub_queries), objective=query.raw)
        _raise_for_error(self.name, data)
        return normalize_results(data.get("results"))

    async def images(self, query: SearchQuery) -> List[str]:
        """Image-only Tavily lookup with the original query; never fails the search."""
        if self.image_source is None or not self.image_api_key:
            return []
        try:
            data = await self.image_source.search(
                query.raw, max_results=10, include_images=True, api_key=self.image_api_key
            )
        except Exception as exc:
            logger.warning("Image lookup failed: %s", exc)
            return []
        if data.get("error"):
            logger.warning("Image lookup failed: %s", data.get("error"))
            return []
        return extract_image_urls(data.get("images"))


class SearchOrchestrator:
    """Runs one search for one request against the backend chosen for that request."""

    def __init__(self, backend: Any):
        self.backend = backend

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def ensure_configured(self) -> None:
        if not self.backend.configured:
            raise ConfigurationError(f"{self.backend.label} API key not configured")

    async def run(self, raw_query: str) -> SearchOutcome:
        raw_query = raw_query.strip()
        self.ensure_configured()
        if isinstance(self.backend, ParallelBackend):
            query = await self.backend.expand(raw_query)
        else:
            query = SearchQuery(raw_query)
        results, images = await self.backend.search(query)
        logger.info(
            "Search via %s: %d sub-queries, %d results, %d images",
            self.backend_name,
            len(query.sub_queries),
            len(results),
            len(images),
        )
        return SearchOutcome(query=query, backend=self.backend_name, results=results, images=images)


async def resolve_search_prefs(
    settings: AppSettings, db: Database, user_id: Optional[str]
) -> Tuple[str, Optional[str]]:
    """Return ``(backend_name, stored_tavily_key)`` for the caller; defaults when nothing is stored."""
    if not user_id:
        return settings.default_search_backend, None
    try:
        prefs = await db.get_user_prefs(user_id) or {}
    except Exception as exc:
        logger.warning("Could not read search preference for %s: %s", user_id, exc)
        return settings.default_search_backend, None
    backend = prefs.get("search_backend")
    if backend not in BACKENDS:
        backend = settings.default_search_backend
    return backend, prefs.get("tavily_api_key") or None


def build_orchestrator(
    backend_name: str,
    settings: AppSettings,
    tavily: TavilyClient,
    parallel: ParallelClient,
    llm: Optional[OpenRouterClient],
    user_search_api_key: Optional[str] = None,
    stored_search_api_key: Optional[str] = None,
) -> SearchOrchestrator:
    tavily_key = user_search_api_key or stored_search_api_key or tavily.api_key
    if backend_name == "tavily":
        return SearchOrchestrator(TavilyBackend(tavily, tavily_key, settings.search_timeout_s))
    return SearchOrchestrator(ParallelBackend(parallel, llm, settings, tavily, tavily_key))
