import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import ChatPipelineError
from .exa import ExaClient, ensure_scheme
from .openweather import OpenWeatherClient
from .schemas import RetrievalCard
from .search import SearchOrchestrator

logger = logging.getLogger("uvicorn.error")

WEBSEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "websearch",
        "description": (
            "Search the web for current information, news, articles, and general queries. "
            "Use this for broad web searches."
        ),
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "The search query to look up on the web"}},
            "required": ["query"],
        },
    },
}

RETRIEVAL_TOOL = {
    "type": "function",
    "function": {
        "name": "retrieval",
        "description": (
            "Retrieve full content from a URL. Returns text, title, summary, and images. Use this when the user "
            "asks what a website is or does, or wants detailed information about a specific URL or domain."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": 'The URL to retrieve (e.g. "https://github.com", "openai.com")'},
                "include_summary": {"type": "boolean", "description": "Include an AI-generated summary (default true)"},
                "live_crawl": {
                    "type": "string",
                    "enum": ["never", "auto", "preferred"],
                    "description": "never uses the cache, auto crawls if needed, preferred always crawls fresh",
                },
            },
            "required": ["url"],
        },
    },
}

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "weather",
        "description": "Get current weather for a location, such as temperature and conditions.",
        "parameters": {
            "type": "object",
            "properties": {"location": {"type": "string", "description": 'City or place, e.g. "London, UK"'}},
            "required": ["location"],
        },
    },
}

GREETING_TOOL = {
    "type": "function",
    "function": {
        "name": "greeting",
        "description": 'Respond to simple greetings like "hello" or "good morning" that need no search or other tool.',
        "parameters": {
            "type": "object",
            "properties": {"greeting": {"type": "string", "description": "The greeting message from the user"}},
            "required": ["greeting"],
        },
    },
}


def retrieval_card(result: Dict[str, Any]) -> Optional[RetrievalCard]:
    if not result.get("success"):
        return None
    return RetrievalCard(
        url=result.get("url") or "",
        title=result.get("title") or "",
        favicon=result.get("favicon") or "",
        image=result.get("image") or "",
        summary=result.get("summary") or "",
    )


class ToolRegistry:
    """The four tools offered to the engine for one request. Failures come back as results, never raised."""

    def __init__(
        self,
        search: Optional[SearchOrchestrator],
        exa: ExaClient,
        weather: OpenWeatherClient,
    ):
        self.search = search
        self.exa = exa
        self.weather_client = weather
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            "retrieval": self.retrieval,
            "weather": self.weather,
            "greeting": self.greeting,
        }
        if search is not None:
            self._handlers["websearch"] = self.websearch

    def definitions(self) -> List[Dict[str, Any]]:
        tools = [RETRIEVAL_TOOL, WEATHER_TOOL, GREETING_TOOL]
        if self.search is not None:
            tools.insert(0, WEBSEARCH_TOOL)
        return tools

    def names(self) -> List[str]:
        return [t["function"]["name"] for t in self.definitions()]

    async def execute(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("Engine requested unknown tool %s", name)
            return {"success": False, "error": f"Unknown tool: {name}"}
        try:
            return await handler(args)
        except ChatPipelineError as exc:
            logger.warning("Tool %s failed: %s", name, exc.message)
            return {"success": False, "error": exc.message}
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            return {"success": False, "error": str(exc) or exc.__class__.__name__}

    async def websearch(self, args: Dict[str, Any]) -> Dict[str, Any]:
        query = str(args.get("query") or "").strip()
        if not query:
            return {"success": False, "error": "query is required", "results": [], "images": [], "query": query}
        outcome = await self.search.run(query)
        return {
            "success": True,
            "query": query,
            "results": [r.model_dump() for r in outcome.results],
            "images": outcome.images,
        }

    async def retrieval(self, args: Dict[str, Any]) -> Dict[str, Any]:
        url = str(args.get("url") or "").strip()
        if not url:
            return {"success": False, "error": "url is required", "url": url}
        if not self.exa.enabled:
            return {"success": False, "error": "Exa API key not configured", "url": url}
        full_url = ensure_scheme(url)
        data = await self.exa.get_contents(
            full_url,
            include_summary=args.get("include_summary", True) is not False,
            live_crawl=str(args.get("live_crawl") or "preferred"),
        )
        if data.get("error"):
            logger.warning("Retrieval of %s failed: %s", full_url, data.get("detail") or data["error"])
            return {"success": False, "error": f"Retrieval failed: {data['error']}", "url": full_url}
        rows = data.get("results") or []
        if not rows:
            return {"success": False, "error": "No content retrieved from URL", "url": full_url}
        content = rows[0]
        images = [u for u in (content.get("image"), content.get("favicon")) if u]
        return {
            "success": True,
            "url": content.get("url") or full_url,
            "title": content.get("title") or "",
            "text": content.get("text") or "",
            "summary": content.get("summary") or "",
            "author": content.get("author") or "",
            "publishedDate": content.get("publishedDate") or "",
            "favicon": content.get("favicon") or "",
            "image": content.get("image") or "",
            "images": images,
        }

    async def weather(self, args: Dict[str, Any]) -> Dict[str, Any]:
        location = str(args.get("location") or "").strip()
        if not location:
            return {"success": False, "error": "location is required", "location": location}
        if not self.weather_client.enabled:
            return {"success": False, "error": "OpenWeather API key not configured", "location": location}
        data = await self.weather_client.current(location)
        if data.get("error") == "not_found":
            return {"success": False, "error": f'Location "{location}" not found', "location": location}
        if data.get("error"):
            logger.warning("Weather lookup for %s failed: %s", location, data.get("detail") or data["error"])
            return {"success": False, "error": f"Weather lookup failed: {data['error']}", "location": location}
        return {"success": True, **data}

    async def greeting(self, args: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True, "greeting": str(args.get("greeting") or ""), "response": "greeting_detected"}
