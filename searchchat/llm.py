import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
APP_HEADERS = {"X-Title": "SearchChat", "User-Agent": "SearchChat/1.0"}


class EngineError(Exception):
    """The generation engine rejected the request or broke off the stream."""


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> Dict[str, Any]:
        if not self.arguments.strip():
            return {}
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_message(self) -> Dict[str, Any]:
        return {"id": self.id, "type": "function", "function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class RoundFinished:
    finish_reason: str
    tool_calls: List[ToolCallRequest] = field(default_factory=list)


EngineEvent = Union[TextDelta, RoundFinished]


def sanitize_messages(messages: Any) -> List[Dict[str, Any]]:
    if not isinstance(messages, list):
        return []
    sanitized: List[Dict[str, Any]] = []
    for msg in messages:
        if not isinstance(msg, dict):
            continue
        role = msg.get("role")
        if role not in ALLOWED_ROLES:
            continue
        content = msg.get("content")
        tool_calls = msg.get("tool_calls")
        if role == "assistant" and tool_calls:
            sanitized.append({"role": role, "content": content or None, "tool_calls": tool_calls})
            continue
        if content is None:
            continue
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=True)
        if not content.strip():
            continue
        cleaned: Dict[str, Any] = {"role": role, "content": content}
        if role == "tool":
            if not msg.get("tool_call_id"):
                continue
            cleaned["tool_call_id"] = msg["tool_call_id"]
        sanitized.append(cleaned)
    return sanitized


class EngineStream:
    """One open streaming completion. Iterate ``events()`` once, then ``aclose()``."""

    def __init__(self, response: httpx.Response):
        self.response = response

    async def events(self) -> AsyncIterator[EngineEvent]:
        pending: Dict[int, ToolCallRequest] = {}
        finish_reason = "stop"
        async for line in self.response.aiter_lines():
            if not line.startswith("data:"):
                continue
            chunk = line[len("data:"):].strip()
            if chunk == "[DONE]":
                break
            try:
                data = json.loads(chunk)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict) and data.get("error"):
                raise EngineError(str(data["error"]))
            choices = data.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}
            text = delta.get("content")
            if text:
                yield TextDelta(text)
            for call in delta.get("tool_calls") or []:
                index = call.get("index", len(pending))
                current = pending.setdefault(index, ToolCallRequest(id="", name=""))
                if call.get("id"):
                    current.id = call["id"]
                fn = call.get("function") or {}
                if fn.get("name"):
                    current.name = fn["name"]
                if fn.get("arguments"):
                    current.arguments += fn["arguments"]
            if choice.get("finish_reason"):
                finish_reason = choice["finish_reason"]
        calls = [pending[i] for i in sorted(pending)]
        for position, call in enumerate(calls):
            if not call.id:
                call.id = f"call_{position}"
        if calls and finish_reason == "stop":
            finish_reason = "tool_calls"
        yield RoundFinished(finish_reason=finish_reason, tool_calls=calls)

    async def aclose(self) -> None:
        await self.response.aclose()


class OpenRouterClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))

    def _headers(self, api_key: Optional[str]) -> Dict[str, str]:
        key = api_key or self.api_key
        if not key:
            raise EngineError("missing_api_key")
        return {"Authorization": f"Bearer {key}", "Content-Type": "application/json", **APP_HEADERS}

    def _payload(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float,
        max_tokens: int,
        stream: bool,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        cleaned = sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not model:
            raise ValueError("model is required")
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": stream,
        }
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"
        return payload

    @staticmethod
    def _extract_error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 512,
        api_key: Optional[str] = None,
    ) -> str:
        payload = self._payload(model, messages, temperature, max_tokens, stream=False)
        url = f"{self.base_url}/chat/completions"
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers(api_key))
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise EngineError(self._extract_error_detail(exc.response)) from exc
        except httpx.RequestError as exc:
            raise EngineError(str(exc)) from exc
        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or ""

    async def open_stream(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: float = 0.4,
        max_tokens: int = 4096,
        api_key: Optional[str] = None,
    ) -> EngineStream:
        """Start a streaming completion; HTTP-level failures raise here, before any token is read."""
        payload = self._payload(model, messages, temperature, max_tokens, stream=True, tools=tools)
        request = self.client.build_request(
            "POST",
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=self._headers(api_key),
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            raise EngineError(str(exc)) from exc
        if response.status_code >= 400:
            await response.aread()
            detail = self._extract_error_detail(response)
            await response.aclose()
            raise EngineError(f"HTTP {response.status_code}: {detail}")
        return EngineStream(response)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
