import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from .styles import ConversationStyle, DEFAULT_CONVERSATION_STYLE


ABSOLUTE_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

Role = Literal["system", "user", "assistant", "tool"]
CreditOutcome = Literal["committed", "timed_out", "denied"]
Capability = Literal["web_search", "chat"]


def is_absolute_http_url(value: Any) -> bool:
    return isinstance(value, str) and bool(ABSOLUTE_URL_RE.match(value.strip()))


class ChatMessage(BaseModel):
    role: Role
    content: str

    model_config = {"extra": "allow"}


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(min_length=1)
    model: str
    conversation_style: ConversationStyle = Field(default=DEFAULT_CONVERSATION_STYLE, alias="conversationStyle")
    user_api_key: Optional[str] = Field(default=None, alias="userApiKey")
    user_search_api_key: Optional[str] = Field(default=None, alias="userSearchApiKey")
    user_id: Optional[str] = Field(default=None, alias="userId")
    is_guest: bool = Field(default=False, alias="isGuest")

    model_config = {"populate_by_name": True, "extra": "ignore", "protected_namespaces": ()}

    @field_validator("conversation_style", mode="before")
    @classmethod
    def _default_style(cls, value: Any) -> Any:
        return value or DEFAULT_CONVERSATION_STYLE

    @field_validator("user_api_key", "user_search_api_key", "user_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def last_user_message(self) -> Optional[str]:
        for message in reversed(self.messages):
            if message.role == "user" and message.content.strip():
                return message.content.strip()
        return None


class SearchResult(BaseModel):
    rank: int
    title: str = ""
    url: str
    content: str = ""

    @field_validator("url")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        value = value.strip()
        if not is_absolute_http_url(value):
            raise ValueError("url must be an absolute http(s) URL")
        return value


class RetrievalCard(BaseModel):
    url: str = ""
    title: str = ""
    favicon: str = ""
    image: str = ""
    summary: str = ""


class TierDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    remaining: int = 0
    insufficient_credits: bool = False


@dataclass(frozen=True)
class SearchQuery:
    raw: str
    sub_queries: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.sub_queries:
            object.__setattr__(self, "sub_queries", (self.raw,))


@dataclass
class SearchOutcome:
    query: SearchQuery
    backend: str
    results: List[SearchResult] = field(default_factory=list)
    images: List[str] = field(default_factory=list)

    @property
    def urls(self) -> List[str]:
        return [r.url for r in self.results]


@dataclass(frozen=True)
class CreditTransaction:
    request_id: str
    user_id: Optional[str]
    model: str
    using_own_key: bool
    outcome: CreditOutcome


@dataclass(frozen=True)
class ToolCallRecord:
    tool_name: str
    args: Dict[str, Any]
    result: Dict[str, Any]


@dataclass(frozen=True)
class ClientInfo:
    headers: Dict[str, str]
    host: Optional[str] = None
