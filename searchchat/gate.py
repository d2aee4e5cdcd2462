import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import pydantic

from .config import AppSettings, ModelSpec
from .db import Database
from .errors import QuotaError, ValidationError, guest_search_restricted
from .schemas import Capability, ChatRequest, ClientInfo

logger = logging.getLogger("uvicorn.error")


@dataclass
class AdmittedRequest:
    request: ChatRequest
    query: str
    model: ModelSpec
    is_guest: bool
    anon_id: Optional[str] = None

    @property
    def using_own_key(self) -> bool:
        return bool(self.request.user_api_key)


def anonymous_id(client: ClientInfo) -> str:
    """Derive the guest identifier from proxy headers; never trust a client-supplied id."""
    headers = {k.lower(): v for k, v in client.headers.items()}
    cf_ip = (headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return client.host or "unknown"


def _describe(exc: pydantic.ValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"Invalid request: {loc}: {first.get('msg')}" if loc else f"Invalid request: {first.get('msg')}"


class RequestGate:
    def __init__(self, settings: AppSettings, db: Database):
        self.settings = settings
        self.db = db

    def validate(self, body: Any) -> ChatRequest:
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")
        try:
            return ChatRequest.model_validate(body)
        except pydantic.ValidationError as exc:
            raise ValidationError(_describe(exc)) from exc

    async def admit(self, body: Any, client: ClientInfo, capability: Capability) -> AdmittedRequest:
        request = self.validate(body)
        spec = self.settings.get_model(request.model)
        if spec is None:
            raise ValidationError(f"Unknown model: {request.model}", code="UNKNOWN_MODEL")
        query = request.last_user_message()
        if not query:
            raise ValidationError("No user message found")

        is_guest = request.is_guest or not request.user_id
        admitted = AdmittedRequest(request=request, query=query, model=spec, is_guest=is_guest)
        if not is_guest:
            return admitted

        if capability == "web_search":
            raise guest_search_restricted()

        admitted.anon_id = anonymous_id(client)
        await self._hit_quota(admitted.anon_id)
        return admitted

    async def _hit_quota(self, anon_id: str) -> None:
        try:
            usage = await self.db.hit_guest_usage(
                anon_id, self.settings.guest_max_messages, self.settings.guest_window_s
            )
        except Exception as exc:
            # The quota store going away must not take guest chat down with it.
            logger.error("Guest quota check failed for %s, allowing request: %s", anon_id, exc)
            return
        if usage["allowed"]:
            return
        remaining_s = max(0.0, usage["reset_at"] - time.time())
        hours = max(1, math.ceil(remaining_s / 3600))
        max_messages = self.settings.guest_max_messages
        raise QuotaError(
            f"You've used all {max_messages} free messages. Sign up for unlimited access "
            f"or try again in {hours} hour{'s' if hours > 1 else ''}.",
            code="GUEST_RATE_LIMIT_EXCEEDED",
            extra={
                "resetTime": int(usage["reset_at"] * 1000),
                "messagesUsed": usage["count"],
                "maxMessages": max_messages,
            },
            headers={"Retry-After": str(math.ceil(remaining_s))},
        )

    async def guest_usage(self, client: ClientInfo) -> Dict[str, Any]:
        anon_id = anonymous_id(client)
        try:
            usage = await self.db.get_guest_usage(anon_id)
        except Exception as exc:
            logger.error("Guest usage lookup failed for %s: %s", anon_id, exc)
            usage = {"count": 0, "reset_at": None}
        reset_at = usage.get("reset_at")
        return {
            "messagesUsed": usage["count"],
            "maxMessages": self.settings.guest_max_messages,
            "resetTime": int(reset_at * 1000) if reset_at else None,
        }
