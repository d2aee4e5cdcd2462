"""One chat turn from admission to the last streamed byte.

The controller is shared by both pipelines. ``prepare()`` does everything that can
still fail as a JSON error (admission, tier check, up-front search, credit debit,
opening the first engine stream); ``stream()`` then yields the response body:
the retrieval-card marker, the prose, and the two trailing list markers.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar

from .auditor import audit_and_log
from .config import AppSettings
from .db import Database
from .errors import (
    GENERATION_FAILED_MESSAGE,
    SEARCH_FAILED_MESSAGE,
    ChatPipelineError,
    ConfigurationError,
    PolicyError,
    UpstreamError,
    insufficient_credits,
)
from .exa import ExaClient
from .gate import AdmittedRequest, RequestGate
from .ledger import CreditLedgerGuard
from .llm import EngineError, OpenRouterClient, RoundFinished, TextDelta, ToolCallRequest
from .markers import MarkerStreamFilter, render_prefix, render_suffix
from .openweather import OpenWeatherClient
from .parallel import ParallelClient
from .prompts import build_system_prompt
from .schemas import Capability, ClientInfo, RetrievalCard, SearchOutcome, ToolCallRecord
from .search import MAX_IMAGES, SearchOrchestrator, build_orchestrator, extract_image_urls, resolve_search_prefs
from .tavily import TavilyClient
from .tiers import TierAuthority
from .tools import ToolRegistry, retrieval_card

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


class State(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SEARCHING = "searching"
    DEBITING = "debiting"
    PROMPTING = "prompting"
    GENERATING = "generating"
    TOOL_CALL = "tool_call"
    FINISHED = "finished"
    ABORTED = "aborted"
    ERRORED = "errored"


TERMINAL_STATES = {State.FINISHED, State.ABORTED, State.ERRORED}

# aborted and errored are reachable from every non-terminal state.
TRANSITIONS: Dict[State, set] = {
    State.IDLE: {State.VALIDATING},
    State.VALIDATING: {State.SEARCHING, State.DEBITING},
    State.SEARCHING: {State.DEBITING},
    State.DEBITING: {State.PROMPTING},
    State.PROMPTING: {State.GENERATING},
    State.GENERATING: {State.TOOL_CALL, State.FINISHED},
    State.TOOL_CALL: {State.GENERATING},
}


class InvalidTransition(RuntimeError):
    pass


async def _next_event(events: AsyncIterator[Any]) -> Any:
    try:
        return await events.__anext__()
    except StopAsyncIteration:
        return None


class GenerationAborted(ChatPipelineError):
    status_code = 499
    default_code = "CLIENT_CLOSED_REQUEST"

    def __init__(self, message: str = "Request aborted by client"):
        super().__init__(message)


@dataclass
class Services:
    """Process-wide collaborators, built once in the app lifespan."""

    settings: AppSettings
    db: Database
    gate: RequestGate
    tiers: TierAuthority
    ledger: CreditLedgerGuard
    llm: OpenRouterClient
    tavily: TavilyClient
    parallel: ParallelClient
    exa: ExaClient
    weather: OpenWeatherClient


@dataclass
class GenerationSession:
    request_id: str
    state: State = State.IDLE
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    text: List[str] = field(default_factory=list)
    urls: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)
    card: Optional[RetrievalCard] = None
    history: List[State] = field(default_factory=list)

    @property
    def prose(self) -> str:
        return "".join(self.text)

    def add_urls(self, urls: List[str]) -> None:
        for url in urls:
            if url and url not in self.urls:
                self.urls.append(url)

    def add_images(self, images: List[str]) -> None:
        """Search images only; unique absolute http(s) URLs, at most MAX_IMAGES."""
        room = MAX_IMAGES - len(self.images)
        if room <= 0:
            return
        fresh = [url for url in extract_image_urls(images) if url not in self.images]
        self.images.extend(fresh[:room])


class ChatController:
    def __init__(self, services: Services, capability: Capability, request_id: Optional[str] = None):
        self.services = services
        self.settings = services.settings
        self.capability = capability
        self.session = GenerationSession(request_id=request_id or uuid.uuid4().hex)
        self.admitted: Optional[AdmittedRequest] = None
        self.search: Optional[SearchOrchestrator] = None
        self.search_outcome: Optional[SearchOutcome] = None
        self.registry: Optional[ToolRegistry] = None
        self.messages: List[Dict[str, Any]] = []
        self._engine_stream = None
        self._engine_key: Optional[str] = None
        self._rounds = 0
        self._tools_offered = False

    # -- state ------------------------------------------------------------------

    @property
    def state(self) -> State:
        return self.session.state

    def transition(self, target: State) -> None:
        current = self.session.state
        if current in TERMINAL_STATES:
            raise InvalidTransition(f"{current.value} is terminal, cannot move to {target.value}")
        if target not in (State.ABORTED, State.ERRORED) and target not in TRANSITIONS.get(current, set()):
            raise InvalidTransition(f"{current.value} -> {target.value}")
        self.session.history.append(current)
        self.session.state = target
        logger.debug("Request %s: %s -> %s", self.session.request_id, current.value, target.value)

    def cancel(self) -> None:
        """Abort the turn: interrupts the in-flight engine read or tool call; no markers, no audit."""
        self.session.abort_event.set()
        if self.state not in TERMINAL_STATES:
            self.transition(State.ABORTED)
            logger.info("Request %s aborted", self.session.request_id)

    async def _guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the abort event fires first; the loser is cancelled."""
        task = asyncio.ensure_future(awaitable)
        if self.session.abort_event.is_set():
            task.cancel()
            raise GenerationAborted()
        waiter = asyncio.ensure_future(self.session.abort_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        # Let the cancelled step unwind before reporting the abort.
        await asyncio.gather(task, return_exceptions=True)
        raise GenerationAborted()

    # -- prepare ------------------------------------------------------------------

    async def prepare(self, body: Any, client: ClientInfo) -> None:
        try:
            await self._prepare(body, client)
        except (GenerationAborted, asyncio.CancelledError):
            self.cancel()
            await self.aclose()
            raise
        except BaseException:
            if self.state not in TERMINAL_STATES:
                self.transition(State.ERRORED)
            await self.aclose()
            raise

    async def _prepare(self, body: Any, client: ClientInfo) -> None:
        services = self.services
        self.transition(State.VALIDATING)
        admitted = await self._guard(services.gate.admit(body, client, self.capability))
        self.admitted = admitted
        request = admitted.request

        decision = await self._guard(
            services.tiers.check(request.model, admitted.using_own_key, request.user_id, admitted.is_guest)
        )
        if not decision.allowed:
            logger.info("Tier check denied %s for %s: %s", request.model, request.user_id or "guest", decision.reason)
            if decision.insufficient_credits:
                raise insufficient_credits()
            raise PolicyError(decision.reason or "Model not available on your plan.", code="TIER_LIMIT_EXCEEDED")

        self._engine_key = request.user_api_key or self.settings.openrouter_api_key
        if not self._engine_key:
            raise ConfigurationError("OpenRouter API key not configured")

        if not admitted.is_guest:
            backend_name, stored_key = await resolve_search_prefs(self.settings, services.db, request.user_id)
            self.search = build_orchestrator(
                backend_name,
                self.settings,
                services.tavily,
                services.parallel,
                services.llm,
                user_search_api_key=request.user_search_api_key,
                stored_search_api_key=stored_key,
            )
        self.registry = ToolRegistry(self.search, services.exa, services.weather)

        if self.capability == "web_search":
            self.transition(State.SEARCHING)
            self.search_outcome = await self._guard(self._run_search(admitted.query))
            self.session.add_urls(self.search_outcome.urls)
            self.session.add_images(self.search_outcome.images)

        self.transition(State.DEBITING)
        await self._guard(
            services.ledger.debit(
                self.session.request_id,
                request.model,
                admitted.using_own_key,
                request.user_id,
                admitted.is_guest,
            )
        )

        self.transition(State.PROMPTING)
        outcome = self.search_outcome
        system_prompt = build_system_prompt(
            request.conversation_style,
            admitted.query,
            outcome.results if outcome else [],
            outcome.images if outcome else [],
            tool_mode=bool(self._tools()),
        )
        self.messages = [{"role": "system", "content": system_prompt}]
        self.messages.extend({"role": m.role, "content": m.content} for m in request.messages if m.role != "system")

        self.transition(State.GENERATING)
        self._engine_stream = await self._guard(self._open_round())

    async def _run_search(self, query: str) -> SearchOutcome:
        try:
            return await self.search.run(query)
        except ChatPipelineError:
            raise
        except Exception as exc:
            logger.exception("Search failed for request %s", self.session.request_id)
            raise UpstreamError(SEARCH_FAILED_MESSAGE, code="SEARCH_FAILED") from exc

    def _tools(self) -> Optional[List[Dict[str, Any]]]:
        if self.registry is None or not self.admitted.model.supports_tools:
            return None
        if self._rounds >= self.settings.max_tool_rounds:
            return None
        return self.registry.definitions()

    async def _open_round(self):
        tools = self._tools()
        self._tools_offered = bool(tools)
        try:
            return await self.services.llm.open_stream(
                self.admitted.model.model_id,
                self.messages,
                tools=tools,
                max_tokens=self.settings.max_output_tokens,
                api_key=self._engine_key,
            )
        except EngineError as exc:
            logger.error("Engine request failed for %s: %s", self.session.request_id, exc)
            raise UpstreamError(GENERATION_FAILED_MESSAGE, code="GENERATION_FAILED") from exc

    # -- stream -------------------------------------------------------------------

    async def stream(self) -> AsyncIterator[str]:
        session = self.session
        filt = MarkerStreamFilter()
        prefix_sent = False
        completed = False
        try:
            while True:
                round_text: List[str] = []
                finished: Optional[RoundFinished] = None
                events = self._engine_stream.events()
                try:
                    while True:
                        event = await self._guard(_next_event(events))
                        if event is None:
                            break
                        if isinstance(event, TextDelta):
                            round_text.append(event.text)
                            visible = filt.feed(event.text)
                            if visible:
                                if not prefix_sent:
                                    prefix_sent = True
                                    yield render_prefix(session.card)
                                session.text.append(visible)
                                yield visible
                        elif isinstance(event, RoundFinished):
                            finished = event
                finally:
                    await self._close_engine_stream()

                if finished is None or finished.finish_reason != "tool_calls" or not finished.tool_calls:
                    break
                if not self._tools_offered:
                    logger.warning("Ignoring tool calls from %s: no tools were offered", session.request_id)
                    break
                self.transition(State.TOOL_CALL)
                await self._run_tools("".join(round_text), finished.tool_calls, prefix_sent)
                self._rounds += 1
                self.transition(State.GENERATING)
                self._engine_stream = await self._guard(self._open_round())
            completed = True
        except GenerationAborted:
            self.cancel()
            return
        except (asyncio.CancelledError, GeneratorExit):
            self.cancel()
            raise
        except Exception as exc:
            if self.state is State.ABORTED:
                return
            if isinstance(exc, UpstreamError):
                logger.error("Generation failed mid-stream for %s: %s", session.request_id, exc.message)
            else:
                logger.exception("Generation failed mid-stream for %s", session.request_id)
            self.transition(State.ERRORED)

        # finished or errored: close out with the canonical markers.
        tail = filt.flush()
        try:
            if not prefix_sent:
                yield render_prefix(session.card)
            if tail:
                session.text.append(tail)
                yield tail
            yield render_suffix(session.urls, session.images)
        except (asyncio.CancelledError, GeneratorExit):
            self.cancel()
            raise
        if completed:
            self.transition(State.FINISHED)
            audit_and_log(session.request_id, session.prose, session.urls)
        if filt.dropped:
            logger.info("Removed %d model-written markers from %s", filt.dropped, session.request_id)

    async def _run_tools(self, round_text: str, calls: List[ToolCallRequest], prefix_sent: bool) -> None:
        self.messages.append(
            {
                "role": "assistant",
                "content": round_text or None,
                "tool_calls": [call.to_message() for call in calls],
            }
        )
        for call in calls:
            args = call.parsed_arguments()
            logger.info("Request %s calling tool %s", self.session.request_id, call.name)
            result = await self._guard(self.registry.execute(call.name, args))
            self.session.tool_calls.append(ToolCallRecord(tool_name=call.name, args=args, result=result))
            self._absorb(call.name, result, prefix_sent)
            self.messages.append(
                {"role": "tool", "tool_call_id": call.id, "content": json.dumps(result, ensure_ascii=False)}
            )

    def _absorb(self, name: str, result: Dict[str, Any], prefix_sent: bool) -> None:
        if not result.get("success"):
            return
        if name == "websearch":
            self.session.add_urls([r["url"] for r in result.get("results") or [] if r.get("url")])
            self.session.add_images(result.get("images") or [])
        elif name == "retrieval":
            self.session.add_urls([result["url"]] if result.get("url") else [])
            # The card line is already on the wire once prose has started.
            if self.session.card is None and not prefix_sent:
                self.session.card = retrieval_card(result)

    async def _close_engine_stream(self) -> None:
        stream, self._engine_stream = self._engine_stream, None
        if stream is not None:
            try:
                await stream.aclose()
            except Exception as exc:
                logger.debug("Closing engine stream failed: %s", exc)

    async def aclose(self) -> None:
        await self._close_engine_stream()
