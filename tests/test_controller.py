import asyncio
import time

import pytest

from searchchat.controller import ChatController, GenerationAborted, InvalidTransition, State
from searchchat.errors import ConfigurationError, PolicyError, QuotaError, UpstreamError
from searchchat.llm import EngineError, TextDelta
from searchchat.main import build_services
from searchchat.markers import extract_markers, strip_markers
from searchchat.schemas import ClientInfo
from tests.conftest import FREE_MODEL, GUEST_MODEL, PREMIUM_MODEL, chat_body, make_settings, seed_user
from tests.fakes import (
    DelayedCreditStore,
    FakeExaClient,
    FakeOpenRouterClient,
    FakeParallelClient,
    FakeTavilyClient,
    FakeWeatherClient,
    text_round,
    tool_round,
)

CLIENT = ClientInfo(headers={"x-forwarded-for": "198.51.100.20"}, host="127.0.0.1")

PARIS_WEATHER = {
    "location": "Paris, FR",
    "temperature": {"celsius": 18, "fahrenheit": 64},
    "description": "light rain",
}


def make_controller(tmp_path, db, capability="chat", *, llm=None, tavily=None, parallel=None, exa=None,
                    weather=None, **overrides):
    settings = make_settings(tmp_path, database_path=db.path, **overrides)
    services = build_services(
        settings,
        db,
        llm or FakeOpenRouterClient(),
        tavily or FakeTavilyClient(),
        parallel or FakeParallelClient(),
        exa or FakeExaClient(),
        weather or FakeWeatherClient(report=PARIS_WEATHER),
    )
    return ChatController(services, capability, request_id="req-test")


async def collect(controller):
    return "".join([chunk async for chunk in controller.stream()])


async def test_transition_table_rejects_skips(tmp_path, db):
    controller = make_controller(tmp_path, db)
    with pytest.raises(InvalidTransition):
        controller.transition(State.GENERATING)
    controller.transition(State.VALIDATING)
    controller.transition(State.ABORTED)
    with pytest.raises(InvalidTransition):
        controller.transition(State.ERRORED)


async def test_weather_then_search_scenario(tmp_path, db):
    await seed_user(db, "user-1")
    llm = FakeOpenRouterClient(
        rounds=[
            tool_round({"name": "weather", "args": {"location": "Paris"}}),
            tool_round({"name": "websearch", "args": {"query": "Paris events this weekend"}}),
            text_round("It is 18°C in Paris. ", "The jazz festival opens Saturday [1](https://events.test/jazz)."),
        ],
    )
    parallel = FakeParallelClient(
        results=[{"url": "https://events.test/jazz", "title": "Jazz", "excerpts": ["Saturday"]}]
    )
    tavily = FakeTavilyClient(images=["https://img.test/jazz.jpg"])
    controller = make_controller(tmp_path, db, llm=llm, parallel=parallel, tavily=tavily)

    await controller.prepare(chat_body("Weather in Paris and what's on?", userId="user-1"), CLIENT)
    body = await collect(controller)

    assert controller.state is State.FINISHED
    assert [r.tool_name for r in controller.session.tool_calls] == ["weather", "websearch"]
    assert controller.session.tool_calls[0].result["temperature"]["celsius"] == 18
    assert controller.session.history == [
        State.IDLE,
        State.VALIDATING,
        State.DEBITING,
        State.PROMPTING,
        State.GENERATING,
        State.TOOL_CALL,
        State.GENERATING,
        State.TOOL_CALL,
        State.GENERATING,
    ]

    lines = body.split("\n")
    assert lines[0].startswith("<!-- RETRIEVAL_CARD:")
    decoded = extract_markers(body)
    assert decoded.urls == ["https://events.test/jazz"]
    assert decoded.images == ["https://img.test/jazz.jpg"]
    assert decoded.prose.startswith("It is 18°C in Paris.")

    # Tool results go back to the engine as tool messages, in call order.
    third_call = llm.stream_calls[2]["messages"]
    assert [m["role"] for m in third_call[-4:]] == ["assistant", "tool", "assistant", "tool"]
    assert third_call[-3]["tool_call_id"] == "call_0"
    assert llm.stream_calls[0]["tools"] == ["websearch", "retrieval", "weather", "greeting"]


async def test_web_search_pipeline_prompts_with_results(tmp_path, db):
    await seed_user(db, "user-1")
    parallel = FakeParallelClient(
        results=[
            {"url": "https://python.org/3.13", "title": "Python 3.13", "excerpts": ["Free-threaded build"]},
            {"url": "https://docs.python.org/whatsnew", "title": "What's New", "content": "JIT"},
        ]
    )
    llm = FakeOpenRouterClient(rounds=[text_round("Python 3.13 adds a JIT [1](https://python.org/3.13).")])
    controller = make_controller(tmp_path, db, "web_search", llm=llm, parallel=parallel)

    await controller.prepare(chat_body("What's new in Python 3.13?", userId="user-1"), CLIENT)
    body = await collect(controller)

    prompt = llm.system_prompts[0]
    assert "[1] Python 3.13\nURL: https://python.org/3.13\nContent: Free-threaded build" in prompt
    assert "https://docs.python.org/whatsnew" in prompt
    assert "<!-- SEARCH_URLS: https://python.org/3.13|https://docs.python.org/whatsnew -->" in prompt
    assert "<!-- SEARCH_IMAGES:  -->" in prompt
    assert State.SEARCHING in controller.session.history
    assert extract_markers(body).urls == ["https://python.org/3.13", "https://docs.python.org/whatsnew"]
    assert (await db.get_user_tier("user-1"))["free_credits"] == 199


async def test_insufficient_credits_stops_before_search_and_generation(tmp_path, db):
    await seed_user(db, "user-1", premium=0)
    llm = FakeOpenRouterClient()
    parallel = FakeParallelClient()
    controller = make_controller(tmp_path, db, "web_search", llm=llm, parallel=parallel)
    with pytest.raises(QuotaError) as exc_info:
        await controller.prepare(chat_body(model=PREMIUM_MODEL, userId="user-1"), CLIENT)
    assert exc_info.value.code == "INSUFFICIENT_CREDITS"
    assert exc_info.value.status_code == 403
    assert parallel.calls == []
    assert llm.stream_calls == []
    assert controller.state is State.ERRORED


async def test_guest_chat_has_no_search_tool(tmp_path, db):
    llm = FakeOpenRouterClient(rounds=[text_round("Hi!")])
    controller = make_controller(tmp_path, db, llm=llm)
    await controller.prepare(chat_body("hello", model=GUEST_MODEL, isGuest=True), CLIENT)
    await collect(controller)
    assert llm.stream_calls[0]["tools"] == ["retrieval", "weather", "greeting"]
    assert "<!-- SEARCH_URLS: url1|url2 -->" in llm.system_prompts[0]


async def test_guest_other_model_is_tier_limited(tmp_path, db):
    controller = make_controller(tmp_path, db)
    with pytest.raises(PolicyError) as exc_info:
        await controller.prepare(chat_body("hello", model=FREE_MODEL, isGuest=True), CLIENT)
    assert exc_info.value.code == "TIER_LIMIT_EXCEEDED"


async def test_missing_engine_key_is_configuration_error(tmp_path, db):
    await seed_user(db, "user-1")
    controller = make_controller(tmp_path, db, openrouter_api_key=None)
    with pytest.raises(ConfigurationError):
        await controller.prepare(chat_body(userId="user-1"), CLIENT)
    assert (await db.get_user_tier("user-1"))["free_credits"] == 200


async def test_engine_refusal_before_stream_is_upstream_error(tmp_path, db):
    await seed_user(db, "user-1")
    llm = FakeOpenRouterClient(open_error=EngineError("HTTP 502"))
    controller = make_controller(tmp_path, db, llm=llm)
    with pytest.raises(UpstreamError) as exc_info:
        await controller.prepare(chat_body(userId="user-1"), CLIENT)
    assert exc_info.value.code == "GENERATION_FAILED"


async def test_retrieval_before_prose_fills_the_card(tmp_path, db):
    await seed_user(db, "user-1")
    llm = FakeOpenRouterClient(
        rounds=[
            tool_round({"name": "retrieval", "args": {"url": "python.org"}}),
            text_round("Python.org is the home of Python [1](https://python.org)."),
        ]
    )
    exa = FakeExaClient(
        contents={
            "title": "Welcome to Python.org",
            "text": "...",
            "summary": "Official site",
            "favicon": "https://python.org/favicon.ico",
            "image": "https://python.org/logo.png",
        }
    )
    controller = make_controller(tmp_path, db, llm=llm, exa=exa)
    await controller.prepare(chat_body("What is python.org?", userId="user-1"), CLIENT)
    body = await collect(controller)

    assert exa.calls == ["https://python.org"]
    card = extract_markers(body).card
    assert card.title == "Welcome to Python.org"
    assert card.favicon == "https://python.org/favicon.ico"
    assert card.summary == "Official site"
    assert "https://python.org" in extract_markers(body).urls


async def test_model_written_markers_are_replaced(tmp_path, db):
    await seed_user(db, "user-1")
    llm = FakeOpenRouterClient(
        rounds=[text_round("Answer.\n<!-- SEARCH_URLS: https://made.up -->\n", "<!-- SEARCH_IMAGES:  -->")]
    )
    controller = make_controller(tmp_path, db, llm=llm)
    await controller.prepare(chat_body(userId="user-1"), CLIENT)
    body = await collect(controller)
    assert body.count("<!-- SEARCH_URLS:") == 1
    assert body.count("<!-- SEARCH_IMAGES:") == 1
    assert body.count("<!-- RETRIEVAL_CARD:") == 1
    assert "https://made.up" not in body
    assert strip_markers(body) == "Answer."


async def test_tool_rounds_are_bounded(tmp_path, db):
    await seed_user(db, "user-1")
    llm = FakeOpenRouterClient(
        rounds=[
            tool_round({"name": "greeting", "args": {"greeting": "hi"}}),
            tool_round({"name": "greeting", "args": {"greeting": "hi again"}}),
        ]
    )
    controller = make_controller(tmp_path, db, llm=llm, max_tool_rounds=1)
    await controller.prepare(chat_body("hi", userId="user-1"), CLIENT)
    await collect(controller)
    assert len(controller.session.tool_calls) == 1
    assert llm.stream_calls[1]["tools"] == []
    assert controller.state is State.FINISHED


async def test_mid_stream_failure_closes_gracefully(tmp_path, db):
    await seed_user(db, "user-1")
    llm = FakeOpenRouterClient(rounds=[[TextDelta("Partial answer "), EngineError("connection reset")]])
    controller = make_controller(tmp_path, db, llm=llm)
    await controller.prepare(chat_body(userId="user-1"), CLIENT)
    body = await collect(controller)
    assert controller.state is State.ERRORED
    assert strip_markers(body) == "Partial answer"
    assert body.rstrip().endswith("<!-- SEARCH_IMAGES:  -->")
    assert llm.streams[0].closed


async def test_cancel_interrupts_in_flight_read(tmp_path, db):
    await seed_user(db, "user-1")
    llm = FakeOpenRouterClient(rounds=[text_round("Hello ", "slow ", "world")], delay_seconds=0.3)
    controller = make_controller(tmp_path, db, llm=llm)
    await controller.prepare(chat_body(userId="user-1"), CLIENT)

    chunks = []

    async def consume():
        async for chunk in controller.stream():
            chunks.append(chunk)

    task = asyncio.create_task(consume())
    while len(chunks) < 2:
        await asyncio.sleep(0.01)
    started = time.monotonic()
    controller.cancel()
    await asyncio.wait_for(task, timeout=1.0)

    assert time.monotonic() - started < 0.2
    assert controller.state is State.ABORTED
    assert chunks[1] == "Hello "
    assert not any("SEARCH_URLS" in c for c in chunks)
    assert llm.streams[0].closed


class BatchedTavilyClient(FakeTavilyClient):
    """Returns a different image batch on each call."""

    def __init__(self, batches, **kwargs):
        super().__init__(**kwargs)
        self.batches = list(batches)

    async def search(self, query, **kwargs):
        self.images = self.batches.pop(0) if self.batches else []
        return await super().search(query, **kwargs)


async def test_search_images_stay_capped_across_searches_and_retrieval(tmp_path, db):
    await seed_user(db, "user-1")
    await db.save_user_prefs("user-1", search_backend="tavily")
    first = [f"https://img.test/a{n}.png" for n in range(15)]
    second = [f"https://img.test/b{n}.png" for n in range(15)]
    tavily = BatchedTavilyClient(
        [first, second],
        results=[{"url": "https://news.test/a", "title": "A", "content": "a"}],
    )
    exa = FakeExaClient(contents={"title": "Example", "image": "https://ex.test/og.png", "favicon": "/favicon.ico"})
    llm = FakeOpenRouterClient(
        rounds=[
            tool_round({"name": "websearch", "args": {"query": "more"}}),
            tool_round({"name": "retrieval", "args": {"url": "ex.test"}}),
            text_round("Done [1](https://news.test/a)."),
        ]
    )
    controller = make_controller(tmp_path, db, "web_search", llm=llm, tavily=tavily, exa=exa)
    await controller.prepare(chat_body("news", userId="user-1"), CLIENT)
    body = await collect(controller)

    images = extract_markers(body).images
    assert images == first
    assert "https://ex.test/og.png" not in images
    assert "/favicon.ico" not in images
    assert "https://ex.test" in extract_markers(body).urls


async def test_session_images_skip_relative_urls_and_duplicates(tmp_path, db):
    controller = make_controller(tmp_path, db)
    controller.session.add_images(["/favicon.ico", "https://img.test/1.png", "https://img.test/1.png"])
    controller.session.add_images([f"https://img.test/{n}.png" for n in range(30)])
    assert controller.session.images[0] == "https://img.test/1.png"
    assert len(controller.session.images) == 15
    assert len(set(controller.session.images)) == 15


async def test_abort_while_debiting_still_records_the_debit(tmp_path, db):
    await seed_user(db, "user-1")
    store = DelayedCreditStore(delay_seconds=0.2, result=True)
    settings = make_settings(tmp_path, database_path=db.path)
    services = build_services(
        settings,
        db,
        FakeOpenRouterClient(),
        FakeTavilyClient(),
        FakeParallelClient(),
        FakeExaClient(),
        FakeWeatherClient(),
        credit_store=store,
    )
    controller = ChatController(services, "chat", request_id="req-abort")
    task = asyncio.create_task(controller.prepare(chat_body(userId="user-1"), CLIENT))
    while controller.state is not State.DEBITING:
        await asyncio.sleep(0.01)
    controller.cancel()
    with pytest.raises(GenerationAborted):
        await task

    assert controller.state is State.ABORTED
    await services.ledger.drain()
    assert store.completed == 1
    assert (await db.get_credit_transaction("req-abort"))["outcome"] == "committed"
