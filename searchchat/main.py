import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import AppSettings, load_settings
from .controller import ChatController, Services
from .db import Database
from .errors import ChatPipelineError, ValidationError
from .exa import ExaClient
from .gate import RequestGate
from .ledger import CreditLedgerGuard
from .llm import OpenRouterClient
from .openweather import OpenWeatherClient
from .parallel import ParallelClient
from .schemas import Capability, ClientInfo
from .tavily import TavilyClient
from .tiers import CreditStore, TierAuthority

logger = logging.getLogger("uvicorn.error")

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        headers=dict(request.headers),
        host=request.client.host if request.client else None,
    )


async def read_json_body(request: Request):
    raw = await request.body()
    try:
        return json.loads(raw or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Request body must be valid JSON") from exc


async def run_pipeline(request: Request, services: Services, capability: Capability) -> StreamingResponse:
    body = await read_json_body(request)
    controller = ChatController(services, capability)
    await controller.prepare(body, client_info(request))
    return StreamingResponse(
        controller.stream(),
        media_type=STREAM_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Request-Id": controller.session.request_id},
    )


router = APIRouter()


@router.get("/health")
async def health(settings: AppSettings = Depends(get_settings)):
    return {
        "ok": True,
        "search_backend": settings.default_search_backend,
        "models": sorted(name for name, spec in settings.models.items() if spec.enabled),
    }


@router.post("/api/web-search")
async def web_search(request: Request, services: Services = Depends(get_services)):
    return await run_pipeline(request, services, "web_search")


@router.post("/api/chat")
async def chat(request: Request, services: Services = Depends(get_services)):
    return await run_pipeline(request, services, "chat")


@router.get("/api/guest-usage")
async def guest_usage(request: Request, services: Services = Depends(get_services)):
    return await services.gate.guest_usage(client_info(request))


async def pipeline_error_handler(request: Request, exc: ChatPipelineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=exc.headers or None)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal Server Error"}, status_code=500)


def build_services(
    settings: AppSettings,
    db: Database,
    llm_client: OpenRouterClient,
    tavily_client: TavilyClient,
    parallel_client: ParallelClient,
    exa_client: ExaClient,
    weather_client: OpenWeatherClient,
    credit_store: Optional[CreditStore] = None,
) -> Services:
    store = credit_store or CreditStore(settings, db)
    return Services(
        settings=settings,
        db=db,
        gate=RequestGate(settings, db),
        tiers=TierAuthority(settings, db),
        ledger=CreditLedgerGuard(store, db, timeout_s=settings.credit_timeout_s),
        llm=llm_client,
        tavily=tavily_client,
        parallel=parallel_client,
        exa=exa_client,
        weather=weather_client,
    )


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[OpenRouterClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    parallel_client: Optional[ParallelClient] = None,
    exa_client: Optional[ExaClient] = None,
    weather_client: Optional[OpenWeatherClient] = None,
    credit_store: Optional[CreditStore] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        logger.info("SearchChat starting with %s", app.state.settings.to_safe_dict())
        try:
            yield
        finally:
            services: Services = app.state.services
            await services.ledger.drain()
            await services.llm.close()
            await services.tavily.close()
            await services.parallel.close()
            await services.exa.close()
            await services.weather.close()

    app = FastAPI(title="SearchChat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.services = build_services(
        settings,
        app.state.db,
        llm_client or OpenRouterClient(
            settings.openrouter_base_url,
            api_key=settings.openrouter_api_key,
            max_output_tokens=settings.max_output_tokens,
        ),
        tavily_client or TavilyClient(settings.tavily_api_key),
        parallel_client or ParallelClient(settings.parallel_api_key),
        exa_client or ExaClient(settings.exa_api_key),
        weather_client or OpenWeatherClient(settings.openweather_api_key),
        credit_store=credit_store,
    )
    app.add_exception_handler(ChatPipelineError, pipeline_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("SEARCHCHAT_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "searchchat.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
