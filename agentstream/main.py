import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import StreamingResponse

from .budget import get_affordable_steps
from .chat_service import ChatRejected, ChatService
from .config import CONFIG_PATH, MASK, AppSettings, load_settings, save_settings
from .continuation_store import ContinuationStore
from .db import Database
from .deadline import DeadlineLimits
from .engine import AgentEngine
from .ledger import CreditLedger
from .llm import GatewayClient
from .pricing import list_models
from .project_store import ProjectStore
from .schemas import ChatRequest


router = APIRouter()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_ledger(request: Request) -> CreditLedger:
    return request.app.state.ledger


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat_service


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-ID header")
    return user_id


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    service: ChatService = Depends(get_chat_service),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Settings body must be an object.")
    current = settings.model_dump()
    for key in ("gateway_endpoint", "fallback_endpoint"):
        endpoint = body.get(key)
        if isinstance(endpoint, dict):
            # The UI echoes masked keys back; keep the stored secret.
            if endpoint.get("api_key") in (None, MASK):
                endpoint = {**endpoint, "api_key": current[key]["api_key"]}
            body[key] = {**current[key], **endpoint}
    new_settings = AppSettings(**{**current, **body})
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    service.settings = new_settings
    service.engine.temperature = new_settings.temperature
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/models")
async def get_models(settings: AppSettings = Depends(get_settings)):
    return {
        "default_model": settings.default_model,
        "fallback_model": settings.fallback_model_id,
        "models": list_models(settings.fallback_model_id),
    }


@router.get("/api/wallet")
async def get_wallet(
    model: Optional[str] = None,
    user_id: str = Depends(get_user_id),
    ledger: CreditLedger = Depends(get_ledger),
    settings: AppSettings = Depends(get_settings),
):
    wallet = await ledger.get_wallet(user_id)
    if not wallet:
        raise HTTPException(status_code=404, detail="Wallet not found")
    target_model = model or settings.default_model
    budget = get_affordable_steps(wallet.current_plan, target_model, wallet.credits_balance)
    limit = await ledger.check_monthly_request_limit(user_id)
    return {
        "wallet": {**wallet.model_dump(), "can_purchase_credits": wallet.can_purchase_credits},
        "model": target_model,
        "step_budget": budget.model_dump(),
        "requests": limit,
    }


@router.get("/api/usage")
async def get_usage(
    limit: int = 20,
    user_id: str = Depends(get_user_id),
    ledger: CreditLedger = Depends(get_ledger),
):
    stats = await ledger.get_usage_stats(user_id)
    recent = await ledger.list_entries(user_id, limit=max(1, min(limit, 200)))
    return {"stats": stats, "recent": recent}


@router.post("/api/chat")
async def chat(
    payload: ChatRequest,
    user_id: str = Depends(get_user_id),
    service: ChatService = Depends(get_chat_service),
):
    try:
        session = await service.prepare(payload, user_id)
    except ChatRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)
    stream = service.start(session)

    async def event_generator():
        try:
            async for event in stream.events():
                yield sse_format(event)
        finally:
            stream.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"X-Request-ID": session.request_id, "Cache-Control": "no-cache"},
    )


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    gateway_client: Optional[Any] = None,
    project_store: Optional[ProjectStore] = None,
    limits: Optional[DeadlineLimits] = None,
    clock: Optional[Callable[[], float]] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            tasks = list(app.state.chat_tasks.values())
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            await app.state.gateway_client.close()

    app = FastAPI(title="AgentStream Chat Backend", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.gateway_client = gateway_client or GatewayClient()
    app.state.project_store = project_store or ProjectStore()
    app.state.ledger = CreditLedger(app.state.db)
    app.state.continuations = ContinuationStore(app.state.db.path)
    app.state.chat_tasks = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.state.chat_service = ChatService(
        settings=settings,
        ledger=app.state.ledger,
        continuations=app.state.continuations,
        project_store=app.state.project_store,
        engine=AgentEngine(app.state.gateway_client, temperature=settings.temperature),
        tasks=app.state.chat_tasks,
        limits=limits,
        clock=clock,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("AGENTSTREAM_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "agentstream.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
