from __future__ import annotations
import asyncio
import json
import logging
import os
import re
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path as FsPath
from typing import Optional, List, Dict, Any, Literal, Mapping

from fastapi import (
    FastAPI,
    APIRouter,
    HTTPException,
    Depends,
    Header,
    Query,
    Path,
    Request as FastAPIRequest,
)
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from app_config import AppConfig, load_config, load_commands, load_messages
from catalog_resolver import CatalogResolver
from command_router import CommandRouter, ChatIdentity
from queue_engine import QueueEngine, QueuedRequest
from snapshot_store import SnapshotStore
from support_events import (
    EventHub,
    LedgerEventSink,
    SubscriptionEvent,
    BitsEvent,
    MembershipEvent,
    SuperChatEvent,
)
from token_ledger import TokenLedger, VIPAccount, RATE_FIELDS

API_VERSION = "0.1.0"

DEFAULT_CORS_ALLOW_ORIGIN_REGEX = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


# =====================================
# Change / log fan-out
# =====================================
class _Broker:
    __slots__ = ("topic", "listeners")

    def __init__(self, topic: str) -> None:
        self.topic = topic
        self.listeners: set[asyncio.Queue[str]] = set()

    def subscribe(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=1000)
        self.listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self.listeners.discard(queue)

    def put_nowait(self, message: str) -> None:
        if not self.listeners:
            return
        stale: list[asyncio.Queue[str]] = []
        for queue in list(self.listeners):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                stale.append(queue)
                logger.warning("%s notification dropped for a slow listener", self.topic)
        for queue in stale:
            self.listeners.discard(queue)

    def has_listeners(self) -> bool:
        return bool(self.listeners)


@dataclass
class Services:
    config: AppConfig
    store: SnapshotStore
    queue: QueueEngine
    ledger: TokenLedger
    resolver: CatalogResolver
    router: CommandRouter
    events: EventHub
    queue_broker: _Broker
    log_broker: _Broker

    def publish_queue_changed(self) -> None:
        self.queue_broker.put_nowait("changed")

    def broadcast_bot_log(self, event: Dict[str, Any]) -> None:
        self.log_broker.put_nowait(json.dumps(event, default=_json_default))


def build_services(
    config: Optional[AppConfig] = None,
    *,
    store: Optional[SnapshotStore] = None,
    resolver: Optional[CatalogResolver] = None,
) -> Services:
    config = config or load_config()
    if store is None:
        if config.db_url.startswith("sqlite:///") and ":memory:" not in config.db_url:
            FsPath(config.db_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        store = SnapshotStore(config.db_url)
    queue_broker = _Broker("queue")
    queue = QueueEngine(
        store,
        max_requests_per_user=config.max_requests_per_user,
        cooldown_seconds=config.request_cooldown_seconds,
        on_change=lambda: queue_broker.put_nowait("changed"),
    )
    ledger = TokenLedger(store)
    resolver = resolver or CatalogResolver(
        config.catalog_username,
        config.catalog_password,
        base_url=config.catalog_base_url,
        api_url=config.catalog_api_url,
        timeout=config.catalog_timeout_seconds,
    )
    events = EventHub()
    events.subscribe(LedgerEventSink(ledger))
    router = CommandRouter(
        queue,
        resolver,
        ledger,
        commands=load_commands(config.commands_file),
        messages=load_messages(config.messages_file),
        catalog_timeout=config.catalog_timeout_seconds,
        vip_cost=config.vip_request_cost,
        public_url=config.public_base_url,
    )
    return Services(
        config=config,
        store=store,
        queue=queue,
        ledger=ledger,
        resolver=resolver,
        router=router,
        events=events,
        queue_broker=queue_broker,
        log_broker=_Broker("bot log"),
    )


# =====================================
# CORS
# =====================================
def _parse_cors_origins(raw: str) -> list[str]:
    """Return origins from a comma and/or whitespace separated value.

    Trailing slashes are dropped because browsers never send them in the
    ``Origin`` header.
    """

    if not raw:
        return []
    origins: list[str] = []
    for part in re.split(r"[\s,]+", raw):
        origin = part.strip().rstrip("/")
        if origin:
            origins.append(origin)
    return origins


def _cors_settings_from_env(env: Mapping[str, str]) -> tuple[list[str], Optional[str]]:
    explicit: list[str] = []
    fragments: list[str] = []
    for origin in _parse_cors_origins(env.get("CORS_ALLOW_ORIGINS", "")):
        if "*" in origin:
            # ``https://*.example.com`` matches one host label, not the bare domain.
            fragments.append(re.escape(origin).replace(r"\*", r"[^/]+"))
        else:
            explicit.append(origin)

    configured_regex = env.get("CORS_ALLOW_ORIGIN_REGEX", "")
    if configured_regex:
        fragments.append(configured_regex)
    elif not explicit and not fragments:
        fragments.append(DEFAULT_CORS_ALLOW_ORIGIN_REGEX)

    allow_origin_regex = f"^(?:{'|'.join(fragments)})$" if fragments else None
    return explicit, allow_origin_regex


# =====================================
# Schemas
# =====================================
class CallerIn(BaseModel):
    user_id: str
    display_name: str
    platform: Literal["twitch", "youtube"] = "twitch"
    is_moderator: bool = False
    is_broadcaster: bool = False


class ChatDispatchIn(BaseModel):
    text: str
    caller: CallerIn


class ChatDispatchOut(BaseModel):
    reply: Optional[str] = None


class SongOut(BaseModel):
    artist: str
    title: str
    album: Optional[str] = None
    catalog_url: Optional[str] = None


class RequestOut(BaseModel):
    id: str
    song: SongOut
    requester_id: str
    requester_display_name: str
    platform: str
    submitted_at: datetime
    status: str
    priority: bool
    finished_at: Optional[datetime] = None


class DisplayStateOut(BaseModel):
    pending: List[RequestOut]
    now_playing: Optional[RequestOut] = None


class QueueActionOut(BaseModel):
    request: Optional[RequestOut] = None
    now_playing: Optional[RequestOut] = None


class ClearOut(BaseModel):
    cleared: int


class ReorderIn(BaseModel):
    from_index: int = Field(ge=0)
    to_index: int = Field(ge=0)


class SuccessOut(BaseModel):
    success: bool


class TransactionOut(BaseModel):
    timestamp: datetime
    kind: str
    amount: int
    description: str


class AccountOut(BaseModel):
    platform: str
    platform_user_id: str
    display_name: str
    tokens: int
    total_earned: int
    last_updated: datetime
    placeholder: bool = False
    history: List[TransactionOut] = []


class RatesModel(BaseModel):
    twitch_tier1: Optional[int] = Field(default=None, ge=0)
    twitch_tier2: Optional[int] = Field(default=None, ge=0)
    twitch_tier3: Optional[int] = Field(default=None, ge=0)
    twitch_prime: Optional[int] = Field(default=None, ge=0)
    bits_threshold: Optional[int] = Field(default=None, gt=0)
    tokens_per_bits_threshold: Optional[int] = Field(default=None, ge=0)
    youtube_member: Optional[int] = Field(default=None, ge=0)
    super_chat_threshold: Optional[float] = Field(default=None, gt=0)
    tokens_per_super_chat: Optional[int] = Field(default=None, ge=0)


class AwardIn(BaseModel):
    amount: int = Field(gt=0)
    platform: Literal["twitch", "youtube"] = "twitch"
    user_id: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None


class BalanceIn(BaseModel):
    tokens: int = Field(ge=0)
    platform: Literal["twitch", "youtube"] = "twitch"
    user_id: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None


class ImportOut(BaseModel):
    imported: int


class SubscriptionEventIn(BaseModel):
    user_id: str
    display_name: str
    tier: str = "1000"
    months: Optional[int] = None
    count: int = Field(default=1, ge=1)


class BitsEventIn(BaseModel):
    user_id: str
    display_name: str
    bits: int = Field(ge=1)


class MembershipEventIn(BaseModel):
    channel_id: str
    display_name: str
    level_name: Optional[str] = None


class SuperChatEventIn(BaseModel):
    channel_id: str
    display_name: str
    amount_micros: int = Field(ge=0)
    currency: str = "USD"


class EventAckOut(BaseModel):
    credited: bool
    account: Optional[AccountOut] = None
    announcement: Optional[str] = None


class BotLogEventIn(BaseModel):
    level: str = "info"
    message: str
    source: str = "bot"
    timestamp: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class HealthOut(BaseModel):
    status: str
    version: str
    catalog_session: str
    queue_length: int


def _request_out(req: Optional[QueuedRequest]) -> Optional[RequestOut]:
    return RequestOut.model_validate(req.to_dict()) if req else None


def _account_out(account: Optional[VIPAccount]) -> Optional[AccountOut]:
    return AccountOut.model_validate(account.to_dict()) if account else None


# =====================================
# Dependencies
# =====================================
def get_services(request: FastAPIRequest) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return services


def require_token(
    x_admin_token: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    expected = services.config.admin_token
    if x_admin_token and secrets.compare_digest(x_admin_token, expected):
        return
    raise HTTPException(status_code=401, detail="invalid admin token")


router = APIRouter()


# =====================================
# System / display
# =====================================
@router.get("/system/health", response_model=HealthOut)
def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "version": API_VERSION,
        "catalog_session": services.resolver.session_state,
        "queue_length": services.queue.queue_length(),
    }


@router.get("/queue", response_model=DisplayStateOut)
async def get_queue(services: Services = Depends(get_services)):
    return services.queue.display_state().to_dict()


@router.get("/queue/history", response_model=List[RequestOut])
async def get_queue_history(
    limit: int = Query(50, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    return [r.to_dict() for r in reversed(services.queue.history(limit))]


@router.get("/queue/stream")
async def stream_queue(services: Services = Depends(get_services)):
    """Push a tick to overlays whenever the queue changes."""
    q = services.queue_broker.subscribe()

    async def gen():
        try:
            yield {"event": "queue", "data": "init"}
            while True:
                msg = await q.get()
                yield {"event": "queue", "data": msg}
        finally:
            services.queue_broker.unsubscribe(q)

    return EventSourceResponse(
        gen(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


# =====================================
# Chat transport entry point
# =====================================
@router.post("/chat/dispatch", response_model=ChatDispatchOut, dependencies=[Depends(require_token)])
async def chat_dispatch(payload: ChatDispatchIn, services: Services = Depends(get_services)):
    caller = ChatIdentity(**payload.caller.model_dump())
    reply = await services.router.process_message(payload.text, caller)
    return {"reply": reply}


# =====================================
# Platform support events
# =====================================
def _event_ack(services: Services, account: Optional[VIPAccount], message_key: str, **values) -> Dict[str, Any]:
    if account is None:
        return {"credited": False, "account": None, "announcement": None}
    template = services.router.messages.get(message_key)
    announcement = template.format(user=account.display_name, tokens=account.tokens, **values) if template else None
    return {"credited": True, "account": _account_out(account), "announcement": announcement}


@router.post("/events/subscription", response_model=EventAckOut, dependencies=[Depends(require_token)])
async def subscription_event(payload: SubscriptionEventIn, services: Services = Depends(get_services)):
    account = services.events.publish_subscription(SubscriptionEvent(**payload.model_dump()))
    return _event_ack(services, account, "award_subscription")


@router.post("/events/bits", response_model=EventAckOut, dependencies=[Depends(require_token)])
async def bits_event(payload: BitsEventIn, services: Services = Depends(get_services)):
    account = services.events.publish_bits(BitsEvent(**payload.model_dump()))
    return _event_ack(services, account, "award_bits", bits=payload.bits)


@router.post("/events/membership", response_model=EventAckOut, dependencies=[Depends(require_token)])
async def membership_event(payload: MembershipEventIn, services: Services = Depends(get_services)):
    account = services.events.publish_membership(MembershipEvent(**payload.model_dump()))
    return _event_ack(services, account, "award_membership")


@router.post("/events/superchat", response_model=EventAckOut, dependencies=[Depends(require_token)])
async def superchat_event(payload: SuperChatEventIn, services: Services = Depends(get_services)):
    account = services.events.publish_super_chat(SuperChatEvent(**payload.model_dump()))
    return _event_ack(services, account, "award_superchat")


# =====================================
# Moderator queue operations
# =====================================
@router.post("/queue/next", response_model=QueueActionOut, dependencies=[Depends(require_token)])
async def queue_next(services: Services = Depends(get_services)):
    done, promoted = services.queue.advance()
    return {"request": _request_out(done), "now_playing": _request_out(promoted)}


@router.post("/queue/played", response_model=QueueActionOut, dependencies=[Depends(require_token)])
async def queue_played(services: Services = Depends(get_services)):
    done = services.queue.complete_currently_playing()
    return {"request": _request_out(done), "now_playing": None}


@router.post("/queue/skip", response_model=QueueActionOut, dependencies=[Depends(require_token)])
async def queue_skip(services: Services = Depends(get_services)):
    skipped = services.queue.skip_current()
    return {"request": _request_out(skipped), "now_playing": _request_out(services.queue.now_playing())}


@router.post("/queue/clear", response_model=ClearOut, dependencies=[Depends(require_token)])
async def queue_clear(services: Services = Depends(get_services)):
    return {"cleared": services.queue.clear_all()}


@router.post("/queue/reorder", response_model=SuccessOut, dependencies=[Depends(require_token)])
async def queue_reorder(payload: ReorderIn, services: Services = Depends(get_services)):
    return {"success": services.queue.reorder(payload.from_index, payload.to_index)}


@router.delete("/queue/pending/{index}", response_model=QueueActionOut, dependencies=[Depends(require_token)])
async def queue_remove_at(index: int = Path(ge=0), services: Services = Depends(get_services)):
    removed = services.queue.remove_pending_at_index(index)
    return {"request": _request_out(removed), "now_playing": None}


# =====================================
# Ledger administration
# =====================================
@router.get("/vip/users", response_model=List[AccountOut], dependencies=[Depends(require_token)])
def list_vip_users(search: Optional[str] = None, services: Services = Depends(get_services)):
    return [a.to_dict() for a in services.ledger.search_accounts(search or "")]


@router.get("/vip/users/{platform}/{user_id}", response_model=AccountOut, dependencies=[Depends(require_token)])
def get_vip_user(
    platform: Literal["twitch", "youtube"],
    user_id: str,
    services: Services = Depends(get_services),
):
    account = services.ledger.get_account(platform, user_id)
    if not account:
        raise HTTPException(status_code=404, detail="account not found")
    return account.to_dict()


@router.get("/vip/rates", response_model=RatesModel, dependencies=[Depends(require_token)])
def get_rates(services: Services = Depends(get_services)):
    return services.ledger.get_rates().to_dict()


@router.put("/vip/rates", response_model=RatesModel, dependencies=[Depends(require_token)])
def update_rates(payload: RatesModel, services: Services = Depends(get_services)):
    changes = {k: v for k, v in payload.model_dump().items() if v is not None and k in RATE_FIELDS}
    try:
        rates = services.ledger.set_rates(**changes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return rates.to_dict()


@router.post("/vip/award", response_model=AccountOut, dependencies=[Depends(require_token)])
def award_tokens(payload: AwardIn, services: Services = Depends(get_services)):
    ledger = services.ledger
    try:
        if payload.user_id:
            account = ledger.award(
                payload.platform,
                payload.user_id,
                payload.display_name or payload.username or payload.user_id,
                payload.amount,
                "manual",
                payload.description or "Manual award",
            )
        elif payload.username:
            account = ledger.award_by_username(
                payload.username,
                payload.amount,
                payload.platform,
                payload.description or "Manual award",
            )
        else:
            raise HTTPException(status_code=400, detail="user_id or username required")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return account.to_dict()


@router.put("/vip/balance", response_model=AccountOut, dependencies=[Depends(require_token)])
def set_balance(payload: BalanceIn, services: Services = Depends(get_services)):
    ledger = services.ledger
    try:
        if payload.user_id:
            account = ledger.set_balance(
                payload.platform,
                payload.user_id,
                payload.display_name or payload.username or payload.user_id,
                payload.tokens,
            )
        elif payload.username:
            account = ledger.set_balance_by_username(payload.username, payload.tokens, payload.platform)
        else:
            raise HTTPException(status_code=400, detail="user_id or username required")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return account.to_dict()


@router.get("/vip/export", dependencies=[Depends(require_token)])
def export_ledger(services: Services = Depends(get_services)):
    return services.ledger.export_data()


@router.post("/vip/import", response_model=ImportOut, dependencies=[Depends(require_token)])
def import_ledger(payload: Dict[str, Any], services: Services = Depends(get_services)):
    if not isinstance(payload.get("users", {}), dict):
        raise HTTPException(status_code=400, detail="users must be an object")
    try:
        imported = services.ledger.import_data(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"imported": imported}


# =====================================
# Bot console relay
# =====================================
@router.post("/bot/logs", response_model=SuccessOut, dependencies=[Depends(require_token)])
async def push_bot_log(event: BotLogEventIn, services: Services = Depends(get_services)):
    services.broadcast_bot_log(
        {
            "type": "log",
            "level": event.level,
            "message": event.message,
            "source": event.source,
            "timestamp": event.timestamp or datetime.utcnow(),
            "metadata": event.metadata or {},
        }
    )
    return {"success": True}


@router.get("/bot/logs/stream", dependencies=[Depends(require_token)])
async def stream_bot_logs(services: Services = Depends(get_services)):
    queue = services.log_broker.subscribe()

    async def event_stream():
        try:
            yield {"event": "log", "data": json.dumps({"type": "ready"})}
            while True:
                msg = await queue.get()
                yield {"event": "log", "data": msg}
        finally:
            services.log_broker.unsubscribe(queue)

    return EventSourceResponse(
        event_stream(),
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


# =====================================
# App
# =====================================
async def _catalog_login(resolver: CatalogResolver) -> None:
    try:
        await resolver.login()
    except Exception:
        logger.exception("catalog login crashed")


def create_app(services: Optional[Services] = None, env: Optional[Mapping[str, str]] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services()
        svc: Services = app.state.services
        login_task = None
        if svc.resolver.has_credentials:
            login_task = asyncio.create_task(_catalog_login(svc.resolver))
        try:
            yield
        finally:
            if login_task and not login_task.done():
                login_task.cancel()
            await svc.resolver.close()
            svc.store.close()

    app = FastAPI(title="Song Request API", version=API_VERSION, lifespan=lifespan)
    app.state.services = services
    allow_origins, allow_origin_regex = _cors_settings_from_env(os.environ if env is None else env)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_origin_regex=allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "7070")))


if __name__ == "__main__":
    main()
