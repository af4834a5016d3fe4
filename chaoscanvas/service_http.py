# FILE: chaoscanvas/service_http.py
from __future__ import annotations

import asyncio
import contextlib
import json
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fastapi import Body, FastAPI, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .collaborators import CheckoutProvider, ContentGenerator, HttpCheckoutClient, StockImageGenerator
from .config import Settings, load_settings
from .contributions import ContributionManager
from .economy import BoostEngine
from .errors import ChaosError, NotConfigured
from .exporter import REQUEST_LATENCY, REQUESTS, render_latest
from .logging import RequestLogMiddleware, bind, get_logger
from .middleware import MetricsMiddleware, RequestContextMiddleware
from .models import LayerType
from .notifier import ChangeNotifier, QueueSink
from .ratelimit import WindowRateLimiter
from .schemas import (
    AnonymousUserRequest,
    BoostRequest,
    BubbleCreateRequest,
    BubbleOut,
    CanvasLayerOut,
    CanvasLayerRequest,
    CheckoutRequest,
    CheckoutResponse,
    CoinPurchaseRequest,
    CoinPurchaseResponse,
    ContributionOut,
    GenerateRequest,
    GenerateResponse,
    InvestmentOut,
    InvestmentRequest,
    MergeUsersRequest,
    TransactionOut,
    UserCreateRequest,
    UserOut,
    ViewResponse,
)
from .storage import LedgerStore, make_ledger_store

_log = get_logger("chaoscanvas.service_http")


def _client_ip(request: Request, declared: Optional[str]) -> Optional[str]:
    if declared:
        return declared
    client = request.client
    return client.host if client is not None else None


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[LedgerStore] = None,
    rate_limiter: Optional[WindowRateLimiter] = None,
    notifier: Optional[ChangeNotifier] = None,
    generator: Optional[ContentGenerator] = None,
    checkout: Optional[CheckoutProvider] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    """
    Chaos Canvas HTTP + websocket surface.

    Endpoints:
      - GET  /healthz, /readyz, /version, /metrics
      - POST /api/auth/anonymous, /api/users, /api/users/merge; GET /api/users/{id}
      - GET  /api/canvas-layers[/{id}]; POST /api/canvas-layers
      - POST /api/contributions, /api/contributions/{id}/boost, /api/contributions/{id}/view
      - GET  /api/contributions/{id}, /api/contributions/layer/{layerId},
             /api/contributions/user/{userId}
      - POST /api/investments; GET /api/investments/user/{userId},
             /api/investments/contribution/{contributionId}
      - POST /api/bubbles; GET /api/bubbles/{id}, /api/bubbles/user/{userId}
      - GET  /api/transactions/{userId}?limit=; POST /api/coins/purchase
      - POST /api/ai/generate, /api/checkout-session
      - WS   /ws  (join_layer -> joined, then new_contribution / contribution_updated)

    Every collaborator can be injected; anything left out is built from
    ``settings``. All state is owned by the returned app instance.
    """
    settings = settings or load_settings()

    if store is None:
        store = make_ledger_store(settings.database_dsn, clock=clock)
    if rate_limiter is None:
        rate_limiter = WindowRateLimiter(
            max_requests=settings.contribution_rate_max,
            window_ms=settings.contribution_rate_window_ms,
        )
    if notifier is None:
        notifier = ChangeNotifier()
    if generator is None:
        generator = StockImageGenerator(timeout_s=settings.generation_timeout_s)
    if checkout is None and settings.checkout_url:
        checkout = HttpCheckoutClient(settings.checkout_url)

    manager = ContributionManager(
        store,
        rate_limiter,
        notifier,
        daily_cap=settings.daily_contribution_cap,
        baseline_price=settings.baseline_market_price,
        now=clock,
    )
    engine = BoostEngine(
        store,
        notifier,
        author_share=settings.boost_author_share,
        price_multiplier=settings.boost_price_multiplier,
        coin_packages=settings.coin_packages,
    )

    @contextlib.asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        for res in (generator, checkout):
            close = getattr(res, "close", None)
            if callable(close):
                close()
        store.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        debug=settings.debug,
        lifespan=_lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.rate_limiter = rate_limiter
    app.state.notifier = notifier
    app.state.contributions = manager
    app.state.economy = engine

    allow_all = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else list(settings.cors_origins),
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )
    app.add_middleware(RequestLogMiddleware)
    if settings.metrics_enabled:
        app.add_middleware(MetricsMiddleware, counter=REQUESTS, histogram=REQUEST_LATENCY)
    app.add_middleware(RequestContextMiddleware)

    # -----------------------------------------------------------------------
    # Error rendering
    # -----------------------------------------------------------------------

    @app.exception_handler(ChaosError)
    async def _chaos_error(request: Request, exc: ChaosError) -> JSONResponse:
        if exc.status_code >= 500:
            _log.error("request failed: %s", exc.message, extra={"error": exc.kind})
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.kind, "message": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{loc}: {first.get('msg', 'invalid')}" if loc else str(first.get("msg", "invalid request"))
        return JSONResponse(
            status_code=400,
            content={"error": "validation_error", "message": message},
        )

    # -----------------------------------------------------------------------
    # Operational endpoints
    # -----------------------------------------------------------------------

    @app.get("/metrics")
    def metrics() -> Response:
        payload, content_type = render_latest()
        return Response(payload, media_type=content_type)

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {
            "ok": True,
            "config_hash": settings.config_hash(),
            "store": type(store).__name__,
            "regions": len(notifier.regions()),
        }

    @app.get("/readyz")
    def readyz() -> Dict[str, Any]:
        return {"ready": True, "checkout": checkout is not None}

    @app.get("/version")
    def version() -> Dict[str, Any]:
        return {"version": settings.version, "env": settings.env, "app": settings.app_name}

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    @app.post("/api/auth/anonymous", response_model=UserOut)
    def create_anonymous_user(req: AnonymousUserRequest) -> UserOut:
        user = store.create_user(
            is_anonymous=True,
            locale=req.locale,
            currency=req.currency,
            country_code=req.country_code,
            starting_coins=settings.starting_coins,
        )
        _log.info("user.anonymous", extra={"user_id": user.id})
        return UserOut.from_record(user)

    @app.post("/api/users", response_model=UserOut)
    def create_user(req: UserCreateRequest) -> UserOut:
        user = store.create_user(
            username=req.username,
            email=req.email,
            is_anonymous=False,
            locale=req.locale,
            currency=req.currency,
            country_code=req.country_code,
            starting_coins=settings.starting_coins,
        )
        return UserOut.from_record(user)

    @app.post("/api/users/merge", response_model=UserOut)
    def merge_users(req: MergeUsersRequest) -> UserOut:
        user = store.merge_users(req.anonymous_user_id, req.registered_user_id)
        _log.info(
            "user.merged",
            extra={"user_id": user.id, "anonymous_user_id": req.anonymous_user_id},
        )
        return UserOut.from_record(user)

    @app.get("/api/users/{user_id}", response_model=UserOut)
    def get_user(user_id: str) -> UserOut:
        return UserOut.from_record(store.get_user(user_id))

    # -----------------------------------------------------------------------
    # Canvas layers
    # -----------------------------------------------------------------------

    @app.get("/api/canvas-layers", response_model=List[CanvasLayerOut])
    def list_layers(
        layer_type: Optional[LayerType] = Query(None, alias="type"),
        region_code: Optional[str] = Query(None, alias="regionCode", max_length=16),
    ) -> List[CanvasLayerOut]:
        layers = store.list_layers(layer_type=layer_type, region_code=region_code)
        return [CanvasLayerOut.from_record(la) for la in layers]

    @app.get("/api/canvas-layers/{layer_id}", response_model=CanvasLayerOut)
    def get_layer(layer_id: str) -> CanvasLayerOut:
        return CanvasLayerOut.from_record(store.get_layer(layer_id))

    @app.post("/api/canvas-layers", response_model=CanvasLayerOut)
    def create_layer(req: CanvasLayerRequest) -> CanvasLayerOut:
        layer = store.create_layer(
            layer_type=req.layer_type,
            name=req.name,
            zoom_level=req.zoom_level,
            region_code=req.region_code,
            seed_prompt=req.seed_prompt,
        )
        return CanvasLayerOut.from_record(layer)

    # -----------------------------------------------------------------------
    # Contributions
    # -----------------------------------------------------------------------

    @app.post("/api/contributions", response_model=ContributionOut)
    def create_contribution(request: Request, payload: Dict[str, Any] = Body(...)) -> ContributionOut:
        # raw body: the limiter runs before the payload is validated
        user_id = payload.get("userId")
        if isinstance(user_id, str):
            bind(user_id=user_id)
        declared_ip = payload.get("ipAddress")
        contribution = manager.create_contribution(
            payload,
            ip_address=_client_ip(request, declared_ip if isinstance(declared_ip, str) else None),
        )
        return ContributionOut.from_record(contribution)

    @app.get("/api/contributions/layer/{layer_id}", response_model=List[ContributionOut])
    def contributions_for_layer(layer_id: str) -> List[ContributionOut]:
        return [ContributionOut.from_record(c) for c in manager.list_for_layer(layer_id)]

    @app.get("/api/contributions/user/{user_id}", response_model=List[ContributionOut])
    def contributions_for_user(user_id: str) -> List[ContributionOut]:
        return [ContributionOut.from_record(c) for c in manager.list_for_user(user_id)]

    @app.get("/api/contributions/{contribution_id}", response_model=ContributionOut)
    def get_contribution(contribution_id: str) -> ContributionOut:
        return ContributionOut.from_record(manager.get_contribution(contribution_id))

    @app.post("/api/contributions/{contribution_id}/boost", response_model=ContributionOut)
    def boost_contribution(contribution_id: str, req: BoostRequest) -> ContributionOut:
        bind(user_id=req.user_id)
        updated = engine.boost(contribution_id, req.user_id, req.amount)
        return ContributionOut.from_record(updated)

    @app.post("/api/contributions/{contribution_id}/view", response_model=ViewResponse)
    def record_view(contribution_id: str) -> ViewResponse:
        return ViewResponse(view_count=manager.record_view(contribution_id))

    # -----------------------------------------------------------------------
    # Investments / coins
    # -----------------------------------------------------------------------

    @app.post("/api/investments", response_model=InvestmentOut)
    def create_investment(req: InvestmentRequest) -> InvestmentOut:
        bind(user_id=req.user_id)
        investment = engine.invest(req.contribution_id, req.user_id, req.amount)
        return InvestmentOut.from_record(investment)

    @app.get("/api/investments/user/{user_id}", response_model=List[InvestmentOut])
    def investments_for_user(user_id: str) -> List[InvestmentOut]:
        return [InvestmentOut.from_record(i) for i in store.list_investments_by_user(user_id)]

    @app.get("/api/investments/contribution/{contribution_id}", response_model=List[InvestmentOut])
    def investments_for_contribution(contribution_id: str) -> List[InvestmentOut]:
        investments = store.list_investments_by_contribution(contribution_id)
        return [InvestmentOut.from_record(i) for i in investments]

    @app.get("/api/transactions/{user_id}", response_model=List[TransactionOut])
    def list_transactions(
        user_id: str,
        limit: int = Query(settings.transactions_default_limit, ge=1),
    ) -> List[TransactionOut]:
        limit = min(limit, settings.transactions_max_limit)
        return [TransactionOut.from_record(t) for t in store.list_transactions(user_id, limit)]

    @app.post("/api/coins/purchase", response_model=CoinPurchaseResponse)
    def purchase_coins(req: CoinPurchaseRequest) -> CoinPurchaseResponse:
        bind(user_id=req.user_id)
        receipt = engine.purchase_coins(req.user_id, req.package_id)
        return CoinPurchaseResponse(success=True, new_balance=receipt.new_balance)

    # -----------------------------------------------------------------------
    # Chaos bubbles
    # -----------------------------------------------------------------------

    @app.get("/api/bubbles/user/{user_id}", response_model=List[BubbleOut])
    def bubbles_for_user(user_id: str) -> List[BubbleOut]:
        return [BubbleOut.from_record(b) for b in store.list_bubbles_by_owner(user_id)]

    @app.get("/api/bubbles/{bubble_id}", response_model=BubbleOut)
    def get_bubble(bubble_id: str) -> BubbleOut:
        return BubbleOut.from_record(store.get_bubble(bubble_id))

    @app.post("/api/bubbles", response_model=BubbleOut)
    def create_bubble(req: BubbleCreateRequest) -> BubbleOut:
        bind(user_id=req.owner_id)
        bubble = store.create_bubble(
            owner_id=req.owner_id,
            name=req.name,
            is_private=req.is_private,
            invited_user_ids=req.invited_user_ids,
            theme_data=req.theme_data,
            layer_id=req.layer_id,
        )
        _log.info("bubble.created", extra={"user_id": bubble.owner_id, "bubble_id": bubble.id})
        return BubbleOut.from_record(bubble)

    # -----------------------------------------------------------------------
    # Collaborators
    # -----------------------------------------------------------------------

    @app.post("/api/ai/generate", response_model=GenerateResponse)
    def generate(req: GenerateRequest) -> GenerateResponse:
        out = generator.generate(req.prompt, req.style, req.user_id)
        return GenerateResponse(url=out.url, prompt=out.prompt, style=out.style, source=out.source)

    @app.post("/api/checkout-session", response_model=CheckoutResponse)
    def checkout_session(req: CheckoutRequest) -> CheckoutResponse:
        if checkout is None:
            raise NotConfigured("checkout is not configured")
        session = checkout.create_session(req.price_id, req.user_id)
        return CheckoutResponse(session_id=session.session_id, session_url=session.session_url)

    # -----------------------------------------------------------------------
    # Real-time channel
    # -----------------------------------------------------------------------

    @app.websocket("/ws")
    async def ws_channel(websocket: WebSocket) -> None:
        await websocket.accept()
        sink = QueueSink(asyncio.get_running_loop(), maxsize=settings.websocket_queue_size)

        async def _pump() -> None:
            while True:
                event = await sink.next_event()
                await websocket.send_json(event)

        pump = asyncio.create_task(_pump())
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    _log.warning("ws: dropping binary frame")
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    _log.warning("ws: dropping malformed message")
                    continue
                if not isinstance(message, dict):
                    continue
                if message.get("type") == "join_layer":
                    layer_id = message.get("layerId")
                    if not isinstance(layer_id, str) or not layer_id:
                        continue
                    notifier.join(sink, layer_id)
                    sink.send({"type": "joined", "layerId": layer_id})
                # any other client message is ignored; the channel is server -> client
        except WebSocketDisconnect:
            pass
        finally:
            sink.close()
            notifier.leave(sink)
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                try:
                    await pump
                except Exception:
                    _log.warning("ws: send loop stopped early", exc_info=True)

    return app


__all__ = ["create_app"]
