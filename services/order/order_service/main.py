"""
Order Service: FastAPI エントリーポイント

注文ライフサイクルの HTTP 境界。注文受付とクエリは同期で応答する。
決済結果と配送状況は Redis Streams コンシューマのほか、ここにも
他サービスが送るのと同じ JSON エンベロープで届けられる。

ストア、エミッタ、任意のストリームコンシューマは lifespan で
``Settings`` から 1 度だけ組み立て、停止までアプリが保持する。
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .adapters import describe
from .config import Settings
from .consumer import run_consumer
from .coordinator import OrderCoordinator
from .emitter import EventEmitter, build_emitter
from .errors import OrderServiceError
from .events import CreditCardValidated, ShipmentStatusUpdate
from .log import configure_logging
from .models import Card, NewOrder, Order, OrderStatusView
from .store import OrderStore, build_store

logger = logging.getLogger(__name__)

router = APIRouter()


def get_coordinator(request: Request) -> OrderCoordinator:
    return request.app.state.coordinator


# ── Request Models ───────────────────────────────


class RetryPaymentRequest(BaseModel):
    card: Card


# ── Command Endpoints (状態を変える) ─────────────


@router.post("/order/add/{userid}", response_model=OrderStatusView)
async def add_order(
    userid: str,
    req: NewOrder,
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    """新規注文を記録し、決済を依頼する。"""
    return await coordinator.place_order(req.model_copy(update={"user_id": userid}))


@router.post("/order/payment", response_model=Order, response_model_exclude_none=True)
async def payment_outcome(
    event: CreditCardValidated,
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    """決済サービスからのコールバック (payment_responses ストリームと同じエンベロープ)"""
    return await coordinator.payment_validated(event)


@router.post("/order/shipment", response_model=Order, response_model_exclude_none=True)
async def update_shipment_status(
    event: ShipmentStatusUpdate,
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    """配送サービスからのコールバック (shipment_updates ストリームと同じエンベロープ)"""
    return await coordinator.shipment_updated(event)


@router.post("/order/{order_id}/payment/retry", response_model=OrderStatusView)
async def retry_payment(
    order_id: str,
    req: RetryPaymentRequest,
    coordinator: OrderCoordinator = Depends(get_coordinator),
):
    """PaymentRequestFailed に退避した注文の決済を依頼し直す。"""
    return await coordinator.retry_payment(order_id, req.card)


# ── Query Endpoints (読み取りのみ) ───────────────


@router.get("/order/all", response_model=list[Order], response_model_exclude_none=True)
async def all_orders(coordinator: OrderCoordinator = Depends(get_coordinator)):
    return await coordinator.list_orders()


@router.get("/order/id/{order_id}", response_model=Order, response_model_exclude_none=True)
async def get_order(order_id: str, coordinator: OrderCoordinator = Depends(get_coordinator)):
    return await coordinator.get_order(order_id)


@router.get("/order/{userid}", response_model=list[Order], response_model_exclude_none=True)
async def user_orders(userid: str, coordinator: OrderCoordinator = Depends(get_coordinator)):
    return await coordinator.list_user_orders(userid)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}


# ── App ──────────────────────────────────────────


def create_app(
    settings: Settings | None = None,
    store: OrderStore | None = None,
    emitter: EventEmitter | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        order_store = store or build_store(settings)
        event_emitter = emitter or build_emitter(settings)
        await order_store.setup()
        coordinator = OrderCoordinator(order_store, event_emitter, settings.max_conflict_retries)
        app.state.coordinator = coordinator

        shutdown_event = asyncio.Event()
        consumer_task = None
        if settings.consumer_enabled:
            consumer_task = asyncio.create_task(
                run_consumer(settings.redis_url, coordinator, settings, shutdown_event)
            )
        logger.info(
            "Order service started (store=%s, transport=%s)",
            type(order_store).__name__,
            type(event_emitter).__name__,
        )
        yield
        shutdown_event.set()
        if consumer_task is not None:
            consumer_task.cancel()
            try:
                await consumer_task
            except asyncio.CancelledError:
                pass
        await event_emitter.close()
        await order_store.close()

    app = FastAPI(title="Order Service", lifespan=lifespan)

    # CORS: ブラウザから注文 API を直接呼ぶ
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OrderServiceError)
    async def order_error_handler(request: Request, exc: OrderServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": describe(exc)})

    app.include_router(router)
    return app


app = create_app()
