"""
FastAPI Application Entry Point

Table Billing Service - HTTP binding for the restaurant web UI.
Development runs on in-process backends; staging/production on Redis.

Endpoints:
    - POST /api/restaurants/{rid}/orders: Place an order
    - GET /api/restaurants/{rid}/orders: Staff order queue
    - GET/PATCH/DELETE /api/orders/{id}: Single order management
    - POST /api/restaurants/{rid}/sessions/resolve: Device session token
    - GET /api/restaurants/{rid}/tables: Staff table grid
    - GET /api/restaurants/{rid}/tables/{table}/bill: Table bill
    - GET /api/restaurants/{rid}/tables/{table}/bill/stream: Live bill (SSE)
    - POST .../sessions/{sid}/pay, .../tables/{table}/pay,
      .../tables/{table}/pay-override: Pay operations
    - GET /api/restaurants/{rid}/stats: Dashboard counters
    - GET /health: System health check

Version: 1.0.0
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tablebill.core.config import get_settings, setup_logging
from tablebill.database import engine, get_db, init_db
from tablebill.models import OrderStatus
from tablebill.schemas import (
    ErrorResponse,
    HealthResponse,
    OrderCreate,
    OrderListResponse,
    OrderRecord,
    OrderStatusUpdate,
    OrderUpdate,
    PaymentDetails,
    PayResponse,
    RestaurantStats,
    SessionResolveRequest,
    SessionResolveResponse,
    TableBill,
    TableGrid,
)
from tablebill.services import (
    get_billing_service,
    get_live_view,
    get_order_service,
    get_session_resolver,
    reset_services,
)
from tablebill.services.billing import BillingResult, BillingStateMachine
from tablebill.services.change_feed import get_change_feed
from tablebill.services.desk import BillingDesk
from tablebill.services.live_view import LiveViewSynchronizer, View
from tablebill.services.orders import OrderLockedError, OrderNotFoundError, OrderService
from tablebill.services.sessions.resolver import SessionIdentityResolver
from tablebill.services.store import get_order_store
from tablebill.services.store.base import StoreError, SubscriptionScope

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL = 15


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Database initialized")

    logger.info(f"✅ Order Store: {get_order_store().backend_name}")
    logger.info(f"✅ Change Feed: {get_change_feed().provider_name}")
    logger.info(f"✅ Settlement Ledger: {'enabled' if settings.ledger_active else 'disabled'}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await get_billing_service().drain()
    await get_live_view().close()
    await get_change_feed().close()
    await engine.dispose()
    reset_services()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Table and session billing for QR table-service restaurants. "
        "Groups orders into sessions, aggregates table bills and settles "
        "them without double-charging."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def pay_response(result: Optional[BillingResult]) -> PayResponse:
    """Map a billing result to HTTP; store faults become 503."""
    if result is None or not result.success:
        detail = result.error_message if result else "Pay operation did not run"
        raise HTTPException(status_code=503, detail=detail or "Order store unavailable")
    return PayResponse(**result.to_dict())


def sse_event(view: View) -> str:
    event = "bill" if isinstance(view, TableBill) else "grid"
    return f"event: {event}\ndata: {view.model_dump_json()}\n\n"


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "currency": settings.currency,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify the database and the change feed are reachable."""

    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    feed = get_change_feed()
    feed_status = "healthy" if await feed.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, feed_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        change_feed=f"{feed_status} ({feed.provider_name})",
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/restaurants/{restaurant_id}/orders",
    response_model=OrderRecord,
    status_code=201,
    responses={503: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Place Order",
)
async def create_order(
    restaurant_id: str,
    order_data: OrderCreate,
    orders: OrderService = Depends(get_order_service),
) -> OrderRecord:
    """Place a QR, table, counter or phone order."""
    logger.info(
        f"Placing {order_data.order_type.value} order for {restaurant_id} "
        f"table {order_data.table_number or '-'}"
    )
    try:
        return await orders.place_order(restaurant_id, order_data)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get(
    "/api/restaurants/{restaurant_id}/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="Staff Order Queue",
)
async def list_orders(
    restaurant_id: str,
    status: Optional[str] = Query(None, description="Status filter; 'pending' includes accepted"),
    limit: Optional[int] = Query(None, ge=1, le=500),
    orders: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    """Orders of a restaurant, oldest first."""
    if status and status not in {s.value for s in OrderStatus}:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid status. Options: {[s.value for s in OrderStatus]}"
        )
    try:
        records = await orders.list_orders(restaurant_id, status=status, limit=limit)
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return OrderListResponse(total=len(records), orders=records)


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderRecord,
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    orders: OrderService = Depends(get_order_service),
) -> OrderRecord:
    """Get a specific order by ID."""
    return await orders.get_order(order_id)


@app.patch(
    "/api/orders/{order_id}/status",
    response_model=OrderRecord,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def update_order_status(
    order_id: int,
    update: OrderStatusUpdate,
    orders: OrderService = Depends(get_order_service),
) -> OrderRecord:
    return await orders.update_status(order_id, update.status)


@app.patch(
    "/api/orders/{order_id}",
    response_model=OrderRecord,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def update_order(
    order_id: int,
    changes: OrderUpdate,
    orders: OrderService = Depends(get_order_service),
) -> OrderRecord:
    """Staff edit of items, discount or notes; totals are recomputed."""
    return await orders.update_fields(order_id, changes)


@app.delete(
    "/api/orders/{order_id}",
    status_code=204,
    responses={404: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def delete_order(
    order_id: int,
    orders: OrderService = Depends(get_order_service),
) -> None:
    await orders.delete_order(order_id)


# =============================================================================
# SESSION ENDPOINTS
# =============================================================================

@app.post(
    "/api/restaurants/{restaurant_id}/sessions/resolve",
    response_model=SessionResolveResponse,
    tags=["Sessions"],
    summary="Resolve Device Session",
)
async def resolve_session(
    restaurant_id: str,
    request: SessionResolveRequest,
    resolver: SessionIdentityResolver = Depends(get_session_resolver),
) -> SessionResolveResponse:
    """Return the device's session token for a table, creating it if absent."""
    session_id = await resolver.resolve(request.device_id, request.table_number)
    return SessionResolveResponse(
        session_id=session_id,
        table_number=resolver.normalize_table(request.table_number),
    )


# =============================================================================
# TABLE & BILL ENDPOINTS
# =============================================================================

@app.get(
    "/api/restaurants/{restaurant_id}/tables",
    response_model=TableGrid,
    responses={503: {"model": ErrorResponse}},
    tags=["Tables"],
    summary="Staff Table Grid",
)
async def table_grid(
    restaurant_id: str,
    live_view: LiveViewSynchronizer = Depends(get_live_view),
) -> TableGrid:
    try:
        return await live_view.compute(SubscriptionScope(restaurant_id))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get(
    "/api/restaurants/{restaurant_id}/tables/{table_number}/bill",
    response_model=TableBill,
    responses={503: {"model": ErrorResponse}},
    tags=["Tables"],
    summary="Table Bill",
)
async def table_bill(
    restaurant_id: str,
    table_number: str,
    live_view: LiveViewSynchronizer = Depends(get_live_view),
) -> TableBill:
    """
    Unpaid session groups of a table.

    Served from the live view when it holds a recomputed bill for the
    table, otherwise computed on demand.
    """
    if live_view.has_bill(restaurant_id, table_number):
        return live_view.get_bill(restaurant_id, table_number)
    try:
        return await live_view.compute(SubscriptionScope(restaurant_id, table_number))
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get(
    "/api/restaurants/{restaurant_id}/tables/{table_number}/bill/stream",
    response_class=StreamingResponse,
    responses={200: {"content": {"text/event-stream": {}}}},
    tags=["Tables"],
    summary="Live Table Bill (SSE)",
)
async def stream_table_bill(
    restaurant_id: str,
    table_number: str,
    request: Request,
    live_view: LiveViewSynchronizer = Depends(get_live_view),
) -> StreamingResponse:
    """Stream every recomputed bill of a table as ``event: bill``."""

    async def event_gen():
        queue: asyncio.Queue[View] = asyncio.Queue()
        handle = await live_view.attach(restaurant_id, queue.put_nowait, table_number)
        try:
            while True:
                try:
                    view = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_INTERVAL)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    yield ":keepalive\n\n"
                    continue
                yield sse_event(view)
        finally:
            await handle.close()

    return StreamingResponse(
        event_gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


# =============================================================================
# PAY ENDPOINTS
# =============================================================================

def get_desk(
    restaurant_id: str,
    billing: BillingStateMachine = Depends(get_billing_service),
    live_view: LiveViewSynchronizer = Depends(get_live_view),
) -> BillingDesk:
    return BillingDesk(restaurant_id, billing, live_view)


@app.post(
    "/api/restaurants/{restaurant_id}/sessions/{session_id}/pay",
    response_model=PayResponse,
    responses={503: {"model": ErrorResponse}},
    tags=["Billing"],
    summary="Pay Session",
)
async def pay_session(
    session_id: str,
    payment: Optional[PaymentDetails] = None,
    desk: BillingDesk = Depends(get_desk),
) -> PayResponse:
    """Mark every unpaid order of a session paid, whatever its status."""
    payment = payment or PaymentDetails()
    await desk.pay_table_session(session_id, payment.payment_method, payment.transaction_id)
    return pay_response(desk.last_result)


@app.post(
    "/api/restaurants/{restaurant_id}/tables/{table_number}/pay",
    response_model=PayResponse,
    responses={503: {"model": ErrorResponse}},
    tags=["Billing"],
    summary="Pay Table",
)
async def pay_table(
    table_number: str,
    payment: Optional[PaymentDetails] = None,
    desk: BillingDesk = Depends(get_desk),
) -> PayResponse:
    """
    Mark a table paid once all of its unpaid orders are completed.

    While any order is still open the call is a no-op with
    ``reason="orders_incomplete"``.
    """
    payment = payment or PaymentDetails()
    await desk.pay_table_gated(table_number, payment.payment_method, payment.transaction_id)
    return pay_response(desk.last_result)


@app.post(
    "/api/restaurants/{restaurant_id}/tables/{table_number}/pay-override",
    response_model=PayResponse,
    responses={503: {"model": ErrorResponse}},
    tags=["Billing"],
    summary="Pay Table (Override)",
)
async def pay_table_override(
    table_number: str,
    payment: Optional[PaymentDetails] = None,
    desk: BillingDesk = Depends(get_desk),
) -> PayResponse:
    payment = payment or PaymentDetails()
    await desk.pay_table_override(table_number, payment.payment_method, payment.transaction_id)
    return pay_response(desk.last_result)


# =============================================================================
# DASHBOARD ENDPOINTS
# =============================================================================

@app.get(
    "/api/restaurants/{restaurant_id}/stats",
    response_model=RestaurantStats,
    tags=["Dashboard"],
)
async def restaurant_stats(
    restaurant_id: str,
    orders: OrderService = Depends(get_order_service),
) -> RestaurantStats:
    """Pending, today's and all-time order counters."""
    return await orders.restaurant_stats(restaurant_id)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderNotFoundError)
async def order_not_found_handler(request: Request, exc: OrderNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"success": False, "error": "Not Found", "detail": str(exc)},
    )


@app.exception_handler(OrderLockedError)
async def order_locked_handler(request: Request, exc: OrderLockedError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"success": False, "error": "Conflict", "detail": str(exc)},
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error(f"Order store failure on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": "Service Unavailable", "detail": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    content: dict[str, Any] = {
        "success": False,
        "error": "Internal Server Error",
        "detail": str(exc) if settings.debug else "An unexpected error occurred",
    }
    return JSONResponse(status_code=500, content=content)


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tablebill.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
