"""
FastAPI application for the order event broker.

This application provides:
1. Producer ingestion (/events)
2. Consumer registration (/subscriptions)
3. An operational surface for audit and dead-letter replay
   (/deliveries, /deadletters, /replay, /health)

Run with:
    uv run uvicorn api.main:app

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.schemas import (
    AppendEventRequest,
    DeliveryResponse,
    EventPage,
    EventResponse,
    HealthResponse,
    ReplayRequest,
    ReplayResponse,
    SubscriptionRequest,
    SubscriptionResponse,
    UnsubscribeResponse,
)
from broker.service import OrderBroker
from handlers.defaults import bind_default_handlers
from shared.config import BrokerConfig, load_config
from shared.errors import (
    BrokerError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from shared.logging_config import setup_logging

logger = logging.getLogger("api")

_STATUS_BY_ERROR: list[tuple[type, int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StorageError, 503),
]


def get_broker(request: Request) -> OrderBroker:
    """Dependency: the broker owned by this application."""
    return request.app.state.broker


def create_app(
    config: Optional[BrokerConfig] = None,
    broker: Optional[OrderBroker] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Broker configuration (defaults to load_config())
        broker: Pre-built broker; when omitted one is built from config with
                the default payment and notification handlers bound
        configure_logging: Install the shared logging setup on startup
    """
    if broker is None:
        config = config or load_config()
        broker = OrderBroker(config)
        bind_default_handlers(broker)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if configure_logging:
            setup_logging(app.state.broker.config.logging)
        logger.info("Starting order broker API")
        await app.state.broker.start()
        try:
            yield
        finally:
            await app.state.broker.close()
            logger.info("Shutting down")

    app = FastAPI(
        title="Order Event Broker",
        description="""
    Durable store-then-dispatch delivery of order-lifecycle events.

    - **Producers** append events to a per-order log
    - **Consumers** subscribe handlers to event kinds
    - Delivery is at-least-once, ordered per order, retried with backoff,
      and dead-lettered when the retry budget is spent
    """,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.broker = broker

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError):
        status = 500
        for error_type, code in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                status = code
                break
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(broker: OrderBroker = Depends(get_broker)):
        """Health check with delivery counts per state."""
        stats = await broker.dispatcher.stats()
        return HealthResponse(
            status="healthy" if broker.dispatcher.running else "stopped",
            service="order-event-broker",
            deliveries=stats,
        )

    # =========================================================================
    # Ingestion
    # =========================================================================

    @app.post("/events", response_model=EventResponse, status_code=201, tags=["Events"])
    async def append_event(request: AppendEventRequest, broker: OrderBroker = Depends(get_broker)):
        """
        Append an order event.

        Returns the stored event with its sequence and event id. A supplied
        `sequence` that is not the next one for the order returns 409.
        """
        event = await broker.append(
            request.order_id, request.kind, request.payload, sequence=request.sequence
        )
        return EventResponse.from_event(event)

    @app.get("/events", response_model=EventPage, tags=["Events"])
    async def read_events(
        cursor: int = Query(default=0, ge=0),
        limit: int = Query(default=100, ge=1, le=1000),
        broker: OrderBroker = Depends(get_broker),
    ):
        """Read the log in append order after `cursor`. Use `nextCursor` to continue."""
        events = [e async for e in broker.store.read_from(cursor, limit=limit)]
        next_cursor = events[-1].position if events else cursor
        return EventPage(events=[EventResponse.from_event(e) for e in events], next_cursor=next_cursor)

    @app.get("/orders/{order_id}/events", response_model=list[EventResponse], tags=["Events"])
    async def read_order_events(order_id: str, broker: OrderBroker = Depends(get_broker)):
        """All retained events of one order, in sequence order."""
        return [EventResponse.from_event(e) for e in await broker.store.read_order(order_id)]

    # =========================================================================
    # Subscriptions
    # =========================================================================

    @app.post("/subscriptions", response_model=SubscriptionResponse, tags=["Subscriptions"])
    async def register_subscription(
        request: SubscriptionRequest, broker: OrderBroker = Depends(get_broker)
    ):
        """Register or replace a handler's subscription."""
        policy = request.delivery_policy.to_policy() if request.delivery_policy else None
        subscription = await broker.subscribe(request.handler_id, request.event_kinds, policy)
        return SubscriptionResponse.from_subscription(subscription)

    @app.get("/subscriptions", response_model=list[SubscriptionResponse], tags=["Subscriptions"])
    async def list_subscriptions(broker: OrderBroker = Depends(get_broker)):
        return [SubscriptionResponse.from_subscription(s) for s in broker.registry.subscriptions()]

    @app.delete(
        "/subscriptions/{handler_id}", response_model=UnsubscribeResponse, tags=["Subscriptions"]
    )
    async def unregister_subscription(handler_id: str, broker: OrderBroker = Depends(get_broker)):
        """Unregister a handler. Its pending deliveries are dead-lettered."""
        drained = await broker.unsubscribe(handler_id)
        return UnsubscribeResponse(handler_id=handler_id, dead_lettered=drained)

    # =========================================================================
    # Operations
    # =========================================================================

    @app.get("/deliveries/{event_id}", response_model=list[DeliveryResponse], tags=["Operations"])
    async def get_deliveries(event_id: UUID, broker: OrderBroker = Depends(get_broker)):
        """All delivery records of an event, for audit."""
        records = await broker.dispatcher.deliveries_for(event_id)
        return [DeliveryResponse.from_record(r) for r in records]

    @app.get("/deadletters", response_model=list[DeliveryResponse], tags=["Operations"])
    async def list_dead_letters(
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
        broker: OrderBroker = Depends(get_broker),
    ):
        records = await broker.dispatcher.dead_letters(limit=limit, offset=offset)
        return [DeliveryResponse.from_record(r) for r in records]

    @app.post(
        "/deadletters/{event_id}/retry", response_model=list[DeliveryResponse], tags=["Operations"]
    )
    async def retry_dead_letter(
        event_id: UUID,
        handler_id: Optional[str] = Query(default=None, alias="handlerId"),
        broker: OrderBroker = Depends(get_broker),
    ):
        """Reset dead-lettered deliveries of an event to Pending with attempts = 0."""
        records = await broker.dispatcher.retry_dead_letter(event_id, handler_id)
        return [DeliveryResponse.from_record(r) for r in records]

    @app.post("/replay", response_model=ReplayResponse, tags=["Operations"])
    async def replay(request: ReplayRequest, broker: OrderBroker = Depends(get_broker)):
        """Re-create missing delivery records from the log for current subscriptions."""
        created = await broker.dispatcher.replay(request.from_cursor, request.handler_id)
        return ReplayResponse(created=created)

    return app


app = create_app()
