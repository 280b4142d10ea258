"""
Order Server
============
FastAPI surface over the order controller.

Routes:
- GET  /health, /metrics, /statuses
- GET  /orders, /orders/{order_id}
- POST /orders/{order_id}/events
- POST /orders/{order_id}/estimated-time
- POST /orders/cancel-stale

The lifespan hook starts and stops the auto-progression scheduler, the
store's background work and the notification dispatcher.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from config import get_config, validate_configuration
from db import OrderFilter, OrderNotFound, StaleSnapshot, create_order_store
from notifications import create_dispatcher
from order import CheckoutError
from order_controller import OrderController
from order_state import OrderEvent, OrderStatus, IllegalTransition, list_statuses, TRANSITIONS
from scheduler import AutoProgressionScheduler


logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class EventRequest(BaseModel):
    event: OrderEvent
    reason: Optional[str] = Field(default=None, max_length=500)


class EstimatedTimeRequest(BaseModel):
    minutes: int = Field(gt=0, le=24 * 60)


# ============================================================================
# APPLICATION FACTORY
# ============================================================================

def create_app(
    controller: OrderController,
    scheduler: Optional[AutoProgressionScheduler] = None
) -> FastAPI:
    """Build the app around an already wired controller."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = controller.store
        if hasattr(store, "start"):
            await store.start()
        if scheduler is not None:
            await scheduler.start()

        logger.info("Order server started")
        try:
            yield
        finally:
            logger.info("Shutting down server...")

            if scheduler is not None:
                await scheduler.stop()
            if hasattr(store, "stop"):
                await store.stop()
            if controller.dispatcher is not None:
                controller.dispatcher.drain(timeout=5.0)
                controller.dispatcher.shutdown()

            logger.info("Server shutdown complete")

    app = FastAPI(title="Order Lifecycle Server", lifespan=lifespan)

    # ========================================================================
    # ERROR MAPPING
    # ========================================================================

    @app.exception_handler(IllegalTransition)
    async def illegal_transition_handler(request: Request, exc: IllegalTransition):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "status": exc.status.value}
        )

    @app.exception_handler(StaleSnapshot)
    async def stale_snapshot_handler(request: Request, exc: StaleSnapshot):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(OrderNotFound)
    async def order_not_found_handler(request: Request, exc: OrderNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # ========================================================================
    # ROUTES
    # ========================================================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "scheduler_running": bool(scheduler and scheduler.is_running),
            "notifications": controller.dispatcher.get_stats() if controller.dispatcher else None,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/statuses")
    async def statuses():
        return {
            "statuses": [status.value for status in list_statuses()],
            "events": {
                event.value: {
                    "from": sorted(status.value for status in allowed_from),
                    "to": target.value,
                }
                for event, (allowed_from, target) in TRANSITIONS.items()
            },
        }

    @app.get("/orders")
    async def list_orders(
        restaurant_id: Optional[str] = None,
        day: Optional[date] = None,
        user_id: Optional[str] = None,
        guest_session_id: Optional[str] = None,
        status: Optional[OrderStatus] = None
    ):
        order_filter = OrderFilter(
            restaurant_id=restaurant_id,
            user_id=user_id,
            guest_session_id=guest_session_id,
            day=day,
            statuses=frozenset({status}) if status else None,
        )
        orders = await controller.list_orders(order_filter)
        return {"orders": [order.to_dict() for order in orders]}

    @app.post("/orders/cancel-stale")
    async def cancel_stale(restaurant_id: Optional[str] = None):
        cancelled = await controller.cancel_stale_pending(restaurant_id=restaurant_id)
        return {"cancelled": [order.order_id for order in cancelled]}

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str):
        order = await controller.get_order(order_id)
        return order.to_dict()

    @app.post("/orders/{order_id}/events")
    async def apply_event(order_id: str, body: EventRequest):
        order = await controller.apply_event(order_id, body.event, reason=body.reason)
        return order.to_dict()

    @app.post("/orders/{order_id}/estimated-time")
    async def set_estimated_time(order_id: str, body: EstimatedTimeRequest):
        order = await controller.set_estimated_time(order_id, body.minutes)
        return order.to_dict()

    return app


def build_app(config=None) -> FastAPI:
    """Wire store, dispatcher, controller and scheduler from configuration."""
    config = config or get_config()

    store = create_order_store(config)
    dispatcher = create_dispatcher(config.notifications)
    controller = OrderController.from_config(store, dispatcher, config)

    scheduler = None
    if config.scheduler.enabled:
        scheduler = AutoProgressionScheduler.from_config(
            controller,
            store,
            OrderFilter.active(config.server.restaurant_id),
            config.scheduler,
        )

    return create_app(controller, scheduler)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the order server."""
    config = get_config()

    logging.basicConfig(
        level=getattr(logging, config.server.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    validate_configuration()

    app = build_app(config)

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
