"""FastAPI entry point for the vaccination clinic service."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from vaxclinic.config import configure_logging, get_settings
from vaxclinic.context import AppContext, build_context
from vaxclinic.domain.errors import AppError, ForbiddenError, UserNotFoundError
from vaxclinic.domain.models import (
    Notification,
    RecordApplicationRequest,
    ReserveDoseRequest,
    Scheduling,
    StockResponse,
    UpdateSchedulingRequest,
    User,
    UserRole,
    VaccineApplication,
)
from vaxclinic.services.stock_alerts import check_expiring_batches, check_low_stock


def create_app(context: AppContext) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Let in-flight notifications finish before the loop goes away.
        await context.bus.drain()

    app = FastAPI(title="Vaccination Clinic Service", lifespan=lifespan)
    app.state.context = context

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError) -> JSONResponse:
        headers = {"Retry-After": "1"} if exc.retryable else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "context": _jsonable(exc.context)},
            headers=headers,
        )

    app.include_router(_routes())
    return app


_SCALARS = (str, int, float, bool, type(None))


def _jsonable(context: dict) -> dict:
    return {k: v if isinstance(v, _SCALARS) else str(v) for k, v in context.items()}


# ── Dependencies ──────────────────────────────────────────────────────


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def get_caller(
    x_user_id: str = Header(...),
    context: AppContext = Depends(get_context),
) -> User:
    """Resolve the requesting user from the ``X-User-Id`` header."""
    user = context.db.users.get(x_user_id)
    if user is None:
        raise UserNotFoundError(x_user_id)
    return user


def _ensure_owner_or_manager(scheduling: Scheduling, caller: User) -> None:
    if caller.role != UserRole.MANAGER and scheduling.user_id != caller.id:
        raise ForbiddenError("You can only manage your own vaccine schedules")


# ── Routes ────────────────────────────────────────────────────────────


def _routes() -> APIRouter:
    router = APIRouter()

    @router.post("/schedulings", response_model=Scheduling, status_code=201)
    async def reserve_dose(
        payload: ReserveDoseRequest,
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> Scheduling:
        """Reserve a dose. Non-managers may only book for themselves."""
        if caller.role != UserRole.MANAGER and payload.user_id != caller.id:
            raise ForbiddenError("You can only create schedulings for yourself")
        return await context.reservations.reserve_dose(payload)

    @router.get("/schedulings/{scheduling_id}", response_model=Scheduling)
    async def get_scheduling(
        scheduling_id: str,
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> Scheduling:
        scheduling = context.lifecycle.get(scheduling_id)
        _ensure_owner_or_manager(scheduling, caller)
        return scheduling

    @router.patch("/schedulings/{scheduling_id}", response_model=Scheduling)
    async def update_scheduling(
        scheduling_id: str,
        payload: UpdateSchedulingRequest,
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> Scheduling:
        _ensure_owner_or_manager(context.lifecycle.get(scheduling_id), caller)
        return await context.lifecycle.update(
            scheduling_id, payload, triggered_by=caller.id
        )

    @router.delete("/schedulings/{scheduling_id}", response_model=Scheduling)
    async def cancel_scheduling(
        scheduling_id: str,
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> Scheduling:
        _ensure_owner_or_manager(context.lifecycle.get(scheduling_id), caller)
        return await context.lifecycle.cancel(scheduling_id)

    @router.post(
        "/schedulings/{scheduling_id}/application",
        response_model=VaccineApplication,
        status_code=201,
    )
    async def record_application(
        scheduling_id: str,
        payload: RecordApplicationRequest,
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> VaccineApplication:
        if caller.role not in (UserRole.NURSE, UserRole.MANAGER):
            raise ForbiddenError("Only nurses and managers can record applications")
        return await context.applications.record(
            scheduling_id, payload.batch_id, applied_by_id=caller.id
        )

    @router.get("/vaccines/{vaccine_id}/stock", response_model=StockResponse)
    async def get_stock(
        vaccine_id: str,
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> StockResponse:
        async with context.db.transaction() as tx:
            await context.ledger.lock_for_update(tx, vaccine_id)
            stock = await context.ledger.get_available(tx, vaccine_id)
        return StockResponse(
            vaccine_id=stock.vaccine_id,
            total_stock=stock.total_stock,
            reserved_count=stock.reserved_count,
            available=stock.available,
        )

    @router.get("/notifications", response_model=list[Notification])
    async def list_notifications(
        unread_only: bool = False,
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> list[Notification]:
        return context.notifications.list_for_user(caller.id, unread_only=unread_only)

    @router.post("/notifications/{notification_id}/read", response_model=Notification)
    async def mark_notification_read(
        notification_id: str,
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> Notification:
        return context.notifications.mark_as_read(notification_id, caller.id)

    @router.post("/notifications/read-all")
    async def mark_all_notifications_read(
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> dict:
        return {"marked": context.notifications.mark_all_as_read(caller.id)}

    @router.post("/alerts/run")
    async def run_stock_alerts(
        caller: User = Depends(get_caller),
        context: AppContext = Depends(get_context),
    ) -> dict:
        """Publish low-stock and expiring-batch alerts for managers."""
        if caller.role != UserRole.MANAGER:
            raise ForbiddenError("Only managers can run stock alerts")
        low_stock = await check_low_stock(context.db.vaccines.list_all(), context.bus)
        expiring = await check_expiring_batches(
            context.db.batches.list_all(),
            context.db.vaccines.list_all(),
            context.bus,
            now=context.clock(),
            threshold_days=context.settings.batch_expiring_days_threshold,
        )
        return {"low_stock": low_stock, "expiring_batches": expiring}

    return router


# ── Singletons (created at import time for simplicity) ────────────────

settings = get_settings()
configure_logging(settings.log_level)
context = build_context(settings)
app = create_app(context)
