from __future__ import annotations

from collections.abc import Iterator
from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.orm import Session

from pipelines.admin import AdminTriggers
from pipelines.context import EngineContext

from . import schemas
from .core.config import Settings, get_settings
from .core.errors import EngineError, EngineErrorKind, LedgerError, ProviderError
from .db import session_scope
from .services.cycle_service import CycleQuery, CycleService

_ENGINE_ERROR_STATUS = {
    EngineErrorKind.INSUFFICIENT_FIXTURES: 409,
    EngineErrorKind.INVALID_TRANSITION: 409,
    EngineErrorKind.CYCLE_ALREADY_EXISTS: 409,
    EngineErrorKind.NOT_FOUND: 404,
    EngineErrorKind.SLIP_REJECTED: 422,
    EngineErrorKind.STARTUP_CONFIG_INVALID: 503,
}

router = APIRouter()
admin_router = APIRouter(prefix="/admin", tags=["admin"])


def get_context(request: Request) -> EngineContext:
    context = request.app.state.context
    if context is None:
        raise HTTPException(status_code=503, detail="Engine context is not initialised")
    return context


def get_session(context: EngineContext = Depends(get_context)) -> Iterator[Session]:
    """Yield a request-scoped session from the engine's session factory."""

    with session_scope(context.session_factory) as session:
        yield session


def get_cycle_service(session: Session = Depends(get_session)) -> CycleService:
    return CycleService(session)


def get_admin_triggers(context: EngineContext = Depends(get_context)) -> AdminTriggers:
    return AdminTriggers(context)


def _cycle_query(
    *,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> CycleQuery:
    return CycleQuery(limit=limit, offset=offset)


@router.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness check consumed by infrastructure monitors."""

    return {"status": "ok"}


@router.get("/cycles", response_model=schemas.CycleList, tags=["cycles"])
def list_cycles(
    *,
    query: CycleQuery = Depends(_cycle_query),
    service: CycleService = Depends(get_cycle_service),
):
    """List published cycles, newest game date first."""

    return service.list_cycles(query)


@router.get("/cycles/current", response_model=schemas.CycleDetail, tags=["cycles"])
def current_cycle(service: CycleService = Depends(get_cycle_service)):
    cycle = service.current_cycle()
    if cycle is None:
        raise HTTPException(status_code=404, detail="No cycle has been published yet")
    return cycle


@router.get("/cycles/{cycle_id}", response_model=schemas.CycleDetail, tags=["cycles"])
def get_cycle(cycle_id: int, service: CycleService = Depends(get_cycle_service)):
    """Return one cycle with its matches and the odds frozen at creation."""

    cycle = service.get_cycle(cycle_id)
    if cycle is None:
        raise HTTPException(status_code=404, detail="Cycle not found")
    return cycle


@router.get("/cycles/{cycle_id}/leaderboard", response_model=schemas.Leaderboard, tags=["cycles"])
def get_leaderboard(
    cycle_id: int,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    service: CycleService = Depends(get_cycle_service),
):
    board = service.leaderboard(cycle_id, limit=limit, offset=offset)
    if board is None:
        raise HTTPException(status_code=404, detail="Cycle not found")
    return board


@router.get("/fixtures/{fixture_id}/result", response_model=schemas.FixtureResultOut, tags=["fixtures"])
def get_fixture_result(fixture_id: int, service: CycleService = Depends(get_cycle_service)):
    result = service.fixture_result(fixture_id)
    if result is None:
        raise HTTPException(status_code=404, detail="No result recorded for this fixture")
    return result


@admin_router.post("/fixtures/fetch", response_model=schemas.AdminResponse)
def admin_fetch_fixtures(triggers: AdminTriggers = Depends(get_admin_triggers)):
    return schemas.AdminResponse(action="fetch_fixtures", result=triggers.fetch_fixtures())


@admin_router.post("/cycles/select", response_model=schemas.AdminResponse)
def admin_select(
    game_date: Annotated[date, Query(alias="date", description="Cycle date (UTC)")],
    dry_run: Annotated[bool, Query(description="Only run the selector")] = False,
    triggers: AdminTriggers = Depends(get_admin_triggers),
):
    """Force match selection and cycle creation for one date."""

    return schemas.AdminResponse(action="select", result=triggers.select(game_date, dry_run=dry_run))


@admin_router.post("/cycles/{cycle_id}/fetch-results", response_model=schemas.AdminResponse)
def admin_fetch_results(cycle_id: int, triggers: AdminTriggers = Depends(get_admin_triggers)):
    return schemas.AdminResponse(action="fetch_results", result=triggers.fetch_results(cycle_id))


@admin_router.post("/cycles/{cycle_id}/resolve", response_model=schemas.AdminResponse)
def admin_resolve(cycle_id: int, triggers: AdminTriggers = Depends(get_admin_triggers)):
    """Run the resolution gates and submit the cycle once they pass."""

    return schemas.AdminResponse(action="resolve", result=triggers.resolve(cycle_id))


async def _engine_error_handler(_request: Request, exc: EngineError) -> JSONResponse:
    status_code = _ENGINE_ERROR_STATUS.get(exc.kind, 500)
    return JSONResponse(status_code=status_code, content={"error": exc.kind.value, "detail": str(exc)})


async def _upstream_error_handler(_request: Request, exc: ProviderError | LedgerError) -> JSONResponse:
    # upstream messages can carry RPC payloads; only the kind is exposed
    logger.warning("Upstream failure surfaced to API: {!r}", exc)
    return JSONResponse(status_code=502, content={"error": exc.kind.value})


def create_app(settings: Settings | None = None, *, context: EngineContext | None = None) -> FastAPI:
    """Build the API. Without ``context`` the engine context is built at startup."""

    settings = settings or get_settings()
    app = FastAPI(title="Oddyssey API", version="0.1.0", debug=settings.debug)
    app.state.settings = settings
    app.state.context = context
    owns_context = context is None

    @app.on_event("startup")
    def on_startup() -> None:
        if app.state.context is None:
            app.state.context = EngineContext.build(settings)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if owns_context and app.state.context is not None:
            app.state.context.close()
            app.state.context = None

    app.add_exception_handler(EngineError, _engine_error_handler)
    app.add_exception_handler(ProviderError, _upstream_error_handler)
    app.add_exception_handler(LedgerError, _upstream_error_handler)
    app.include_router(router)
    app.include_router(admin_router)
    return app


__all__ = ["create_app", "get_admin_triggers", "get_context", "get_cycle_service", "get_session"]
