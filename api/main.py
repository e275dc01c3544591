"""
Regrain API

HTTP front end for the query migration engine and the dashboard query store.
Every record leaves this service fully migrated to the current schema.
"""

from contextlib import asynccontextmanager
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
import time

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .models import (
    MigrateQueryRequest, MigrateQueryResponse, MigrateDashboardResponse,
    SaveQueryResponse, StoredQueryResponse,
    ClosestTimeGrainRequest, ClosestTimeGrainResponse, TimeGrainDisplayResponse,
    AutoTimeGrainRequest, AutoTimeGrainResponse,
    HealthResponse, ErrorResponse, QueryRecord
)
from api.logging_config import setup_logging, RequestIdMiddleware, log_api_call, log_migration
from config_loader import RegrainConfig, get_config
from migration.dashboard import migrate_dashboard
from migration.engine import QueryMigrationEngine
from storage.query_store import QueryNotFoundError, QueryStore
from utils.time_grain import (
    AUTO, TimeGrainError, closest, display_time_grain, resolve_auto_time_grain
)

VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail, timestamp=datetime.now()).model_dump(mode="json")
    )


def _report_schema_mismatch(record: Dict[str, Any]) -> None:
    """Log, never reject, known fields whose values the current schema does not describe"""
    try:
        QueryRecord.model_validate(record)
    except ValidationError as e:
        logger.warning(
            f"Query {record.get('refId')} does not match the current schema",
            extra={"schema_errors": [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()
            ]}
        )


def create_app(config: Optional[RegrainConfig] = None) -> FastAPI:
    """Build the API application from configuration"""
    config = config or get_config()
    logging_config = config.get_logging_config()
    migration_config = config.get_migration_config()

    setup_logging(
        service_name="regrain-api",
        level=logging_config.get("level", "INFO"),
        structured=logging_config.get("format", "structured") == "structured",
        include_trace=logging_config.get("include_trace", False)
    )

    engine = QueryMigrationEngine(
        namespace_placeholder=migration_config.get("namespace_placeholder", "select")
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.store = QueryStore(
            db_path=config.get_store_config().get("db_path", "./data/regrain.db"),
            engine=engine,
            apply_query_defaults=migration_config.get("apply_defaults", True),
            persist_on_load=migration_config.get("persist_on_load", False)
        )
        logger.info("Regrain API started")
        yield
        logger.info("Regrain API stopped")

    app = FastAPI(
        title="Regrain API",
        version=VERSION,
        description="Schema migration for stored Azure Monitor dashboard queries",
        lifespan=lifespan,
        responses={
            400: {"model": ErrorResponse, "description": "Bad Request"},
            404: {"model": ErrorResponse, "description": "Not Found"},
        }
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        log_api_call(
            logger, request.method, request.url.path,
            response.status_code, (time.perf_counter() - start) * 1000
        )
        return response

    # Added last so it wraps the request logger above
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(ValueError)
    async def value_error_handler(request, exc):
        return _error(400, "Validation Error", str(exc))

    @app.exception_handler(TimeGrainError)
    async def time_grain_error_handler(request, exc):
        return _error(400, "Time Grain Error", str(exc))

    @app.exception_handler(QueryNotFoundError)
    async def not_found_handler(request, exc):
        return _error(404, "Not Found", exc.args[0] if exc.args else "Query not found")

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint for load balancers"""
        return HealthResponse(
            status="healthy",
            service="Regrain",
            version=VERSION,
            timestamp=datetime.now()
        )

    @app.post("/api/v1/queries/migrate", response_model=MigrateQueryResponse)
    async def migrate_query_record(request: MigrateQueryRequest):
        """
        Migrate a single stored query record (panel target).

        Example:
            POST /api/v1/queries/migrate
            {"query": {"refId": "A", "azureMonitor": {"timeGrain": "5", "timeGrainUnit": "minute"}}}
        """
        result = engine.migrate_with_report(request.query)
        _report_schema_mismatch(result.record)
        log_migration(
            logger, result.record.get("refId"), result.applied_steps,
            result.remaining_legacy_fields, result.duration_ms
        )
        return MigrateQueryResponse(
            query=result.record,
            applied_steps=result.applied_steps,
            remaining_legacy_fields=result.remaining_legacy_fields
        )

    @app.post("/api/v1/dashboards/migrate", response_model=MigrateDashboardResponse)
    async def migrate_dashboard_json(dashboard: Dict[str, Any] = Body(...)):
        """Migrate every Azure Monitor target of a dashboard JSON document"""
        migrated, report = migrate_dashboard(dashboard, engine=engine)
        return MigrateDashboardResponse(
            dashboard=migrated,
            targets_seen=report.targets_seen,
            targets_migrated=report.targets_migrated,
            changes=report.changes
        )

    @app.get("/api/v1/dashboards/{dashboard_uid}/queries", response_model=List[StoredQueryResponse])
    async def list_dashboard_queries(dashboard_uid: str, request: Request):
        """List stored queries of a dashboard (migrated)"""
        rows = request.app.state.store.list_queries(dashboard_uid)
        return [StoredQueryResponse(**row) for row in rows]

    @app.get(
        "/api/v1/dashboards/{dashboard_uid}/panels/{panel_id}/queries/{ref_id}",
        response_model=StoredQueryResponse
    )
    async def get_dashboard_query(dashboard_uid: str, panel_id: int, ref_id: str, request: Request):
        """Load one stored query, migrated to the current schema"""
        record = request.app.state.store.load_query(dashboard_uid, panel_id, ref_id)
        return StoredQueryResponse(
            dashboard_uid=dashboard_uid,
            panel_id=panel_id,
            ref_id=ref_id,
            query=record
        )

    @app.put(
        "/api/v1/dashboards/{dashboard_uid}/panels/{panel_id}/queries/{ref_id}",
        response_model=SaveQueryResponse
    )
    async def put_dashboard_query(
        dashboard_uid: str,
        panel_id: int,
        ref_id: str,
        request: Request,
        query: Dict[str, Any] = Body(...)
    ):
        """Store a query record as given; refId in the path wins"""
        record = dict(query, refId=ref_id)
        request.app.state.store.save_query(dashboard_uid, panel_id, record)
        return SaveQueryResponse(dashboard_uid=dashboard_uid, panel_id=panel_id, ref_id=ref_id, saved=True)

    @app.delete("/api/v1/dashboards/{dashboard_uid}/panels/{panel_id}/queries/{ref_id}")
    async def delete_dashboard_query(dashboard_uid: str, panel_id: int, ref_id: str, request: Request):
        if not request.app.state.store.delete_query(dashboard_uid, panel_id, ref_id):
            raise HTTPException(status_code=404, detail=f"Query {ref_id} not found")
        return {"deleted": True}

    @app.post("/api/v1/timegrains/closest", response_model=ClosestTimeGrainResponse)
    async def closest_time_grain(request: ClosestTimeGrainRequest):
        """Closest allowed grain >= target (saturates to the largest)"""
        return ClosestTimeGrainResponse(
            target=request.target,
            closest=closest(request.target, request.candidates)
        )

    @app.post("/api/v1/timegrains/auto", response_model=AutoTimeGrainResponse)
    async def auto_time_grain(request: AutoTimeGrainRequest):
        """Interval an "auto" grain resolves to; empty for fixed grains"""
        interval = resolve_auto_time_grain(
            request.time_grain,
            request.allowed_time_grains_ms,
            target=migration_config.get("auto_grain_target", "1m")
        )
        return AutoTimeGrainResponse(time_grain=request.time_grain, interval=interval)

    @app.get("/api/v1/timegrains/display", response_model=TimeGrainDisplayResponse)
    async def time_grain_display(value: str):
        """Shorthand rendering of an ISO-8601 grain, or the value itself"""
        display = display_time_grain(value)
        return TimeGrainDisplayResponse(value=value, display=display, representable=value == AUTO or display != value)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    server_config = get_config().get_server_config()
    uvicorn.run(app, host=server_config.get("host", "0.0.0.0"), port=server_config.get("port", 8000))
