from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette import status

from app.adapters import api, edge
from app.core.auth import require_auth_token
from app.core.db import SessionLocal, engine as db_engine, get_db, init_db
from app.core.log_config import configure_logging
from app.core.metrics import ExperimentMetrics
from app.core.settings import Settings, get_settings
from app.models.schemas.assignment import AssignmentLookupModel
from app.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentResponseModel,
    ExperimentStatus,
    ExperimentStatusUpdateModel,
    GuardrailCheckModel,
)
from app.models.schemas.exposure import ExposureRequestModel, ExposureSummaryModel
from app.services.config_lookup import DatabaseConfigLookup
from app.services.engine import ExperimentEngine, build_experiment_engine
from app.services.experiment_service import ExperimentService
from app.services.telemetry import DatabaseTelemetrySink

logger = structlog.get_logger(__name__)


def get_engine(request: Request) -> ExperimentEngine:
    return request.app.state.experiment_engine


def get_metrics(request: Request) -> ExperimentMetrics:
    return request.app.state.experiment_engine.metrics


def to_http_response(edge_response: edge.EdgeResponse) -> JSONResponse:
    headers = {
        name: value
        for name, value in edge_response.headers.items()
        if name.lower() != "content-type"
    }
    response = JSONResponse(
        content=edge_response.body,
        status_code=edge_response.status,
        headers=headers,
    )
    for cookie in edge_response.set_cookies:
        response.headers.append("set-cookie", cookie)
    return response


# --- Storefront-facing routes (no auth) ---

experiments_api = APIRouter(prefix="/api/experiments", tags=["assignment"])


@experiments_api.post(
    "/assign",
    summary="Assign the subject to the requested experiments",
    responses={400: {"description": "Invalid request body"}},
)
async def assign_experiments(request: Request, engine: ExperimentEngine = Depends(get_engine)):
    """
    Body: ``{"experiments": ["key", ...]}``. Identity comes from the
    ``x-org-id``/``x-store-id``/``x-customer-id``/``x-session-id``/``x-anon-id``
    headers, prior assignments from the ``tp_xp_*`` cookies or the
    propagation header.
    """
    raw_body = (await request.body()).decode("utf-8", errors="replace")
    edge_request = edge.EdgeRequest(
        url=str(request.url),
        method=request.method,
        headers=dict(request.headers),
        body=raw_body,
    )
    return to_http_response(await edge.dispatch(engine, edge_request))


@experiments_api.post("/assignment", summary="Resolve one assignment")
async def post_assignment(
    lookup: AssignmentLookupModel, engine: ExperimentEngine = Depends(get_engine)
):
    return await api.get_assignment(engine, lookup.model_dump())


@experiments_api.post("/exposure", summary="Record an experiment exposure")
async def post_exposure(
    exposure: ExposureRequestModel, engine: ExperimentEngine = Depends(get_engine)
):
    return await api.record_exposure(engine, exposure.model_dump())


@experiments_api.get("/active", summary="List the running experiments of an organization")
async def get_active_experiments(
    org_id: str = Query(...),
    store_id: Optional[str] = Query(None),
    engine: ExperimentEngine = Depends(get_engine),
):
    return await api.get_active_experiments(engine, {"org_id": org_id, "store_id": store_id})


# --- Authoring routes (bearer token) ---

authoring = APIRouter(
    prefix="/experiments",
    tags=["authoring"],
    dependencies=[Depends(require_auth_token)],
)


@authoring.post(
    "",
    response_model=ExperimentResponseModel,
    status_code=status.HTTP_201_CREATED,
)
def post_experiments(
    experiment_data: ExperimentCreateModel,
    db: Session = Depends(get_db),
    metrics: ExperimentMetrics = Depends(get_metrics),
):
    return ExperimentService(db, metrics).create_experiment(experiment_data)


@authoring.get("", response_model=List[ExperimentResponseModel])
def list_experiments(
    org_id: str = Query(...),
    status_filter: Optional[ExperimentStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    metrics: ExperimentMetrics = Depends(get_metrics),
):
    return ExperimentService(db, metrics).list_experiments(org_id, status_filter)


@authoring.get("/{experiment_key}", response_model=ExperimentResponseModel)
def get_experiment(
    experiment_key: str,
    org_id: str = Query(...),
    db: Session = Depends(get_db),
    metrics: ExperimentMetrics = Depends(get_metrics),
):
    return ExperimentService(db, metrics).get_experiment(org_id, experiment_key)


@authoring.post("/{experiment_key}/status", response_model=ExperimentResponseModel)
def post_experiment_status(
    experiment_key: str,
    update: ExperimentStatusUpdateModel,
    db: Session = Depends(get_db),
    metrics: ExperimentMetrics = Depends(get_metrics),
):
    return ExperimentService(db, metrics).set_status(update.org_id, experiment_key, update.status)


@authoring.post("/{experiment_key}/guardrail")
def post_guardrail_check(
    experiment_key: str,
    check: GuardrailCheckModel,
    db: Session = Depends(get_db),
    metrics: ExperimentMetrics = Depends(get_metrics),
):
    passed = ExperimentService(db, metrics).check_guardrail(
        check.org_id, experiment_key, check.metric, check.value, check.threshold
    )
    return {"passed": passed}


@authoring.get("/{experiment_key}/exposures", response_model=ExposureSummaryModel)
def get_exposure_summary(
    experiment_key: str,
    org_id: str = Query(...),
    db: Session = Depends(get_db),
    metrics: ExperimentMetrics = Depends(get_metrics),
):
    return ExperimentService(db, metrics).exposure_summary(org_id, experiment_key)


def create_app(
    experiment_engine: Optional[ExperimentEngine] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Builds the application.

    Without an explicit engine the app reads experiments from, and writes
    exposures to, the configured database.
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    uses_database = experiment_engine is None
    if uses_database:
        experiment_engine = build_experiment_engine(
            DatabaseConfigLookup(SessionLocal),
            DatabaseTelemetrySink(SessionLocal),
            settings=settings,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if uses_database:
            init_db(db_engine)
        yield

    app = FastAPI(
        title="TokPulse experiments",
        description="Experiment assignment and exposure tracking",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.experiment_engine = experiment_engine

    app.include_router(experiments_api)
    app.include_router(authoring)

    @app.get("/metrics", include_in_schema=False)
    def metrics(request: Request):
        registry = get_metrics(request)
        return Response(content=registry.render(), media_type=registry.content_type)

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    return app


app = create_app()


# Entry point for running the application directly (local development)
if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
