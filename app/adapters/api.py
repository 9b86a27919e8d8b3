"""
Server-side API functions.

Each function validates its input, calls the engine and wraps the outcome
in a ``{"success": ..., "data"/"error": ...}`` envelope. They never raise.
"""

from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from app.models.schemas.assignment import AssignmentLookupModel
from app.models.schemas.exposure import ExposureRequestModel
from app.services.engine import ExperimentEngine

logger = structlog.get_logger(__name__)


class ActiveExperimentsQueryModel(BaseModel):
    org_id: str
    store_id: str | None = None


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def _fail(message: str) -> dict[str, Any]:
    return {"success": False, "error": message}


async def get_active_experiments(engine: ExperimentEngine, payload: Any) -> dict[str, Any]:
    try:
        query = ActiveExperimentsQueryModel.model_validate(payload)
    except ValidationError:
        return _fail("Invalid request")

    try:
        experiments = await engine.assignments.get_active_experiments(query.org_id, query.store_id)
    except Exception:
        logger.exception("get_active_experiments_failed", org_id=query.org_id, store_id=query.store_id)
        return _fail("Failed to retrieve experiments")

    logger.info(
        "retrieved_active_experiments",
        org_id=query.org_id,
        store_id=query.store_id,
        count=len(experiments),
    )
    return _ok([experiment.model_dump(mode="json") for experiment in experiments])


async def get_assignment(engine: ExperimentEngine, payload: Any) -> dict[str, Any]:
    try:
        lookup = AssignmentLookupModel.model_validate(payload)
    except ValidationError:
        return _fail("Invalid request")

    try:
        assignment = await engine.assignments.get_assignment(
            lookup.org_id,
            lookup.subject_key,
            lookup.experiment_key,
            store_id=lookup.store_id,
        )
    except Exception:
        logger.exception(
            "get_assignment_failed",
            org_id=lookup.org_id,
            experiment_key=lookup.experiment_key,
        )
        return _fail("Failed to get assignment")

    if assignment is None:
        return _ok(None)
    return _ok(assignment.model_dump(mode="json"))


async def record_exposure(engine: ExperimentEngine, payload: Any) -> dict[str, Any]:
    try:
        exposure = ExposureRequestModel.model_validate(payload)
    except ValidationError:
        return _fail("Invalid request")

    try:
        result = await engine.exposures.record_exposure(
            exposure.org_id,
            exposure.store_id,
            exposure.subject_key,
            exposure.experiment_key,
            exposure.surface,
            variant_key=exposure.variant_key,
        )
    except Exception:
        logger.exception(
            "record_exposure_failed",
            org_id=exposure.org_id,
            experiment_key=exposure.experiment_key,
            surface=exposure.surface,
        )
        return _fail("Failed to record exposure")

    if result is None:
        return _ok({"recorded": False})
    return _ok(result.model_dump(mode="json"))
