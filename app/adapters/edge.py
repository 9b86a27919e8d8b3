"""
Edge handler for ``POST /api/experiments/assign``.

Works on plain request/response values so it can run behind any HTTP
front end (the FastAPI route in ``app.main`` is one of them).
"""

import json
import time
import uuid
from collections.abc import Mapping
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import structlog
from pydantic import BaseModel, Field, ValidationError

from app.models.schemas.assignment import AssignRequestModel, AssignResponseModel, SubjectIdentity
from app.services.engine import ExperimentEngine

logger = structlog.get_logger(__name__)

ASSIGN_PATH = "/api/experiments/assign"
UNKNOWN_ORG = "unknown"


class EdgeRequest(BaseModel):
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None


class EdgeResponse(BaseModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    # One entry per Set-Cookie header; cookies cannot be comma-joined safely.
    set_cookies: List[str] = Field(default_factory=list)
    body: Dict[str, Any] = Field(default_factory=dict)


def _error(status: int, message: str) -> EdgeResponse:
    return EdgeResponse(
        status=status,
        headers={"Content-Type": "application/json"},
        body={"error": message},
    )


def _lower(headers: Mapping[str, str]) -> dict[str, str]:
    return {name.lower(): value for name, value in headers.items()}


def generate_subject_key() -> str:
    # Not stable across requests; callers have to persist it themselves.
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def extract_subject_key(headers: Mapping[str, str]) -> str:
    """customer id > session id > anonymous id > a freshly generated id."""
    lowered = _lower(headers)
    for name in ("x-customer-id", "x-session-id", "x-anon-id"):
        if lowered.get(name):
            return lowered[name]
    return generate_subject_key()


def extract_identity(headers: Mapping[str, str]) -> SubjectIdentity:
    lowered = _lower(headers)
    return SubjectIdentity(
        org_id=lowered.get("x-org-id") or UNKNOWN_ORG,
        store_id=lowered.get("x-store-id") or None,
        subject_key=extract_subject_key(lowered),
    )


def parse_assign_body(body: Optional[str]) -> list[str]:
    """
    Returns the requested experiment keys.

    Raises:
        ValueError: the body is not a JSON object of the expected shape.
    """
    if not body:
        return []
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValueError(f"Request body is not valid JSON: {e}")

    if payload is None:
        return []
    try:
        return AssignRequestModel.model_validate(payload).experiments
    except ValidationError as e:
        raise ValueError(f"Request body does not match the expected shape: {e.error_count()} errors")


async def handle_request(
    engine: ExperimentEngine, request: EdgeRequest, experiments: list[str]
) -> EdgeResponse:
    """
    Resolves ``experiments`` for the subject in ``request``.

    Carried assignments are reused, fresh ones are returned as Set-Cookie
    entries, and all of them are summarized in the propagation header.
    """
    try:
        identity = extract_identity(request.headers)
        carried = engine.carrier.read(request.headers)

        assignment_set = await engine.assignments.assign(identity, experiments, carried)

        if assignment_set.new_assignments:
            logger.info(
                "edge_assigned_experiments",
                org_id=identity.org_id,
                store_id=identity.store_id,
                subject_key=identity.subject_key,
                new_assignments=assignment_set.new_variants,
            )

        body = AssignResponseModel(
            assignments=assignment_set.assignments,
            new_assignments=assignment_set.new_variants,
        )
        return EdgeResponse(
            status=200,
            headers={
                "Content-Type": "application/json",
                **engine.carrier.propagation_headers(assignment_set.assignments),
            },
            set_cookies=engine.carrier.set_cookies(assignment_set.new_variants),
            body=body.model_dump(by_alias=True),
        )

    except Exception:
        logger.exception("edge_request_failed", url=request.url, method=request.method)
        return _error(500, "Internal server error")


async def dispatch(engine: ExperimentEngine, request: EdgeRequest) -> EdgeResponse:
    """Routes a raw edge request; only the assign endpoint is served."""
    if urlsplit(request.url).path.rstrip("/") != ASSIGN_PATH:
        return _error(404, "Not found")
    if request.method.upper() != "POST":
        return _error(405, "Method not allowed")

    try:
        experiments = parse_assign_body(request.body)
    except ValueError as e:
        logger.info("edge_bad_request", url=request.url, reason=str(e))
        return _error(400, "Invalid request body")

    return await handle_request(engine, request, experiments)
