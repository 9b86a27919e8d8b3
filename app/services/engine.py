from dataclasses import dataclass
from typing import Optional

from app.core.carrier import CarrierOptions
from app.core.metrics import ExperimentMetrics
from app.core.settings import Settings, get_settings
from app.services.assignment_service import AssignmentService
from app.services.config_lookup import ExperimentConfigLookup
from app.services.exposure_service import ExposureDeduplicator, ExposureService
from app.services.telemetry import TelemetrySink


@dataclass
class ExperimentEngine:
    """Everything a context adapter needs, built once per application."""

    assignments: AssignmentService
    exposures: ExposureService
    carrier: CarrierOptions
    metrics: ExperimentMetrics


def build_experiment_engine(
    config_lookup: ExperimentConfigLookup,
    telemetry: TelemetrySink,
    settings: Optional[Settings] = None,
    metrics: Optional[ExperimentMetrics] = None,
) -> ExperimentEngine:
    settings = settings or get_settings()
    metrics = metrics or ExperimentMetrics()

    assignment_service = AssignmentService(
        config_lookup,
        telemetry,
        metrics=metrics,
        lookup_timeout=settings.XP_LOOKUP_TIMEOUT_SECONDS,
        telemetry_timeout=settings.XP_EXPOSURE_TIMEOUT_SECONDS,
        ttl_seconds=settings.XP_ASSIGNMENT_TTL_SECONDS,
    )
    exposure_service = ExposureService(
        assignment_service,
        ExposureDeduplicator(
            window_seconds=settings.XP_EXPOSURE_DEDUP_WINDOW_SECONDS,
            max_entries=settings.XP_EXPOSURE_DEDUP_MAX_ENTRIES,
        ),
        metrics=metrics,
        timeout=settings.XP_EXPOSURE_TIMEOUT_SECONDS,
    )

    return ExperimentEngine(
        assignments=assignment_service,
        exposures=exposure_service,
        carrier=CarrierOptions(
            prefix=settings.XP_COOKIE_PREFIX,
            header_name=settings.XP_HEADER_NAME,
            max_age=settings.XP_ASSIGNMENT_TTL_SECONDS,
        ),
        metrics=metrics,
    )
