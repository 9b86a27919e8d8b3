# services/assignment_service.py

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog

from app.core.bucketing import BUCKET_COUNT, bucket
from app.core.carrier import DEFAULT_MAX_AGE_SECONDS
from app.core.metrics import ExperimentMetrics
from app.models.schemas.assignment import Assignment, SubjectIdentity, utcnow
from app.models.schemas.experiment import ExperimentConfig
from app.services.config_lookup import ExperimentConfigLookup
from app.services.telemetry import TelemetrySink

logger = structlog.get_logger(__name__)


def choose_variant(bucket_value: int, config: ExperimentConfig) -> str:
    """
    Maps a bucket onto the control or the treatment.

    Buckets below ``traffic_allocation * 100`` get the treatment
    (``variants[1]``), everything else the control (``variants[0]``).
    """
    threshold = config.traffic_allocation * BUCKET_COUNT
    control, treatment = config.servable_variants[:2]

    return treatment if bucket_value < threshold else control


@dataclass
class AssignmentSet:
    """Assignments for one subject during one request."""

    assignments: dict[str, str] = field(default_factory=dict)
    new_assignments: dict[str, Assignment] = field(default_factory=dict)

    @property
    def new_variants(self) -> dict[str, str]:
        return {key: assignment.variant_key for key, assignment in self.new_assignments.items()}


class AssignmentService:
    def __init__(
        self,
        config_lookup: ExperimentConfigLookup,
        telemetry: TelemetrySink,
        metrics: Optional[ExperimentMetrics] = None,
        lookup_timeout: float = 1.0,
        telemetry_timeout: float = 0.3,
        ttl_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    ):
        self.config_lookup = config_lookup
        self.telemetry = telemetry
        self.metrics = metrics or ExperimentMetrics()
        self.lookup_timeout = lookup_timeout
        self.telemetry_timeout = telemetry_timeout
        self.ttl_seconds = ttl_seconds

    async def get_assignment(
        self,
        org_id: str,
        subject_key: str,
        experiment_key: str,
        store_id: Optional[str] = None,
    ) -> Optional[Assignment]:
        """
        Resolves a subject's variant for one experiment.

        Returns None (the caller shows the default experience) when the
        experiment is unknown, not running, scoped to another store, or
        its configuration could not be loaded. Never raises.
        """
        config = await self.get_active_config(org_id, experiment_key, store_id)
        if config is None:
            return None

        bucket_value = bucket(org_id, experiment_key, subject_key)
        variant_key = choose_variant(bucket_value, config)
        assignment = Assignment(
            experiment_key=experiment_key,
            variant_key=variant_key,
            assigned_at=utcnow(),
            ttl_seconds=self.ttl_seconds,
            payload=config.payload_for(variant_key),
        )

        self.metrics.assignments_total.labels(
            experiment=experiment_key,
            variant=variant_key,
            store_id=store_id or "unknown",
        ).inc()
        logger.info(
            "experiment_assigned",
            org_id=org_id,
            store_id=store_id,
            subject_key=subject_key,
            experiment_key=experiment_key,
            variant_key=variant_key,
            bucket=bucket_value,
        )

        return assignment

    async def assign(
        self,
        identity: SubjectIdentity,
        experiment_keys: Iterable[str],
        carrier: Optional[Mapping[str, str]] = None,
    ) -> AssignmentSet:
        """
        Builds the AssignmentSet for the requested experiments.

        A variant already present in ``carrier`` always wins and is never
        re-resolved, even when the experiment's allocation changed since.
        The remaining keys resolve concurrently and independently; a failing
        key is logged and left out.
        """
        carrier = carrier or {}
        requested = list(dict.fromkeys(key for key in experiment_keys if key))
        pending = [key for key in requested if key not in carrier]

        resolved = await asyncio.gather(
            *(self._resolve_independently(identity, key) for key in pending)
        )
        fresh = {
            key: assignment for key, assignment in zip(pending, resolved) if assignment is not None
        }

        result = AssignmentSet()
        for key in requested:
            if key in carrier:
                result.assignments[key] = carrier[key]
            elif key in fresh:
                result.assignments[key] = fresh[key].variant_key
                result.new_assignments[key] = fresh[key]

        return result

    async def get_active_config(
        self, org_id: str, experiment_key: str, store_id: Optional[str] = None
    ) -> Optional[ExperimentConfig]:
        """The experiment's configuration when it can serve ``store_id`` right now, else None."""
        config = await self._lookup(org_id, experiment_key, store_id)
        if config is None or not config.is_active() or not config.serves_store(store_id):
            return None
        return config

    async def get_active_experiments(
        self, org_id: str, store_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> list[ExperimentConfig]:
        configs = await asyncio.wait_for(
            self.config_lookup.list_experiment_configs(org_id), timeout=self.lookup_timeout
        )
        return [
            config
            for config in configs
            if config.is_active(now) and config.serves_store(store_id)
        ]

    async def _resolve_independently(
        self, identity: SubjectIdentity, experiment_key: str
    ) -> Optional[Assignment]:
        try:
            return await self.get_assignment(
                identity.org_id,
                identity.subject_key,
                experiment_key,
                store_id=identity.store_id,
            )
        except Exception as e:
            logger.exception(
                "experiment_assignment_failed",
                org_id=identity.org_id,
                store_id=identity.store_id,
                experiment_key=experiment_key,
            )
            await self.report_error(
                e,
                {
                    "org_id": identity.org_id,
                    "store_id": identity.store_id,
                    "experiment_key": experiment_key,
                    "reason": "assignment_failed",
                },
            )
            return None

    async def _lookup(
        self, org_id: str, experiment_key: str, store_id: Optional[str]
    ) -> Optional[ExperimentConfig]:
        context = {"org_id": org_id, "store_id": store_id, "experiment_key": experiment_key}
        try:
            return await asyncio.wait_for(
                self.config_lookup.get_experiment_config(org_id, experiment_key),
                timeout=self.lookup_timeout,
            )
        except asyncio.TimeoutError as e:
            self.metrics.resolution_errors_total.labels(
                experiment=experiment_key, reason="timeout"
            ).inc()
            await self.report_error(e, {**context, "reason": "lookup_timeout"})
        except Exception as e:
            self.metrics.resolution_errors_total.labels(
                experiment=experiment_key, reason="lookup_failed"
            ).inc()
            await self.report_error(e, {**context, "reason": "lookup_failed"})
        return None

    async def report_error(self, error: BaseException, context: dict[str, Any]) -> None:
        """Hands an error to the telemetry sink; failures of the sink itself are only logged."""
        try:
            await asyncio.wait_for(
                self.telemetry.log_error(error, context), timeout=self.telemetry_timeout
            )
        except Exception:
            self.metrics.telemetry_failures_total.labels(reason="log_error").inc()
            logger.warning(
                "experiment_error_not_reported",
                error=str(error),
                error_type=error.__class__.__name__,
                **context,
            )
