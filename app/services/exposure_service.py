# services/exposure_service.py

import asyncio
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from typing import Optional

import structlog

from app.core.bucketing import bucket
from app.core.metrics import ExperimentMetrics
from app.models.schemas.exposure import ExposureRecord, ExposureResult
from app.services.assignment_service import AssignmentService, choose_variant

logger = structlog.get_logger(__name__)


class ExposureDeduplicator:
    """
    Remembers recently recorded exposure keys for ``window_seconds``.

    Bounded to ``max_entries``; the oldest keys are forgotten first.
    """

    def __init__(
        self,
        window_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._seen: OrderedDict[Hashable, float] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def claim(self, key: Hashable) -> bool:
        """
        Marks ``key`` as recorded. Returns False if it already was within
        the window.
        """
        now = self.clock()
        self._expire(now)

        if key in self._seen:
            return False

        self._seen[key] = now
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return True

    def release(self, key: Hashable) -> None:
        """Forgets ``key`` so a later call can record it again."""
        self._seen.pop(key, None)

    def _expire(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._seen:
            oldest_key, recorded_at = next(iter(self._seen.items()))
            if recorded_at > cutoff:
                break
            self._seen.pop(oldest_key)


class ExposureService:
    def __init__(
        self,
        assignment_service: AssignmentService,
        deduplicator: ExposureDeduplicator,
        metrics: Optional[ExperimentMetrics] = None,
        timeout: float = 0.3,
    ):
        self.assignment_service = assignment_service
        self.telemetry = assignment_service.telemetry
        self.deduplicator = deduplicator
        self.metrics = metrics or assignment_service.metrics
        self.timeout = timeout
        # first-exposure writes still running, by dedup key
        self._in_flight: dict[Hashable, asyncio.Future] = {}

    async def record_exposure(
        self,
        org_id: str,
        store_id: Optional[str],
        subject_key: str,
        experiment_key: str,
        surface: str,
        variant_key: Optional[str] = None,
    ) -> Optional[ExposureResult]:
        """
        Records that the subject actually saw their variant on ``surface``.

        The experiment is always resolved first: None is returned when it is
        unknown, not active, or scoped to another store. ``variant_key`` is
        the variant the subject was shown when it came from a carrier; it is
        kept only if the experiment serves it, otherwise the variant is
        resolved from the subject's bucket.

        Only the first exposure per (org, subject, experiment, surface) within
        the dedup window reaches the telemetry sink. A repeat returns
        ``first_exposure=False``; while the first write is still running the
        repeat waits for it and reports its outcome in ``recorded``.
        """
        config = await self.assignment_service.get_active_config(org_id, experiment_key, store_id)
        if config is None:
            return None

        if variant_key is not None and variant_key not in config.servable_variants:
            logger.info(
                "experiment_exposure_variant_ignored",
                org_id=org_id,
                experiment_key=experiment_key,
                variant_key=variant_key,
            )
            variant_key = None
        if variant_key is None:
            variant_key = choose_variant(bucket(org_id, experiment_key, subject_key), config)

        dedup_key = (org_id, subject_key, experiment_key, surface)
        first_exposure = self.deduplicator.claim(dedup_key)

        self.metrics.exposures_total.labels(
            experiment=experiment_key,
            variant=variant_key,
            surface=surface,
            first_exposure=str(first_exposure).lower(),
        ).inc()

        if first_exposure:
            record = ExposureRecord(
                org_id=org_id,
                store_id=store_id,
                subject_key=subject_key,
                experiment_key=experiment_key,
                variant_key=variant_key,
                surface=surface,
            )
            write = asyncio.ensure_future(self._write(record))
            self._in_flight[dedup_key] = write
            try:
                recorded = await write
            finally:
                self._in_flight.pop(dedup_key, None)
            if not recorded:
                self.deduplicator.release(dedup_key)
        else:
            pending = self._in_flight.get(dedup_key)
            recorded = await asyncio.shield(pending) if pending is not None else True

        return ExposureResult(
            experiment_key=experiment_key,
            variant_key=variant_key,
            surface=surface,
            recorded=recorded,
            first_exposure=first_exposure,
        )

    async def _write(self, record: ExposureRecord) -> bool:
        try:
            await asyncio.wait_for(self.telemetry.log_exposure(record), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            self.metrics.telemetry_failures_total.labels(reason="exposure_timeout").inc()
            logger.warning(
                "experiment_exposure_timed_out",
                experiment_key=record.experiment_key,
                surface=record.surface,
                timeout=self.timeout,
            )
        except Exception:
            self.metrics.telemetry_failures_total.labels(reason="exposure_failed").inc()
            logger.exception(
                "experiment_exposure_failed",
                experiment_key=record.experiment_key,
                surface=record.surface,
            )
        return False
