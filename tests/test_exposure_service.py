"""Tests for first-exposure recording and its dedup window."""

import asyncio

import pytest

from app.services.config_lookup import InMemoryConfigLookup
from app.services.engine import build_experiment_engine
from app.services.exposure_service import ExposureDeduplicator, ExposureService

from conftest import ORG, FailingTelemetrySink, RecordingTelemetrySink, SlowTelemetrySink, make_config


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestExposureDeduplicator:
    def test_claims_once_within_window(self):
        dedup = ExposureDeduplicator(window_seconds=60, max_entries=10, clock=FakeClock())
        assert dedup.claim(("a",)) is True
        assert dedup.claim(("a",)) is False
        assert dedup.claim(("b",)) is True

    def test_forgets_after_window(self):
        clock = FakeClock()
        dedup = ExposureDeduplicator(window_seconds=60, max_entries=10, clock=clock)
        dedup.claim("a")
        clock.now += 61
        assert dedup.claim("a") is True

    def test_bounded_size_evicts_oldest(self):
        dedup = ExposureDeduplicator(window_seconds=60, max_entries=2, clock=FakeClock())
        dedup.claim("a")
        dedup.claim("b")
        dedup.claim("c")
        assert len(dedup) == 2
        assert dedup.claim("a") is True

    def test_release(self):
        dedup = ExposureDeduplicator(window_seconds=60, max_entries=10, clock=FakeClock())
        dedup.claim("a")
        dedup.release("a")
        assert dedup.claim("a") is True


class TestRecordExposure:
    @pytest.mark.asyncio
    async def test_second_identical_call_is_idempotent(self, engine, telemetry):
        first = await engine.exposures.record_exposure(ORG, "store-a", "user42", "exp1", "edge")
        second = await engine.exposures.record_exposure(ORG, "store-a", "user42", "exp1", "edge")

        assert first.recorded and first.first_exposure
        assert second.recorded and not second.first_exposure
        assert first.variant_key == second.variant_key == "treatment"
        assert len(telemetry.exposures) == 1

        record = telemetry.exposures[0]
        assert (record.subject_key, record.experiment_key, record.surface) == ("user42", "exp1", "edge")
        assert record.variant_key == "treatment"

    @pytest.mark.asyncio
    async def test_each_surface_is_recorded_separately(self, engine, telemetry):
        await engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge")
        await engine.exposures.record_exposure(ORG, None, "user42", "exp1", "server")
        await engine.exposures.record_exposure(ORG, None, "alice", "exp1", "edge")
        assert len(telemetry.exposures) == 3

    @pytest.mark.asyncio
    async def test_unknown_experiment_records_nothing(self, engine, telemetry):
        assert await engine.exposures.record_exposure(ORG, None, "user42", "nope", "edge") is None
        assert telemetry.exposures == []

    @pytest.mark.asyncio
    async def test_paused_experiment_records_nothing(self, engine, telemetry):
        assert await engine.exposures.record_exposure(ORG, None, "user42", "paused_exp", "edge") is None
        assert telemetry.exposures == []

    @pytest.mark.asyncio
    async def test_carried_variant_is_recorded_as_shown(self, engine, telemetry):
        # alice resolves to control, but her cookie says treatment
        result = await engine.exposures.record_exposure(
            ORG, None, "alice", "exp1", "edge", variant_key="treatment"
        )
        assert result.variant_key == "treatment"
        assert telemetry.exposures[0].variant_key == "treatment"

    @pytest.mark.asyncio
    async def test_repeats_still_count_in_metrics(self, engine, metrics):
        for _ in range(3):
            await engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge")

        labels = {"experiment": "exp1", "variant": "treatment", "surface": "edge"}
        assert metrics.sample("experiment_exposures_total", {**labels, "first_exposure": "true"}) == 1.0
        assert metrics.sample("experiment_exposures_total", {**labels, "first_exposure": "false"}) == 2.0

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed_and_retried_later(self, config_lookup, settings, metrics):
        sink = FailingTelemetrySink()
        engine = build_experiment_engine(config_lookup, sink, settings=settings, metrics=metrics)

        result = await engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge")
        assert result.recorded is False
        assert metrics.sample("experiment_telemetry_failures_total", {"reason": "exposure_failed"}) == 1.0

        # not marked as seen, so the next call tries again as a first exposure
        again = await engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge")
        assert again.first_exposure is True

    @pytest.mark.asyncio
    async def test_slow_sink_is_abandoned_after_timeout(self, config_lookup, settings, metrics):
        sink = SlowTelemetrySink()
        engine = build_experiment_engine(config_lookup, sink, settings=settings, metrics=metrics)
        assert isinstance(engine.exposures, ExposureService)

        result = await engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge")
        assert result.recorded is False
        assert sink.exposures == []
        assert metrics.sample("experiment_telemetry_failures_total", {"reason": "exposure_timeout"}) == 1.0


class GatedFailingSink(RecordingTelemetrySink):
    """Fails every exposure write, but only once the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def log_exposure(self, record):
        await self.gate.wait()
        raise ConnectionError("telemetry sink unavailable")


class TestCarriedVariant:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", ["nope", "draft_exp", "paused_exp", "completed_exp"])
    async def test_inactive_experiment_is_not_recorded_even_with_a_variant(self, engine, telemetry, key):
        result = await engine.exposures.record_exposure(ORG, None, "user42", key, "edge", variant_key="evil")
        assert result is None
        assert telemetry.exposures == []

    @pytest.mark.asyncio
    async def test_other_store_is_not_recorded(self, engine, telemetry):
        result = await engine.exposures.record_exposure(
            ORG, "store-b", "user42", "store_a_only", "edge", variant_key="treatment"
        )
        assert result is None
        assert telemetry.exposures == []

    @pytest.mark.asyncio
    async def test_unknown_variant_is_replaced_by_the_resolved_one(self, engine, telemetry):
        result = await engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge", variant_key="evil")
        assert result.variant_key == "treatment"
        assert telemetry.exposures[0].variant_key == "treatment"

    @pytest.mark.asyncio
    async def test_fallback_names_are_accepted_without_configured_variants(self, telemetry, settings):
        lookup = InMemoryConfigLookup({ORG: [make_config("bare", allocation=0.0, variants=[])]})
        engine = build_experiment_engine(lookup, telemetry, settings=settings)
        result = await engine.exposures.record_exposure(ORG, None, "user42", "bare", "edge", variant_key="treatment")
        assert result.variant_key == "treatment"


class TestConcurrentDuplicates:
    @pytest.mark.asyncio
    async def test_duplicate_reports_the_outcome_of_the_write_in_flight(self, config_lookup, settings, metrics):
        sink = GatedFailingSink()
        engine = build_experiment_engine(config_lookup, sink, settings=settings, metrics=metrics)

        first = asyncio.create_task(engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge"))
        await asyncio.sleep(0.01)
        duplicate = asyncio.create_task(engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge"))
        await asyncio.sleep(0.01)
        sink.gate.set()

        first_result, duplicate_result = await asyncio.gather(first, duplicate)
        assert first_result.first_exposure is True
        assert first_result.recorded is False
        assert duplicate_result.first_exposure is False
        assert duplicate_result.recorded is False

        # the failed write was released, so the next call is a first exposure again
        again = await engine.exposures.record_exposure(ORG, None, "user42", "exp1", "edge")
        assert again.first_exposure is True
