"""Shared fixtures: an in-memory experiment catalogue, a recording sink and a wired engine."""

import asyncio
import os

# Must be set before anything imports app.core.settings / app.core.db.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TOKENS", '["test-token"]')
os.environ.setdefault("LOG_JSON", "false")

import pytest

from app.core.db import build_engine, build_session_factory, init_db
from app.core.metrics import ExperimentMetrics
from app.core.settings import Settings
from app.models.schemas.assignment import SubjectIdentity
from app.models.schemas.experiment import ExperimentConfig, ExperimentStatus
from app.services.config_lookup import InMemoryConfigLookup
from app.services.engine import build_experiment_engine

ORG = "org1"


class RecordingTelemetrySink:
    def __init__(self):
        self.exposures = []
        self.errors = []

    async def log_exposure(self, record):
        self.exposures.append(record)

    async def log_error(self, error, context):
        self.errors.append((error, context))


class FailingTelemetrySink(RecordingTelemetrySink):
    async def log_exposure(self, record):
        raise ConnectionError("telemetry sink unavailable")

    async def log_error(self, error, context):
        raise ConnectionError("telemetry sink unavailable")


class SlowTelemetrySink(RecordingTelemetrySink):
    async def log_exposure(self, record):
        await asyncio.sleep(5)
        self.exposures.append(record)


class FailingConfigLookup:
    def __init__(self, failing_keys=None, fallback=None):
        self.failing_keys = set(failing_keys or [])
        self.fallback = fallback

    async def get_experiment_config(self, org_id, experiment_key):
        if not self.failing_keys or experiment_key in self.failing_keys:
            raise ConnectionError("config store unavailable")
        return await self.fallback.get_experiment_config(org_id, experiment_key)

    async def list_experiment_configs(self, org_id):
        raise ConnectionError("config store unavailable")


class SlowConfigLookup:
    def __init__(self, delay):
        self.delay = delay
        self.calls = 0

    async def get_experiment_config(self, org_id, experiment_key):
        self.calls += 1
        await asyncio.sleep(self.delay)
        return None

    async def list_experiment_configs(self, org_id):
        await asyncio.sleep(self.delay)
        return []


def make_config(key, status=ExperimentStatus.RUNNING, allocation=0.5, variants=None, **extra):
    return ExperimentConfig(
        key=key,
        status=status,
        variants=["control", "treatment"] if variants is None else variants,
        traffic_allocation=allocation,
        **extra,
    )


@pytest.fixture
def settings():
    return Settings(
        XP_LOOKUP_TIMEOUT_SECONDS=0.2,
        XP_EXPOSURE_TIMEOUT_SECONDS=0.1,
        TOKENS=["test-token"],
    )


@pytest.fixture
def config_lookup():
    return InMemoryConfigLookup(
        {
            ORG: [
                make_config("exp1"),
                make_config(
                    "all_in",
                    allocation=1.0,
                    variants=["old_cta", "new_cta"],
                    variant_payloads={"new_cta": {"label": "Buy now"}},
                ),
                make_config("all_out", allocation=0.0),
                make_config("draft_exp", status=ExperimentStatus.DRAFT, allocation=1.0),
                make_config("paused_exp", status=ExperimentStatus.PAUSED, allocation=1.0),
                make_config("completed_exp", status=ExperimentStatus.COMPLETED, allocation=1.0),
                make_config("store_a_only", allocation=1.0, store_id="store-a"),
            ]
        }
    )


@pytest.fixture
def telemetry():
    return RecordingTelemetrySink()


@pytest.fixture
def metrics():
    return ExperimentMetrics()


@pytest.fixture
def engine(config_lookup, telemetry, settings, metrics):
    return build_experiment_engine(config_lookup, telemetry, settings=settings, metrics=metrics)


@pytest.fixture
def identity():
    return SubjectIdentity(org_id=ORG, store_id="store-a", subject_key="user42")


@pytest.fixture
def session_factory(tmp_path):
    db_engine = build_engine(f"sqlite:///{tmp_path / 'experiments.db'}")
    init_db(db_engine)
    yield build_session_factory(db_engine)
    db_engine.dispose()
