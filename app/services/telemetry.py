"""
Telemetry sinks for exposures and resolution errors.

A sink is append-only and may be called from concurrent requests.
"""

import asyncio
from typing import Any, Protocol

import structlog
from sqlalchemy.orm import sessionmaker

from app.models.schemas.exposure import ExposureRecord
from app.repositories.exposure_repo import ExposureRepository

logger = structlog.get_logger(__name__)


class TelemetrySink(Protocol):
    async def log_exposure(self, record: ExposureRecord) -> None: ...

    async def log_error(self, error: BaseException, context: dict[str, Any]) -> None: ...


class LoggingTelemetrySink:
    """Writes exposures and errors to the structured log only."""

    async def log_exposure(self, record: ExposureRecord) -> None:
        logger.info(
            "experiment_exposure",
            org_id=record.org_id,
            store_id=record.store_id,
            subject_key=record.subject_key,
            experiment_key=record.experiment_key,
            variant_key=record.variant_key,
            surface=record.surface,
            timestamp=record.timestamp.isoformat(),
        )

    async def log_error(self, error: BaseException, context: dict[str, Any]) -> None:
        logger.error(
            "experiment_error",
            error=str(error) or error.__class__.__name__,
            error_type=error.__class__.__name__,
            context=context,
        )


class DatabaseTelemetrySink(LoggingTelemetrySink):
    """Persists exposures to the ``exposures`` table; errors go to the log."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def log_exposure(self, record: ExposureRecord) -> None:
        created = await asyncio.to_thread(self._persist, record)
        if not created:
            logger.debug(
                "experiment_exposure_already_persisted",
                org_id=record.org_id,
                experiment_key=record.experiment_key,
                surface=record.surface,
            )

    def _persist(self, record: ExposureRecord) -> bool:
        with self.session_factory() as db:
            return ExposureRepository(db).create_exposure(record)
