# services/experiment_service.py

from collections import Counter
from typing import List, Optional

import structlog
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.metrics import ExperimentMetrics
from app.models.orm.experiment import ExperimentORM
from app.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentResponseModel,
    ExperimentStatus,
)
from app.models.schemas.exposure import ExposureSummaryModel
from app.repositories.experiment_repo import ExperimentRepository
from app.repositories.exposure_repo import ExposureRepository

logger = structlog.get_logger(__name__)


class ExperimentService:
    """Authoring side of the configuration store: create, list, change status."""

    def __init__(self, db: Session, metrics: Optional[ExperimentMetrics] = None):
        self.experiment_repo = ExperimentRepository(db)
        self.exposure_repo = ExposureRepository(db)
        self.metrics = metrics or ExperimentMetrics()
        self.db = db

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentResponseModel:
        """
        Handles the business logic and delegation for creating a new experiment.

        Duplicate keys within an organization surface as 409, other database
        failures as 500.
        """
        try:
            experiment_orm: ExperimentORM = self.experiment_repo.create_experiment(experiment_data)
        except ValueError as e:
            logger.info("experiment_create_conflict", org_id=experiment_data.org_id, key=experiment_data.key)
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except RuntimeError:
            logger.exception("experiment_create_failed", org_id=experiment_data.org_id, key=experiment_data.key)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create experiment.",
            )

        logger.info("experiment_created", **experiment_orm.to_dict())
        return ExperimentResponseModel.model_validate(experiment_orm)

    def get_experiment(self, org_id: str, experiment_key: str) -> ExperimentResponseModel:
        experiment_orm = self._get_or_404(org_id, experiment_key)
        return ExperimentResponseModel.model_validate(experiment_orm)

    def list_experiments(
        self, org_id: str, status_filter: Optional[ExperimentStatus] = None
    ) -> List[ExperimentResponseModel]:
        return [
            ExperimentResponseModel.model_validate(experiment)
            for experiment in self.experiment_repo.list_experiments(org_id, status_filter)
        ]

    def set_status(
        self, org_id: str, experiment_key: str, new_status: ExperimentStatus
    ) -> ExperimentResponseModel:
        """
        Moves an experiment through DRAFT -> RUNNING <-> PAUSED -> COMPLETED.

        A completed experiment cannot be restarted.
        """
        experiment_orm = self._get_or_404(org_id, experiment_key)
        if experiment_orm.status == ExperimentStatus.COMPLETED and new_status != ExperimentStatus.COMPLETED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Experiment {experiment_key} is completed and cannot be changed.",
            )

        try:
            updated = self.experiment_repo.update_status(org_id, experiment_key, new_status)
        except RuntimeError:
            logger.exception("experiment_status_update_failed", org_id=org_id, key=experiment_key)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to update experiment status.",
            )

        logger.info(
            "experiment_status_changed",
            org_id=org_id,
            key=experiment_key,
            status=new_status.value,
        )
        return ExperimentResponseModel.model_validate(updated)

    def check_guardrail(
        self, org_id: str, experiment_key: str, metric: str, value: float, threshold: float
    ) -> bool:
        """
        Returns False when ``metric`` is the experiment's guardrail metric and
        ``value`` exceeds ``threshold``. Unknown experiments and unrelated
        metrics pass.
        """
        experiment_orm = self.experiment_repo.get_experiment_with_variants(org_id, experiment_key)
        if experiment_orm is None or experiment_orm.guardrail_metric != metric:
            return True

        breach = value > threshold
        if breach:
            self.metrics.guardrail_breaches_total.labels(experiment=experiment_key, metric=metric).inc()
            logger.warning(
                "experiment_guardrail_breach",
                org_id=org_id,
                experiment_id=experiment_orm.experiment_id,
                key=experiment_key,
                metric=metric,
                value=value,
                threshold=threshold,
            )
        return not breach

    def exposure_summary(self, org_id: str, experiment_key: str) -> ExposureSummaryModel:
        """Counts the persisted first exposures of an experiment per variant and surface."""
        self._get_or_404(org_id, experiment_key)

        by_variant: Counter = Counter()
        by_surface: Counter = Counter()
        for exposure in self.exposure_repo.get_exposures_for_experiment(org_id, experiment_key):
            by_variant[exposure.variant_key] += 1
            by_surface[exposure.surface] += 1

        return ExposureSummaryModel(
            experiment_key=experiment_key,
            total=self.exposure_repo.count_exposures(org_id, experiment_key),
            by_variant=dict(by_variant),
            by_surface=dict(by_surface),
        )

    def _get_or_404(self, org_id: str, experiment_key: str) -> ExperimentORM:
        experiment_orm = self.experiment_repo.get_experiment_with_variants(org_id, experiment_key)
        if not experiment_orm:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Experiment {experiment_key} not found.",
            )
        return experiment_orm
