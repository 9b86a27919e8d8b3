import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app.models.orm.experiment import ExperimentORM, VariantORM
from app.models.schemas.experiment import ExperimentCreateModel, ExperimentStatus


class ExperimentRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentORM:
        """
        Creates an experiment together with its ordered variants.

        The first variant in ``experiment_data.variants`` becomes the control
        (position 0).

        Raises:
            ValueError: the key is already used within the organization.
            RuntimeError: any other database failure.
        """
        try:
            experiment_id = str(uuid.uuid4())
            experiment_dict = experiment_data.model_dump(exclude={"variants"})
            experiment_dict["experiment_id"] = experiment_id

            db_experiment = ExperimentORM(**experiment_dict)
            for position, variant_data in enumerate(experiment_data.variants):
                db_experiment.variants.append(
                    VariantORM(
                        variant_id=str(uuid.uuid4()),
                        experiment_id=experiment_id,
                        key=variant_data.key.strip(),
                        name=variant_data.name,
                        position=position,
                        configuration_json=variant_data.configuration_json,
                    )
                )

            self.db.add(db_experiment)
            self.db.commit()
            self.db.refresh(db_experiment)
            return db_experiment

        except IntegrityError as e:
            self.db.rollback()
            raise ValueError(
                f"Experiment key '{experiment_data.key}' already exists for org "
                f"'{experiment_data.org_id}': {str(e).splitlines()[0]}"
            )

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during experiment creation: {e}")

    def get_experiment_with_variants(
        self, org_id: str, experiment_key: str
    ) -> ExperimentORM | None:
        """
        Fetches a single experiment by (org_id, key) and eagerly loads its
        variants in the same round trip.
        """
        stmt = (
            select(ExperimentORM)
            .where(ExperimentORM.org_id == org_id, ExperimentORM.key == experiment_key)
            .options(selectinload(ExperimentORM.variants))
        )
        return self.db.scalars(stmt).one_or_none()

    def list_experiments(
        self,
        org_id: str,
        status: Optional[ExperimentStatus] = None,
    ) -> list[ExperimentORM]:
        stmt = (
            select(ExperimentORM)
            .where(ExperimentORM.org_id == org_id)
            .options(selectinload(ExperimentORM.variants))
            .order_by(ExperimentORM.key)
        )
        if status is not None:
            stmt = stmt.where(ExperimentORM.status == status)

        return list(self.db.scalars(stmt).all())

    def update_status(
        self, org_id: str, experiment_key: str, status: ExperimentStatus
    ) -> ExperimentORM | None:
        experiment = self.get_experiment_with_variants(org_id, experiment_key)
        if experiment is None:
            return None

        try:
            experiment.status = status
            self.db.commit()
            self.db.refresh(experiment)
            return experiment
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred while updating experiment status: {e}")
