import uuid

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.orm.exposure import ExposureORM
from app.models.schemas.exposure import ExposureRecord


class ExposureRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_exposure(self, record: ExposureRecord) -> bool:
        """
        Persists a first exposure.

        Returns False when a row for the same org/subject/experiment/surface
        already exists (another worker won the race); that is not an error.
        """
        db_exposure = ExposureORM(exposure_id=str(uuid.uuid4()), **record.model_dump())
        try:
            self.db.add(db_exposure)
            self.db.commit()
            return True

        except IntegrityError:
            self.db.rollback()
            return False

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred while recording an exposure: {e}")

    def get_exposures_for_experiment(self, org_id: str, experiment_key: str) -> list[ExposureORM]:
        stmt = (
            select(ExposureORM)
            .where(ExposureORM.org_id == org_id, ExposureORM.experiment_key == experiment_key)
            .order_by(ExposureORM.timestamp)
        )
        return list(self.db.scalars(stmt).all())

    def count_exposures(self, org_id: str, experiment_key: str) -> int:
        stmt = select(func.count()).select_from(ExposureORM).where(
            ExposureORM.org_id == org_id, ExposureORM.experiment_key == experiment_key
        )
        return self.db.scalar(stmt) or 0
