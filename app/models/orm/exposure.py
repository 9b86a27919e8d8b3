from sqlalchemy import Column, DateTime, String, UniqueConstraint

from .base import Base, utcnow


class ExposureORM(Base):
    """One row per first exposure of a subject to an experiment on a surface."""

    __tablename__ = "exposures"

    exposure_id = Column(String, primary_key=True, index=True)

    org_id = Column(String, nullable=False, index=True)
    store_id = Column(String, nullable=True)
    subject_key = Column(String, nullable=False, index=True)
    experiment_key = Column(String, nullable=False, index=True)
    variant_key = Column(String, nullable=False)
    surface = Column(String, nullable=False)

    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint(
            "org_id",
            "subject_key",
            "experiment_key",
            "surface",
            name="uq_exposures_once",
        ),
    )
