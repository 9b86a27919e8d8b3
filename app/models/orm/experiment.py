from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.models.schemas.experiment import ExperimentStatus

from .base import Base, utcnow

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


# --- Experiment Model ---
class ExperimentORM(Base):
    __tablename__ = "experiments"

    # --- Core Identifiers ---
    experiment_id = Column(String, primary_key=True, index=True)
    org_id = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    # Experiments scoped to a single store; NULL means every store of the org
    store_id = Column(String, nullable=True)

    # --- Lifecycle ---
    status = Column(Enum(ExperimentStatus), default=ExperimentStatus.DRAFT, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # --- Schedule ---
    start_at = Column(DateTime(timezone=True), nullable=True)
    stop_at = Column(DateTime(timezone=True), nullable=True)

    # --- Allocation ---
    # Fraction of subjects routed to the treatment variant, 0.0 - 1.0
    traffic_allocation = Column(Float, nullable=False, default=1.0)
    guardrail_metric = Column(String, nullable=True)

    # Ordered: position 0 is the control
    variants = relationship(
        "VariantORM",
        back_populates="experiment",
        order_by="VariantORM.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (UniqueConstraint("org_id", "key", name="uq_experiments_org_key"),)


# --- Variant Model ---
class VariantORM(Base):
    __tablename__ = "variants"

    variant_id = Column(String, primary_key=True)
    key = Column(String, nullable=False)
    name = Column(String, nullable=True)
    position = Column(Integer, nullable=False, default=0)

    # Additional configuration details (e.g., feature flag overrides)
    configuration_json = Column(JSON_TYPE, nullable=True)

    experiment_id = Column(
        String, ForeignKey("experiments.experiment_id"), nullable=False, index=True
    )
    experiment = relationship("ExperimentORM", back_populates="variants")

    __table_args__ = (
        UniqueConstraint("experiment_id", "key", name="uq_variants_experiment_key"),
    )
