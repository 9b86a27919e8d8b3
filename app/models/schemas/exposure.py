from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.schemas.assignment import utcnow


class ExposureRequestModel(BaseModel):
    """Schema for recording an exposure (API input)."""

    org_id: str
    store_id: Optional[str] = None
    subject_key: str
    experiment_key: str
    surface: str = Field(..., min_length=1, description="e.g. 'edge', 'python', 'theme'")
    # The variant the subject was actually shown, when it came from a carrier.
    variant_key: Optional[str] = None


class ExposureRecord(BaseModel):
    """What is handed to the telemetry sink for a first exposure."""

    org_id: str
    store_id: Optional[str] = None
    subject_key: str
    experiment_key: str
    variant_key: str
    surface: str
    timestamp: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True, from_attributes=True)


class ExposureResult(BaseModel):
    experiment_key: str
    variant_key: str
    surface: str
    recorded: bool = True
    # False when the same subject/experiment/surface was already recorded
    first_exposure: bool = True


class ExposureSummaryModel(BaseModel):
    """Persisted first exposures of one experiment."""

    experiment_key: str
    total: int
    by_variant: Dict[str, int] = Field(default_factory=dict)
    by_surface: Dict[str, int] = Field(default_factory=dict)
