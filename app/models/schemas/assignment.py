from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Assignment(BaseModel):
    """A subject's variant for one experiment, valid for ``ttl_seconds``."""

    experiment_key: str
    variant_key: str = Field(..., description="The key of the variant the subject was assigned.")
    assigned_at: datetime = Field(default_factory=utcnow)
    ttl_seconds: int = 30 * 24 * 60 * 60
    # The variant's configuration (copy, flags, ...), when the experiment defines one
    payload: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(frozen=True)

    @computed_field
    @property
    def expires_at(self) -> datetime:
        return self.assigned_at + timedelta(seconds=self.ttl_seconds)


class SubjectIdentity(BaseModel):
    """Who is being bucketed, and for which organization/store."""

    org_id: str
    store_id: Optional[str] = None
    subject_key: str

    model_config = ConfigDict(frozen=True)


class AssignmentLookupModel(BaseModel):
    org_id: str
    store_id: Optional[str] = None
    subject_key: str
    experiment_key: str


class AssignRequestModel(BaseModel):
    """Body of ``POST /api/experiments/assign``."""

    experiments: List[str] = Field(default_factory=list)


class AssignResponseModel(BaseModel):
    assignments: Dict[str, str] = Field(default_factory=dict)
    new_assignments: Dict[str, str] = Field(
        default_factory=dict, serialization_alias="newAssignments"
    )
