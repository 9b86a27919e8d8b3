import enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.carrier import is_carrier_token

# Served when an experiment has fewer than two configured variants
FALLBACK_VARIANTS = ("control", "treatment")


class ExperimentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


def _as_utc(value: datetime) -> datetime:
    # naive timestamps coming out of the database are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_variant_keys(keys: List[str]) -> List[str]:
    normalized = [key.strip() if isinstance(key, str) else key for key in keys]
    if any(not key for key in normalized):
        raise ValueError("Variant keys must be non-empty strings.")
    if not all(is_carrier_token(key) for key in normalized):
        raise ValueError("Variant keys must not contain whitespace, quotes, ';', ',' or '='.")
    if len(set(normalized)) != len(normalized):
        raise ValueError("Variant keys must be unique within an experiment.")
    return normalized


def _check_experiment_key(key: str) -> str:
    # the key is written into cookie names and the propagation header
    if not is_carrier_token(key):
        raise ValueError("Experiment keys must not contain whitespace, quotes, ';', ',' or '='.")
    return key


class ExperimentConfig(BaseModel):
    """
    The subset of an experiment that assignment needs.

    ``variants`` is ordered: the first entry is the control, the second the
    treatment. ``traffic_allocation`` is the fraction of subjects routed to
    the treatment.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    status: ExperimentStatus
    variants: List[str] = Field(default_factory=list)
    traffic_allocation: float = Field(1.0, ge=0.0, le=1.0)
    store_id: Optional[str] = None
    start_at: Optional[datetime] = None
    stop_at: Optional[datetime] = None
    guardrail_metric: Optional[str] = None
    # variant key -> configuration handed to callers alongside the variant
    variant_payloads: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @field_validator("key")
    @classmethod
    def _validate_key(cls, value: str) -> str:
        return _check_experiment_key(value)

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("variants")
    @classmethod
    def _validate_variants(cls, value: List[str]) -> List[str]:
        return _normalize_variant_keys(value)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """RUNNING, and inside the optional start/stop schedule."""
        if self.status != ExperimentStatus.RUNNING:
            return False

        now = _as_utc(now or datetime.now(timezone.utc))
        if self.start_at and now < _as_utc(self.start_at):
            return False
        if self.stop_at and now > _as_utc(self.stop_at):
            return False
        return True

    def serves_store(self, store_id: Optional[str]) -> bool:
        return self.store_id is None or self.store_id == store_id

    @property
    def servable_variants(self) -> List[str]:
        """The configured variants, or control/treatment when fewer than two are configured."""
        if len(self.variants) >= 2:
            return list(self.variants)
        return list(FALLBACK_VARIANTS)

    def payload_for(self, variant_key: str) -> Optional[Dict[str, Any]]:
        return self.variant_payloads.get(variant_key)


# --- Authoring ---


class VariantConfig(BaseModel):
    """Configuration for a single variant in an experiment."""

    key: str
    name: Optional[str] = None
    # Optional: configuration specific to the variant (e.g. copy, feature flags)
    configuration_json: Optional[Dict] = None


class ExperimentCreateModel(BaseModel):
    """Data model for creating an experiment."""

    org_id: str
    key: str = Field(..., min_length=1)
    name: str
    description: Optional[str] = None
    store_id: Optional[str] = None
    status: ExperimentStatus = ExperimentStatus.DRAFT
    traffic_allocation: float = Field(
        1.0,
        ge=0.0,
        le=1.0,
        description="Fraction of subjects routed to the treatment variant.",
    )
    start_at: Optional[datetime] = None
    stop_at: Optional[datetime] = None
    guardrail_metric: Optional[str] = None
    variants: List[VariantConfig] = Field(..., min_length=2)

    @field_validator("key")
    @classmethod
    def _validate_key(cls, value: str) -> str:
        return _check_experiment_key(value)

    @model_validator(mode="after")
    def _check_variants_and_schedule(self):
        _normalize_variant_keys([variant.key for variant in self.variants])
        if self.start_at and self.stop_at and _as_utc(self.stop_at) <= _as_utc(self.start_at):
            raise ValueError("stop_at must be later than start_at.")
        return self


class ExperimentVariantResponseModel(BaseModel):
    variant_id: str
    key: str
    name: Optional[str] = None
    position: int
    configuration_json: Optional[Dict] = None

    model_config = ConfigDict(from_attributes=True)


class ExperimentResponseModel(BaseModel):
    experiment_id: str = Field(..., description="Unique ID for the experiment.")
    org_id: str
    key: str
    name: str
    description: Optional[str] = None
    store_id: Optional[str] = None
    status: ExperimentStatus
    traffic_allocation: float
    start_at: Optional[datetime] = None
    stop_at: Optional[datetime] = None
    guardrail_metric: Optional[str] = None
    variants: List[ExperimentVariantResponseModel]

    model_config = ConfigDict(from_attributes=True)


class ExperimentStatusUpdateModel(BaseModel):
    org_id: str
    status: ExperimentStatus


class GuardrailCheckModel(BaseModel):
    org_id: str
    metric: str
    value: float
    threshold: float
