"""
In-process experiment access for server-rendered pages and background code.

An ``ExperimentSession`` is bound to one subject for one render/request
cycle. It remembers assignments it has already seen (seeded from the
inbound carrier) and fires exposures only when a variant is actually used.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

import structlog

from app.models.schemas.assignment import Assignment, SubjectIdentity
from app.models.schemas.exposure import ExposureResult
from app.services.assignment_service import AssignmentSet
from app.services.engine import ExperimentEngine

logger = structlog.get_logger(__name__)

DEFAULT_SURFACE = "server"


@dataclass
class ExperimentView:
    experiment_key: str
    variant: Optional[Any]
    is_assigned: bool
    error: Optional[Exception] = None
    # the assigned variant's configuration, when the experiment defines one
    payload: Optional[Dict[str, Any]] = None


class ExperimentSession:
    def __init__(
        self,
        engine: ExperimentEngine,
        identity: SubjectIdentity,
        carrier: Optional[Mapping[str, str]] = None,
        surface: str = DEFAULT_SURFACE,
    ):
        self.engine = engine
        self.identity = identity
        self.surface = surface
        self._assignments: dict[str, str] = dict(carrier or {})
        self._new_assignments: dict[str, Assignment] = {}
        self._payloads: dict[str, Optional[Dict[str, Any]]] = {}

    @classmethod
    def from_headers(
        cls,
        engine: ExperimentEngine,
        identity: SubjectIdentity,
        headers: Mapping[str, str],
        surface: str = DEFAULT_SURFACE,
    ) -> "ExperimentSession":
        return cls(engine, identity, carrier=engine.carrier.read(headers), surface=surface)

    @property
    def assignments(self) -> dict[str, str]:
        return dict(self._assignments)

    async def prefetch(self, experiment_keys: Iterable[str]) -> AssignmentSet:
        """Resolves several experiments at once, reusing anything already known."""
        assignment_set = await self.engine.assignments.assign(
            self.identity, experiment_keys, self._assignments
        )
        self._remember(assignment_set)
        return assignment_set

    async def get_assignment(self, experiment_key: str) -> Optional[str]:
        if experiment_key in self._assignments:
            return self._assignments[experiment_key]

        assignment_set = await self.engine.assignments.assign(
            self.identity, [experiment_key], self._assignments
        )
        self._remember(assignment_set)
        return self._assignments.get(experiment_key)

    async def get_payload(self, experiment_key: str) -> Optional[Dict[str, Any]]:
        """
        The configuration of the subject's variant. Carried assignments load it
        from the experiment once per session.
        """
        variant = await self.get_assignment(experiment_key)
        if variant is None:
            return None

        if experiment_key not in self._payloads:
            config = await self.engine.assignments.get_active_config(
                self.identity.org_id, experiment_key, self.identity.store_id
            )
            self._payloads[experiment_key] = config.payload_for(variant) if config else None
        return self._payloads[experiment_key]

    async def use_experiment(
        self,
        experiment_key: str,
        fallback: Optional[Any] = None,
        auto_exposure: bool = True,
        surface: Optional[str] = None,
    ) -> ExperimentView:
        """
        Returns the variant to render, or ``fallback`` when the subject is
        not in the experiment. With ``auto_exposure`` the exposure is
        recorded as part of the call; exposure failures are logged only.
        """
        try:
            variant = await self.get_assignment(experiment_key)
            payload = await self.get_payload(experiment_key)
        except Exception as e:
            logger.exception("session_assignment_failed", experiment_key=experiment_key)
            return ExperimentView(experiment_key, fallback, is_assigned=False, error=e)

        if variant is None:
            return ExperimentView(experiment_key, fallback, is_assigned=False)

        if auto_exposure:
            try:
                await self.record_exposure(experiment_key, surface=surface)
            except Exception:
                logger.exception("session_exposure_failed", experiment_key=experiment_key)

        return ExperimentView(experiment_key, variant, is_assigned=True, payload=payload)

    async def is_in_variant(self, experiment_key: str, variant_key: str) -> bool:
        return await self.get_assignment(experiment_key) == variant_key

    async def record_exposure(
        self, experiment_key: str, surface: Optional[str] = None
    ) -> Optional[ExposureResult]:
        return await self.engine.exposures.record_exposure(
            self.identity.org_id,
            self.identity.store_id,
            self.identity.subject_key,
            experiment_key,
            surface or self.surface,
            variant_key=self._assignments.get(experiment_key),
        )

    def carrier_updates(self) -> list[str]:
        """Set-Cookie values for assignments made during this session."""
        return self.engine.carrier.set_cookies(
            {key: assignment.variant_key for key, assignment in self._new_assignments.items()}
        )

    def propagation_headers(self) -> dict[str, str]:
        return self.engine.carrier.propagation_headers(self._assignments)

    def clear_cache(self) -> None:
        self._assignments.clear()
        self._new_assignments.clear()
        self._payloads.clear()

    def _remember(self, assignment_set: AssignmentSet) -> None:
        self._assignments.update(assignment_set.assignments)
        self._new_assignments.update(assignment_set.new_assignments)
        for key, assignment in assignment_set.new_assignments.items():
            self._payloads[key] = assignment.payload
