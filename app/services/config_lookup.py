"""
Where the assignment engine gets experiment configuration from.

The engine only reads configuration. Malformed rows are rejected here, at
the load boundary, by validating them into ``ExperimentConfig``; a
validation failure surfaces as a lookup error, which the resolver degrades
to "no assignment".
"""

import asyncio
from collections.abc import Iterable, Mapping
from typing import Optional, Protocol

from sqlalchemy.orm import sessionmaker

from app.models.orm.experiment import ExperimentORM
from app.models.schemas.experiment import ExperimentConfig
from app.repositories.experiment_repo import ExperimentRepository


class ExperimentConfigLookup(Protocol):
    async def get_experiment_config(
        self, org_id: str, experiment_key: str
    ) -> Optional[ExperimentConfig]: ...

    async def list_experiment_configs(self, org_id: str) -> list[ExperimentConfig]: ...


def to_experiment_config(experiment: ExperimentORM) -> ExperimentConfig:
    return ExperimentConfig(
        key=experiment.key,
        status=experiment.status,
        variants=[variant.key for variant in experiment.variants],
        traffic_allocation=experiment.traffic_allocation,
        store_id=experiment.store_id,
        start_at=experiment.start_at,
        stop_at=experiment.stop_at,
        guardrail_metric=experiment.guardrail_metric,
        variant_payloads={
            variant.key: variant.configuration_json
            for variant in experiment.variants
            if variant.configuration_json is not None
        },
    )


class InMemoryConfigLookup:
    """Configuration held in a dict keyed by (org_id, experiment_key)."""

    def __init__(self, configs: Optional[Mapping[str, Iterable[ExperimentConfig | dict]]] = None):
        self._configs: dict[tuple[str, str], ExperimentConfig] = {}
        for org_id, org_configs in (configs or {}).items():
            for config in org_configs:
                self.put(org_id, config)

    def put(self, org_id: str, config: ExperimentConfig | dict) -> ExperimentConfig:
        if not isinstance(config, ExperimentConfig):
            config = ExperimentConfig.model_validate(config)
        self._configs[(org_id, config.key)] = config
        return config

    def remove(self, org_id: str, experiment_key: str) -> None:
        self._configs.pop((org_id, experiment_key), None)

    async def get_experiment_config(
        self, org_id: str, experiment_key: str
    ) -> Optional[ExperimentConfig]:
        return self._configs.get((org_id, experiment_key))

    async def list_experiment_configs(self, org_id: str) -> list[ExperimentConfig]:
        return [config for (owner, _), config in self._configs.items() if owner == org_id]


class DatabaseConfigLookup:
    """
    Reads experiments through ``ExperimentRepository``.

    Every lookup opens its own session in a worker thread, so concurrent
    lookups for one request never share a session.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def get_experiment_config(
        self, org_id: str, experiment_key: str
    ) -> Optional[ExperimentConfig]:
        return await asyncio.to_thread(self._load, org_id, experiment_key)

    async def list_experiment_configs(self, org_id: str) -> list[ExperimentConfig]:
        return await asyncio.to_thread(self._load_all, org_id)

    def _load(self, org_id: str, experiment_key: str) -> Optional[ExperimentConfig]:
        with self.session_factory() as db:
            experiment = ExperimentRepository(db).get_experiment_with_variants(org_id, experiment_key)
            if experiment is None:
                return None
            return to_experiment_config(experiment)

    def _load_all(self, org_id: str) -> list[ExperimentConfig]:
        with self.session_factory() as db:
            return [
                to_experiment_config(experiment)
                for experiment in ExperimentRepository(db).list_experiments(org_id)
            ]
