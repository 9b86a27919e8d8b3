"""
Prometheus counters for assignment and exposure traffic.

Each ``ExperimentMetrics`` owns its own registry so that several apps (or
tests) in one process never share counters.
"""

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest


class ExperimentMetrics:
    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.assignments_total = Counter(
            "experiment_assignments_total",
            "Fresh assignments produced by the resolver",
            labelnames=("experiment", "variant", "store_id"),
            registry=self.registry,
        )
        self.exposures_total = Counter(
            "experiment_exposures_total",
            "Exposure calls, including deduplicated repeats",
            labelnames=("experiment", "variant", "surface", "first_exposure"),
            registry=self.registry,
        )
        self.resolution_errors_total = Counter(
            "experiment_resolution_errors_total",
            "Config lookups that failed or timed out",
            labelnames=("experiment", "reason"),
            registry=self.registry,
        )
        self.telemetry_failures_total = Counter(
            "experiment_telemetry_failures_total",
            "Telemetry sink writes that failed or timed out",
            labelnames=("reason",),
            registry=self.registry,
        )
        self.guardrail_breaches_total = Counter(
            "experiment_guardrail_breaches_total",
            "Guardrail checks whose value exceeded the threshold",
            labelnames=("experiment", "metric"),
            registry=self.registry,
        )

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float:
        """Current value of a sample, 0.0 when it has not been observed yet."""
        return self.registry.get_sample_value(name, labels or {}) or 0.0

    def render(self) -> bytes:
        return generate_latest(self.registry)
