from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


class AgentMetrics:
    """Reconcile counter/histogram on a registry owned by one agent (never the global default)."""

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.change_count = Counter(
            "changes_applied",
            "Count of times the rules have been applied (success/error)",
            ["outcome"],
            namespace="permbot",
            subsystem="agent",
            registry=self.registry,
        )
        self.apply_time = Histogram(
            "applytime_secs",
            "Time taken in seconds to apply the rules to Kubernetes following their conversion to C/R/Bs",
            namespace="permbot",
            subsystem="agent",
            registry=self.registry,
        )

    def record_outcome(self, success: bool) -> None:
        self.change_count.labels(outcome="success" if success else "error").inc()

    def observe_apply_time(self, seconds: float) -> None:
        self.apply_time.observe(seconds)

    def outcome_count(self, outcome: str) -> float:
        value = self.registry.get_sample_value("permbot_agent_changes_applied_total", {"outcome": outcome})
        return value or 0.0

    def render(self) -> bytes:
        return generate_latest(self.registry)
