"""Windowed performance metrics and reputation updates."""

from proposal_engine.performance.aggregator import (
    PerformanceAggregator,
    agent_rollups,
    proposal_stats,
    resource_utilization,
    smoothed_reputation,
    task_stats,
)

__all__ = [
    "PerformanceAggregator",
    "agent_rollups",
    "proposal_stats",
    "resource_utilization",
    "smoothed_reputation",
    "task_stats",
]
