"""
Performance Aggregator — Windowed KPIs and Reputation Learning

Computes proposal and task KPIs over an inclusive time window, per-agent
rollups, and updates agent reputation with an Exponential Moving Average:

    reputation = (1 - alpha) * reputation + alpha * observed

``observed`` is the mean of the agent's signals in the window: task
completion rate, acceptance rate of proposals in its specialty, and mean
rating of those proposals normalized to [0, 1]. Agents without any signal
keep their reputation. This is the only writer of agent reputation; the
smoothing step is applied to the stored value inside the snapshot
transaction, so concurrent runs each contribute one step.

Resource utilization is in-progress tasks per registered agent, banded
Low (< 1), Medium (< 2) or High by default.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import statistics
from collections.abc import Mapping, Sequence
from datetime import timedelta

from proposal_engine.config import EngineConfig
from proposal_engine.deadline import bounded
from proposal_engine.errors import EngineError
from proposal_engine.models import (
    Agent,
    AgentPerformance,
    Band,
    Evaluation,
    PerformanceMetrics,
    Proposal,
    ProposalStats,
    ProposalStatus,
    Task,
    TaskStats,
    TaskStatus,
    TimeWindow,
    utcnow,
)
from proposal_engine.storage.repository import Repository

logger = logging.getLogger(__name__)


def _rate(part: int, total: int) -> float:
    return part / total if total else 0.0


def proposal_stats(proposals: Sequence[Proposal]) -> ProposalStats:
    accepted = sum(1 for p in proposals if p.status == ProposalStatus.ACCEPTED)
    rejected = sum(1 for p in proposals if p.status == ProposalStatus.REJECTED)
    decision_times = [
        (p.decided_at - p.created_at).total_seconds()
        for p in proposals
        if p.status.is_terminal and p.decided_at is not None
    ]
    return ProposalStats(
        total=len(proposals),
        accepted=accepted,
        rejected=rejected,
        open=len(proposals) - accepted - rejected,
        acceptance_rate=_rate(accepted, len(proposals)),
        avg_decision_seconds=statistics.fmean(decision_times) if decision_times else 0.0,
    )


def task_stats(tasks: Sequence[Task]) -> TaskStats:
    counts = {status: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status] += 1

    completion_times = [
        (t.completed_at - t.created_at).total_seconds()
        for t in tasks
        if t.completed_at is not None and t.created_at is not None
    ]
    return TaskStats(
        total=len(tasks),
        pending=counts[TaskStatus.PENDING],
        assigned=counts[TaskStatus.ASSIGNED],
        in_progress=counts[TaskStatus.IN_PROGRESS],
        completed=counts[TaskStatus.COMPLETED],
        completion_rate=_rate(counts[TaskStatus.COMPLETED], len(tasks)),
        avg_completion_seconds=statistics.fmean(completion_times) if completion_times else 0.0,
    )


def resource_utilization(
    in_progress: int, agent_count: int, config: EngineConfig
) -> tuple[float, Band]:
    """In-progress tasks per agent and its Low/Medium/High band."""
    rate = in_progress / agent_count if agent_count else 0.0
    return rate, Band.of(rate, config.utilization_low_max, config.utilization_medium_max)


def smoothed_reputation(current: float, observed: float, alpha: float) -> float:
    updated = (1 - alpha) * current + alpha * observed
    return max(0.0, min(1.0, updated))


def agent_rollups(
    agents: Sequence[Agent],
    proposals: Sequence[Proposal],
    tasks: Sequence[Task],
    evaluations: Mapping[str, Sequence[Evaluation]],
    config: EngineConfig,
) -> tuple[AgentPerformance, ...]:
    """Per-agent performance, best rated first, ties by agent id.

    ``reputation`` is a preview from the reputation read here; the committed
    value is smoothed again from the stored reputation when the snapshot is
    written.
    """
    score_span = config.score_max - config.score_min
    rollups = []

    for agent in agents:
        assigned = [t for t in tasks if t.assigned_agent_id == agent.id]
        completed = sum(1 for t in assigned if t.status == TaskStatus.COMPLETED)

        authored = [p for p in proposals if p.specialty == agent.specialty]
        decided = [p for p in authored if p.status.is_terminal]
        accepted = sum(1 for p in decided if p.status == ProposalStatus.ACCEPTED)
        ratings = [e.score for p in authored for e in evaluations.get(p.id, ())]
        average_rating = statistics.fmean(ratings) if ratings else 0.0

        signals = []
        if assigned:
            signals.append(completed / len(assigned))
        if decided:
            signals.append(accepted / len(decided))
        if ratings:
            signals.append((average_rating - config.score_min) / score_span)

        observed = statistics.fmean(signals) if signals else None
        reputation = agent.reputation
        if observed is not None:
            reputation = smoothed_reputation(
                agent.reputation, observed, config.reputation_smoothing
            )

        rollups.append(
            AgentPerformance(
                agent_id=agent.id,
                name=agent.name,
                completed_tasks=completed,
                accepted_proposals=accepted,
                average_rating=average_rating,
                reputation=reputation,
                observed=observed,
            )
        )
    rollups.sort(key=lambda r: (-r.average_rating, r.agent_id))
    return tuple(rollups)


class PerformanceAggregator:
    """Computes windowed metrics and persists them as immutable snapshots."""

    def __init__(self, repository: Repository, config: EngineConfig | None = None) -> None:
        self.repository = repository
        self.config = config or EngineConfig()

    async def compute_metrics(self, window: TimeWindow) -> PerformanceMetrics:
        """Compute metrics for ``window`` and write exactly one snapshot.

        An empty window yields all-zero metrics. The returned metrics carry
        the reputations as committed with the snapshot.
        """
        timeout = self.config.call_timeout_seconds
        proposals, tasks, agents = await asyncio.gather(
            bounded(self.repository.get_proposals_in_range(window), timeout, "get_proposals_in_range"),
            bounded(self.repository.get_tasks_in_range(window), timeout, "get_tasks_in_range"),
            bounded(self.repository.get_agents(), timeout, "get_agents"),
        )
        evaluation_lists = await asyncio.gather(
            *(
                bounded(self.repository.get_evaluations(p.id), timeout, "get_evaluations")
                for p in proposals
            )
        )
        evaluations = {p.id: evs for p, evs in zip(proposals, evaluation_lists)}

        stats = task_stats(tasks)
        utilization_rate, utilization = resource_utilization(
            stats.in_progress, len(agents), self.config
        )
        metrics = PerformanceMetrics(
            window=window,
            computed_at=utcnow(),
            proposals=proposal_stats(proposals),
            tasks=stats,
            agents=agent_rollups(agents, proposals, tasks, evaluations, self.config),
            utilization_rate=utilization_rate,
            resource_utilization=utilization,
        )
        metrics = await bounded(
            self.repository.save_metrics_snapshot(metrics, self.config.reputation_smoothing),
            timeout,
            "save_metrics_snapshot",
        )
        logger.info(
            "Metrics snapshot %s: %d proposal(s) (%.0f%% accepted), %d task(s) (%.0f%% completed)",
            metrics.snapshot_id,
            metrics.proposals.total,
            metrics.proposals.acceptance_rate * 100,
            metrics.tasks.total,
            metrics.tasks.completion_rate * 100,
        )
        return metrics

    async def run_periodically(
        self,
        stop: asyncio.Event,
        interval_seconds: float | None = None,
        window_seconds: float | None = None,
    ) -> int:
        """
        Compute trailing-window metrics every ``interval_seconds`` until ``stop`` is set.

        A failed cycle is logged and the loop carries on with the next one.

        Returns:
            Number of cycles run
        """
        interval = interval_seconds or self.config.metrics_interval_seconds
        length = timedelta(seconds=window_seconds or self.config.metrics_window_seconds)
        cycles = 0

        while not stop.is_set():
            end = utcnow()
            try:
                await self.compute_metrics(TimeWindow(start=end - length, end=end))
            except EngineError:
                logger.exception("Metrics cycle failed")
            cycles += 1

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=interval)

        return cycles
