"""
Task Allocation Scorer — Capability, Workload and Track-Record Weighted Ranking

Scoring formula (weights from EngineConfig, summing to 1.0):
    final_score = capability_match * 0.4 + workload_inverse * 0.35 + performance * 0.25

- capability_match: fraction of required capabilities the agent holds
  (1.0 when the task requires none)
- workload_inverse: 1 - min(1, active_tasks / workload_cap)
- performance: historical completion rate, 0.5 for agents without history

Ties go to the lowest agent id. A task with no required capabilities makes
every agent eligible.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from proposal_engine.config import EngineConfig
from proposal_engine.deadline import bounded
from proposal_engine.errors import (
    InvalidInput,
    NoEligibleAgents,
    NotFound,
    OracleError,
    Timeout,
)
from proposal_engine.models import Agent, Task, TaskStatus, Workload
from proposal_engine.oracle import ScoringOracle
from proposal_engine.storage.repository import Repository

logger = logging.getLogger(__name__)

# Scores equal to this many decimals count as a tie
_TIE_PRECISION = 9


@dataclass(frozen=True)
class CandidateScore:
    """Scoring breakdown for one eligible agent."""

    agent: Agent
    capability_match: float
    workload_inverse: float
    performance: float
    final_score: float


@dataclass(frozen=True)
class Allocation:
    """A committed task assignment."""

    task: Task
    agent_id: str
    explanation: str
    ranking: tuple[CandidateScore, ...]
    oracle_explained: bool = False

    @property
    def best(self) -> CandidateScore:
        return self.ranking[0]


def eligible_agents(task: Task, agents: Sequence[Agent]) -> list[Agent]:
    """Agents sharing at least one required capability, or all agents when none are required."""
    if not task.required_capabilities:
        return list(agents)
    return [a for a in agents if a.capabilities & task.required_capabilities]


def capability_match(task: Task, agent: Agent) -> float:
    if not task.required_capabilities:
        return 1.0
    held = task.required_capabilities & agent.capabilities
    return len(held) / len(task.required_capabilities)


def workload_inverse(workload: Workload, workload_cap: int) -> float:
    return 1.0 - min(1.0, workload.active_task_count / workload_cap)


def historical_performance(workload: Workload, neutral: float) -> float:
    if workload.completion_rate is None:
        return neutral
    return workload.completion_rate


def rank_candidates(
    task: Task,
    agents: Sequence[Agent],
    workloads: Mapping[str, Workload],
    config: EngineConfig,
) -> list[CandidateScore]:
    """Score ``agents`` for ``task``, best first, ties by lowest agent id."""
    scored = []
    for agent in agents:
        workload = workloads.get(agent.id) or Workload(agent.id, 0, None)
        cap = capability_match(task, agent)
        load = workload_inverse(workload, config.workload_cap)
        perf = historical_performance(workload, config.neutral_performance)

        final_score = (
            cap * config.capability_weight
            + load * config.workload_weight
            + perf * config.performance_weight
        )
        scored.append(
            CandidateScore(
                agent=agent,
                capability_match=cap,
                workload_inverse=load,
                performance=perf,
                final_score=final_score,
            )
        )

    scored.sort(key=lambda c: (-round(c.final_score, _TIE_PRECISION), c.agent.id))
    return scored


def template_explanation(best: CandidateScore) -> str:
    return (
        f"Selected {best.agent.name} (score: {best.final_score:.3f}) | "
        f"Capability: {best.capability_match:.3f}, "
        f"Workload: {best.workload_inverse:.3f}, "
        f"Performance: {best.performance:.3f}"
    )


class TaskAllocationScorer:
    """Ranks eligible agents for a task and commits the assignment.

    No lock is held between scoring and commit; workload snapshots may be
    stale by commit time.
    """

    def __init__(
        self,
        repository: Repository,
        config: EngineConfig | None = None,
        oracle: ScoringOracle | None = None,
    ) -> None:
        self.repository = repository
        self.config = config or EngineConfig()
        self.oracle = oracle

    async def allocate(self, task: Task) -> Allocation:
        """
        Assign ``task`` to the best-scoring eligible agent.

        A task without an id is inserted already assigned; a stored task must
        still be pending and is assigned with a conditional update. Exactly
        one task row changes on success, none on failure.
        """
        if not task.description or not task.description.strip():
            raise InvalidInput("Task description cannot be empty")
        if task.id is not None and task.status != TaskStatus.PENDING:
            raise InvalidInput(f"Task {task.id} is already {task.status.value}")

        timeout = self.config.call_timeout_seconds
        agents = await bounded(self.repository.get_agents(), timeout, "get_agents")
        if not agents:
            raise NoEligibleAgents("No agents are registered")

        candidates = eligible_agents(task, agents)
        if not candidates:
            raise NoEligibleAgents(
                "No agent holds any of: " + ", ".join(sorted(task.required_capabilities))
            )

        workloads = await asyncio.gather(
            *(
                bounded(self.repository.get_agent_workload(a.id), timeout, "get_agent_workload")
                for a in candidates
            )
        )
        ranking = rank_candidates(
            task, candidates, {w.agent_id: w for w in workloads}, self.config
        )
        best = ranking[0]
        explanation, oracle_explained = await self._explain(task, candidates, best)

        if task.id is None:
            committed = await bounded(
                self.repository.save_task(
                    task.description,
                    task.required_capabilities,
                    task.priority,
                    assigned_agent_id=best.agent.id,
                    explanation=explanation,
                ),
                timeout,
                "save_task",
            )
        else:
            updated = await bounded(
                self.repository.update_task_assignment(task.id, best.agent.id, explanation),
                timeout,
                "update_task_assignment",
            )
            current = await bounded(self.repository.get_task(task.id), timeout, "get_task")
            if current is None:
                raise NotFound(f"Task {task.id} not found")
            if not updated:
                raise InvalidInput(f"Task {task.id} is already {current.status.value}")
            committed = current

        logger.info(
            "Task %s assigned to %s (score %.3f, %d candidate(s))",
            committed.id,
            best.agent.id,
            best.final_score,
            len(ranking),
        )
        return Allocation(
            task=committed,
            agent_id=best.agent.id,
            explanation=explanation,
            ranking=tuple(ranking),
            oracle_explained=oracle_explained,
        )

    async def _explain(
        self, task: Task, candidates: Sequence[Agent], best: CandidateScore
    ) -> tuple[str, bool]:
        """Oracle explanation when available and consistent, template otherwise."""
        if self.oracle is None:
            return template_explanation(best), False

        try:
            match = await bounded(
                self.oracle.match_task(task.description, candidates),
                self.config.call_timeout_seconds,
                "match_task",
            )
        except (OracleError, Timeout) as exc:
            logger.warning("Oracle explanation unavailable, using template: %s", exc)
            return template_explanation(best), False

        if match.agent_id not in {a.id for a in candidates}:
            logger.warning(
                "Oracle named non-candidate agent %r, using template", match.agent_id
            )
            return template_explanation(best), False

        if match.agent_id != best.agent.id:
            logger.info(
                "Oracle preferred %s over scored pick %s; using template explanation",
                match.agent_id,
                best.agent.id,
            )
            return template_explanation(best), False

        return match.explanation, True
