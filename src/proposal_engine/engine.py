"""Engine facade exposing the operations offered to CLI and HTTP callers."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from proposal_engine.allocation import Allocation, TaskAllocationScorer
from proposal_engine.config import EngineConfig, load_config
from proposal_engine.consensus import (
    ConsensusAggregate,
    ConsensusDecisionEngine,
    Decision,
    EvaluationAggregator,
    InsufficientEvidence,
)
from proposal_engine.deadline import bounded
from proposal_engine.errors import (
    AlreadyDecided,
    InvalidInput,
    NotFound,
    OracleMalformedResponse,
)
from proposal_engine.models import (
    Agent,
    Evaluation,
    PerformanceMetrics,
    Proposal,
    Task,
    TaskStatus,
    TimeWindow,
)
from proposal_engine.oracle import HttpScoringOracle, ScoringOracle, oracle_from_env
from proposal_engine.performance import PerformanceAggregator
from proposal_engine.storage import Repository, SQLiteRepository

logger = logging.getLogger(__name__)


def _require_text(value: str | None, field_name: str) -> str:
    if value is None or not value.strip():
        raise InvalidInput(f"{field_name} cannot be empty")
    return value.strip()


class ProposalEngine:
    """
    Entry point for proposal decisions and task allocation.

    Components are stateless; every operation re-reads the repository.
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
        self.aggregator = EvaluationAggregator(repository, self.config)
        self.decisions = ConsensusDecisionEngine(repository, self.config, self.aggregator)
        self.allocator = TaskAllocationScorer(repository, self.config, oracle)
        self.performance = PerformanceAggregator(repository, self.config)

    @classmethod
    async def open(
        cls,
        data_dir: Path | None = None,
        oracle: ScoringOracle | None = None,
    ) -> ProposalEngine:
        """Build an engine on the SQLite store and config.toml in ``data_dir``.

        Without an explicit ``oracle`` the HTTP oracle from the environment is
        used, if one is configured.
        """
        repository = SQLiteRepository(data_dir)
        config = load_config(repository.data_dir / "config.toml")
        await repository.ensure_schema()
        if oracle is None:
            oracle = oracle_from_env(config.score_min, config.score_max)
        return cls(repository, config, oracle)

    async def close(self) -> None:
        if isinstance(self.oracle, HttpScoringOracle):
            await self.oracle.close()

    @property
    def _timeout(self) -> float:
        return self.config.call_timeout_seconds

    # Agents and proposals

    async def register_agent(
        self,
        name: str,
        specialty: str,
        capabilities: Iterable[str] = (),
        reputation: float | None = None,
    ) -> Agent:
        name = _require_text(name, "name")
        specialty = _require_text(specialty, "specialty")
        caps = self._clean_capabilities(capabilities)
        if reputation is not None and not 0.0 <= reputation <= 1.0:
            raise InvalidInput(f"reputation must be in [0.0, 1.0], got {reputation}")
        if reputation is None:
            reputation = self.config.default_reputation

        agent = await bounded(
            self.repository.save_agent(name, specialty, caps, reputation),
            self._timeout,
            "save_agent",
        )
        logger.info("Registered agent %s (%s)", agent.id, agent.specialty)
        return agent

    async def list_agents(self) -> list[Agent]:
        return await bounded(self.repository.get_agents(), self._timeout, "get_agents")

    async def update_agent_capabilities(self, agent_id: str, capabilities: Iterable[str]) -> Agent:
        """Replace an agent's capability tags; affects allocations from now on."""
        await bounded(
            self.repository.update_agent_capabilities(
                agent_id, self._clean_capabilities(capabilities)
            ),
            self._timeout,
            "update_agent_capabilities",
        )
        agent = await bounded(self.repository.get_agent(agent_id), self._timeout, "get_agent")
        if agent is None:
            raise NotFound(f"Agent {agent_id} not found")
        return agent

    async def submit_proposal(self, content: str, specialty: str) -> Proposal:
        content = _require_text(content, "content")
        specialty = _require_text(specialty, "specialty")
        return await bounded(
            self.repository.save_proposal(content, specialty), self._timeout, "save_proposal"
        )

    # Evaluations and consensus

    def _check_score(self, score: float) -> None:
        if (
            isinstance(score, bool)
            or not isinstance(score, (int, float))
            or not math.isfinite(score)
            or not self.config.score_min <= score <= self.config.score_max
        ):
            raise InvalidInput(
                f"score must be a number in [{self.config.score_min}, {self.config.score_max}], "
                f"got {score!r}"
            )

    async def submit_evaluation(
        self,
        proposal_id: str,
        evaluator_id: str,
        score: float | None = None,
        explanation: str = "",
    ) -> Evaluation:
        """
        Record one evaluator's judgment of a proposal.

        Without ``score`` the oracle scores the proposal content. Oracle
        failures abort the call; no score is ever made up.
        """
        oracle = self.oracle
        if score is not None:
            self._check_score(score)
        elif oracle is None:
            raise InvalidInput("score is required when no scoring oracle is configured")

        proposal = await bounded(
            self.repository.get_proposal(proposal_id), self._timeout, "get_proposal"
        )
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found")
        if proposal.status.is_terminal:
            raise AlreadyDecided(proposal_id, proposal.status.value)

        evaluator = await bounded(
            self.repository.get_agent(evaluator_id), self._timeout, "get_agent"
        )
        if evaluator is None:
            raise NotFound(f"Agent {evaluator_id} not found")

        if score is None and oracle is not None:
            judgment = await bounded(
                oracle.evaluate(proposal.content), self._timeout, "oracle evaluate"
            )
            try:
                self._check_score(judgment.score)
            except InvalidInput as exc:
                raise OracleMalformedResponse(exc.message) from exc
            score, explanation = judgment.score, judgment.explanation

        evaluation = await bounded(
            self.repository.save_evaluation(proposal_id, evaluator_id, float(score), explanation),
            self._timeout,
            "save_evaluation",
        )
        logger.info(
            "Agent %s scored proposal %s at %.2f", evaluator_id, proposal_id, evaluation.score
        )
        return evaluation

    async def aggregate(self, proposal_id: str) -> ConsensusAggregate | InsufficientEvidence:
        return await self.aggregator.aggregate(proposal_id)

    async def decide_consensus(self, proposal_id: str) -> Decision:
        return await self.decisions.decide(proposal_id)

    # Tasks

    @staticmethod
    def _clean_capabilities(capabilities: Iterable[str]) -> frozenset[str]:
        return frozenset(c.strip() for c in capabilities if c and c.strip())

    async def submit_task(
        self,
        description: str,
        required_capabilities: Iterable[str] = (),
        priority: int = 0,
    ) -> Task:
        """Store a pending task for later allocation."""
        description = _require_text(description, "description")
        return await bounded(
            self.repository.save_task(
                description, self._clean_capabilities(required_capabilities), priority
            ),
            self._timeout,
            "save_task",
        )

    async def allocate_task(
        self,
        description: str,
        required_capabilities: Iterable[str] = (),
        priority: int = 0,
    ) -> Allocation:
        """Create a task and assign it in one write."""
        task = Task(
            description=description,
            required_capabilities=self._clean_capabilities(required_capabilities),
            priority=priority,
        )
        return await self.allocator.allocate(task)

    async def allocate_existing_task(self, task_id: str) -> Allocation:
        """Assign a stored pending task."""
        task = await bounded(self.repository.get_task(task_id), self._timeout, "get_task")
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return await self.allocator.allocate(task)

    async def update_task_status(self, task_id: str, status: TaskStatus) -> Task:
        """Advance an allocated task: assigned -> in_progress -> completed."""
        if status in (TaskStatus.PENDING, TaskStatus.ASSIGNED):
            raise InvalidInput(f"Tasks cannot be moved to {status.value}; allocation assigns them")

        task = await bounded(self.repository.get_task(task_id), self._timeout, "get_task")
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        if task.assigned_agent_id is None:
            raise InvalidInput(f"Task {task_id} must be allocated first")
        if not task.status.is_active:
            raise InvalidInput(f"Task {task_id} is already {task.status.value}")

        return await bounded(
            self.repository.update_task_status(task_id, status),
            self._timeout,
            "update_task_status",
        )

    # Metrics

    async def compute_window_metrics(self, start: datetime, end: datetime) -> PerformanceMetrics:
        try:
            window = TimeWindow(start=start, end=end)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(str(exc)) from exc
        return await self.performance.compute_metrics(window)

    async def metrics_history(self, limit: int = 20) -> list[dict]:
        return await bounded(
            self.repository.get_metrics_snapshots(limit), self._timeout, "get_metrics_snapshots"
        )
