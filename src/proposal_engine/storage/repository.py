"""Repository interface consumed by the engine components."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from proposal_engine.models import (
    Agent,
    Evaluation,
    PerformanceMetrics,
    Proposal,
    ProposalStatus,
    Task,
    TaskStatus,
    TimeWindow,
    Workload,
)


class Repository(ABC):
    """Durable store for agents, proposals, evaluations, tasks and metrics.

    Every method is a suspension point. Implementations raise
    ``RepositoryError`` on storage failures and leave persisted state
    unchanged when a write fails.
    """

    @abstractmethod
    async def ensure_schema(self) -> None:
        """Create backing tables if they do not exist."""

    # Agents

    @abstractmethod
    async def save_agent(
        self,
        name: str,
        specialty: str,
        capabilities: Iterable[str] = (),
        reputation: float | None = None,
    ) -> Agent:
        """Register a new agent; ``None`` reputation uses the model default."""

    @abstractmethod
    async def get_agents(self) -> list[Agent]:
        """Return the full roster ordered by id."""

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Agent | None: ...

    @abstractmethod
    async def update_agent_reputation(self, agent_id: str, reputation: float) -> None: ...

    @abstractmethod
    async def update_agent_capabilities(
        self, agent_id: str, capabilities: Iterable[str]
    ) -> None: ...

    @abstractmethod
    async def get_agent_workload(self, agent_id: str) -> Workload:
        """Derive active task count and historical completion rate."""

    # Proposals

    @abstractmethod
    async def save_proposal(self, content: str, specialty: str) -> Proposal: ...

    @abstractmethod
    async def get_proposal(self, proposal_id: str) -> Proposal | None: ...

    @abstractmethod
    async def update_proposal_status(
        self,
        proposal_id: str,
        status: ProposalStatus,
        expected_current: ProposalStatus,
    ) -> bool:
        """Compare-and-swap the proposal status.

        Returns True only if the stored status equalled ``expected_current``
        at write time and was replaced.
        """

    @abstractmethod
    async def get_proposals_in_range(self, window: TimeWindow) -> list[Proposal]: ...

    # Evaluations

    @abstractmethod
    async def get_evaluations(self, proposal_id: str) -> list[Evaluation]: ...

    @abstractmethod
    async def save_evaluation(
        self,
        proposal_id: str,
        agent_id: str,
        score: float,
        explanation: str,
    ) -> Evaluation:
        """Append an evaluation.

        Raises ``DuplicateEvaluation`` if the agent already evaluated the
        proposal. A pending proposal moves to evaluating in the same write.
        """

    # Tasks

    @abstractmethod
    async def save_task(
        self,
        description: str,
        required_capabilities: Iterable[str],
        priority: int,
        assigned_agent_id: str | None = None,
        explanation: str = "",
    ) -> Task:
        """Insert a task, already assigned when ``assigned_agent_id`` is given."""

    @abstractmethod
    async def get_task(self, task_id: str) -> Task | None: ...

    @abstractmethod
    async def update_task_assignment(
        self, task_id: str, agent_id: str, explanation: str = ""
    ) -> bool:
        """Assign a pending task. Returns False if the task is no longer pending."""

    @abstractmethod
    async def update_task_status(self, task_id: str, status: TaskStatus) -> Task:
        """Move an active task to ``status``, stamping ``completed_at`` on completion.

        The update applies only while the task is assigned or in progress;
        otherwise ``InvalidInput`` is raised and nothing changes.
        """

    @abstractmethod
    async def get_tasks_in_range(self, window: TimeWindow) -> list[Task]: ...

    # Metrics

    @abstractmethod
    async def save_metrics_snapshot(
        self, metrics: PerformanceMetrics, smoothing: float
    ) -> PerformanceMetrics:
        """Persist an immutable snapshot and return it with its id.

        In the same transaction, every agent with an ``observed`` signal has
        its stored reputation moved one smoothing step toward that signal.
        The returned metrics carry the reputations as committed; a failed
        save changes nothing.
        """

    @abstractmethod
    async def get_metrics_snapshots(self, limit: int = 20) -> list[dict]:
        """Return the most recent snapshots, newest first."""
