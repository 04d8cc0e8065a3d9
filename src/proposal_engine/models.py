"""
Engine Data Models

Core dataclasses for agents, proposals, evaluations, tasks and the derived
workload and performance records. Persisted entities are referenced by id;
the repository is the only owner of their state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProposalStatus(StrEnum):
    """Proposal lifecycle states."""

    PENDING = "pending"
    EVALUATING = "evaluating"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ProposalStatus.ACCEPTED, ProposalStatus.REJECTED)


class TaskStatus(StrEnum):
    """Task lifecycle states."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @property
    def is_active(self) -> bool:
        return self in (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS)


class Confidence(StrEnum):
    """Consensus confidence bands."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Band(StrEnum):
    """Low/Medium/High banding of a measured quantity."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def of(cls, value: float, low_max: float, medium_max: float) -> Band:
        """Low below ``low_max``, Medium below ``medium_max``, High otherwise."""
        if value < low_max:
            return cls.LOW
        if value < medium_max:
            return cls.MEDIUM
        return cls.HIGH


class DecisionOutcome(StrEnum):
    """Result of a consensus decision attempt."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class Agent:
    """An actor that evaluates proposals and takes tasks."""

    id: str
    name: str
    specialty: str
    capabilities: frozenset[str] = frozenset()
    reputation: float = 0.5
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.reputation <= 1.0:
            raise ValueError(f"reputation must be in [0.0, 1.0], got {self.reputation}")
        self.capabilities = frozenset(self.capabilities)


@dataclass
class Proposal:
    """A unit of work or idea submitted for an acceptance decision."""

    id: str
    content: str
    specialty: str
    status: ProposalStatus
    created_at: datetime
    decided_at: datetime | None = None


@dataclass
class Evaluation:
    """One agent's numeric judgment of a proposal."""

    id: str
    proposal_id: str
    evaluator_id: str
    score: float
    explanation: str
    created_at: datetime


@dataclass
class Task:
    """A unit of work assigned to exactly one agent.

    ``id`` is ``None`` for a task that has not been persisted yet.
    """

    description: str
    required_capabilities: frozenset[str] = frozenset()
    priority: int = 0
    id: str | None = None
    assigned_agent_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    explanation: str = ""
    created_at: datetime | None = None
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.required_capabilities = frozenset(self.required_capabilities)


@dataclass(frozen=True)
class Workload:
    """Derived task load and track record for one agent.

    ``completion_rate`` is ``None`` when the agent was never assigned a task.
    """

    agent_id: str
    active_task_count: int
    completion_rate: float | None


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive time window ``[start, end]``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(
                f"window start {self.start.isoformat()} is after end {self.end.isoformat()}"
            )


@dataclass(frozen=True)
class ProposalStats:
    """Proposal KPIs for a window."""

    total: int = 0
    accepted: int = 0
    rejected: int = 0
    open: int = 0
    acceptance_rate: float = 0.0
    avg_decision_seconds: float = 0.0


@dataclass(frozen=True)
class TaskStats:
    """Task KPIs for a window."""

    total: int = 0
    pending: int = 0
    assigned: int = 0
    in_progress: int = 0
    completed: int = 0
    completion_rate: float = 0.0
    avg_completion_seconds: float = 0.0


@dataclass(frozen=True)
class AgentPerformance:
    """Per-agent rollup for a window.

    ``observed`` is the reputation signal seen in the window, ``None`` when the
    agent had no activity there. ``reputation`` is the value after smoothing.
    """

    agent_id: str
    name: str
    completed_tasks: int
    accepted_proposals: int
    average_rating: float
    reputation: float
    observed: float | None = None


@dataclass(frozen=True)
class PerformanceMetrics:
    """Immutable, time-windowed summary of throughput and quality."""

    window: TimeWindow
    computed_at: datetime
    proposals: ProposalStats = field(default_factory=ProposalStats)
    tasks: TaskStats = field(default_factory=TaskStats)
    agents: tuple[AgentPerformance, ...] = ()
    utilization_rate: float = 0.0
    resource_utilization: Band = Band.LOW
    snapshot_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "window": {
                "start": self.window.start.isoformat(),
                "end": self.window.end.isoformat(),
            },
            "computed_at": self.computed_at.isoformat(),
            "utilization_rate": self.utilization_rate,
            "resource_utilization": self.resource_utilization.value,
            "proposals": {
                "total": self.proposals.total,
                "accepted": self.proposals.accepted,
                "rejected": self.proposals.rejected,
                "open": self.proposals.open,
                "acceptance_rate": self.proposals.acceptance_rate,
                "avg_decision_seconds": self.proposals.avg_decision_seconds,
            },
            "tasks": {
                "total": self.tasks.total,
                "pending": self.tasks.pending,
                "assigned": self.tasks.assigned,
                "in_progress": self.tasks.in_progress,
                "completed": self.tasks.completed,
                "completion_rate": self.tasks.completion_rate,
                "avg_completion_seconds": self.tasks.avg_completion_seconds,
            },
            "agents": [
                {
                    "agent_id": a.agent_id,
                    "name": a.name,
                    "completed_tasks": a.completed_tasks,
                    "accepted_proposals": a.accepted_proposals,
                    "average_rating": a.average_rating,
                    "reputation": a.reputation,
                    "observed": a.observed,
                }
                for a in self.agents
            ],
        }
