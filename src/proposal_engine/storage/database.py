"""SQLite repository with WAL mode, one connection per call."""

from __future__ import annotations

import dataclasses
import json
import uuid
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from proposal_engine.config import default_data_dir
from proposal_engine.errors import (
    AlreadyDecided,
    DuplicateEvaluation,
    InvalidInput,
    NotFound,
    RepositoryError,
)
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
    utcnow,
)
from proposal_engine.storage.repository import Repository


def to_iso(moment: datetime) -> str:
    """Normalize to a UTC ISO-8601 string so stored values sort lexically."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRepository(Repository):
    """SQLite storage layer for the engine."""

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or default_data_dir()
        self.db_path = self.data_dir / "data" / "engine.db"

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)

    @asynccontextmanager
    async def connect(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Get a database connection with WAL mode, in autocommit mode."""
        try:
            self._ensure_dirs()
        except OSError as exc:
            raise RepositoryError(f"Cannot create data directory {self.data_dir}: {exc}") from exc
        try:
            async with aiosqlite.connect(str(self.db_path), isolation_level=None) as conn:
                conn.row_factory = aiosqlite.Row
                await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA foreign_keys=ON")
                await conn.execute("PRAGMA busy_timeout=5000")
                yield conn
        except aiosqlite.Error as exc:
            raise RepositoryError(str(exc)) from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Run statements in one write transaction, rolled back on any error or cancellation."""
        async with self.connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    await conn.execute("ROLLBACK")
                raise
            await conn.execute("COMMIT")

    async def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[aiosqlite.Row]:
        async with self.connect() as conn:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> aiosqlite.Row | None:
        async with self.connect() as conn:
            cursor = await conn.execute(sql, params)
            return await cursor.fetchone()

    async def ensure_schema(self) -> None:
        async with self.connect() as conn:
            await conn.executescript(_SCHEMA)

    # Agents

    async def save_agent(
        self,
        name: str,
        specialty: str,
        capabilities: Iterable[str] = (),
        reputation: float | None = None,
    ) -> Agent:
        extra = {} if reputation is None else {"reputation": reputation}
        agent = Agent(
            id=str(uuid.uuid4()),
            name=name,
            specialty=specialty,
            capabilities=frozenset(capabilities),
            created_at=utcnow(),
            **extra,
        )
        async with self.transaction() as conn:
            await conn.execute(
                """INSERT INTO agents (id, name, specialty, capabilities, reputation, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    agent.id,
                    agent.name,
                    agent.specialty,
                    json.dumps(sorted(agent.capabilities)),
                    agent.reputation,
                    to_iso(agent.created_at),
                ),
            )
        return agent

    async def get_agents(self) -> list[Agent]:
        rows = await self._fetchall("SELECT * FROM agents ORDER BY id ASC")
        return [_agent_from_row(row) for row in rows]

    async def get_agent(self, agent_id: str) -> Agent | None:
        row = await self._fetchone("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return _agent_from_row(row) if row else None

    async def update_agent_reputation(self, agent_id: str, reputation: float) -> None:
        if not 0.0 <= reputation <= 1.0:
            raise ValueError(f"reputation must be in [0.0, 1.0], got {reputation}")
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE agents SET reputation = ? WHERE id = ?", (reputation, agent_id)
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Agent {agent_id} not found")

    async def update_agent_capabilities(self, agent_id: str, capabilities: Iterable[str]) -> None:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE agents SET capabilities = ? WHERE id = ?",
                (json.dumps(sorted(set(capabilities))), agent_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"Agent {agent_id} not found")

    async def get_agent_workload(self, agent_id: str) -> Workload:
        row = await self._fetchone(
            """SELECT
                   COALESCE(SUM(status IN ('assigned', 'in_progress')), 0) AS active,
                   COALESCE(SUM(status = 'completed'), 0) AS completed,
                   COUNT(*) AS total
               FROM tasks WHERE assigned_agent_id = ?""",
            (agent_id,),
        )
        if row is None:
            raise RepositoryError(f"Workload query returned no row for agent {agent_id}")
        total = row["total"]
        return Workload(
            agent_id=agent_id,
            active_task_count=row["active"],
            completion_rate=row["completed"] / total if total else None,
        )

    # Proposals

    async def save_proposal(self, content: str, specialty: str) -> Proposal:
        proposal = Proposal(
            id=str(uuid.uuid4()),
            content=content,
            specialty=specialty,
            status=ProposalStatus.PENDING,
            created_at=utcnow(),
        )
        async with self.transaction() as conn:
            await conn.execute(
                """INSERT INTO proposals (id, content, specialty, status, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    proposal.id,
                    proposal.content,
                    proposal.specialty,
                    proposal.status.value,
                    to_iso(proposal.created_at),
                ),
            )
        return proposal

    async def get_proposal(self, proposal_id: str) -> Proposal | None:
        row = await self._fetchone("SELECT * FROM proposals WHERE id = ?", (proposal_id,))
        return _proposal_from_row(row) if row else None

    async def update_proposal_status(
        self,
        proposal_id: str,
        status: ProposalStatus,
        expected_current: ProposalStatus,
    ) -> bool:
        decided_at = to_iso(utcnow()) if status.is_terminal else None
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """UPDATE proposals SET status = ?, decided_at = COALESCE(?, decided_at)
                   WHERE id = ? AND status = ?""",
                (status.value, decided_at, proposal_id, expected_current.value),
            )
            return cursor.rowcount == 1

    async def get_proposals_in_range(self, window: TimeWindow) -> list[Proposal]:
        rows = await self._fetchall(
            """SELECT * FROM proposals WHERE created_at >= ? AND created_at <= ?
               ORDER BY created_at ASC""",
            (to_iso(window.start), to_iso(window.end)),
        )
        return [_proposal_from_row(row) for row in rows]

    # Evaluations

    async def get_evaluations(self, proposal_id: str) -> list[Evaluation]:
        rows = await self._fetchall(
            "SELECT * FROM evaluations WHERE proposal_id = ? ORDER BY created_at ASC",
            (proposal_id,),
        )
        return [_evaluation_from_row(row) for row in rows]

    async def save_evaluation(
        self,
        proposal_id: str,
        agent_id: str,
        score: float,
        explanation: str,
    ) -> Evaluation:
        evaluation = Evaluation(
            id=str(uuid.uuid4()),
            proposal_id=proposal_id,
            evaluator_id=agent_id,
            score=score,
            explanation=explanation,
            created_at=utcnow(),
        )
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT status FROM proposals WHERE id = ?", (proposal_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFound(f"Proposal {proposal_id} not found")
            if ProposalStatus(row["status"]).is_terminal:
                raise AlreadyDecided(proposal_id, row["status"])

            try:
                await conn.execute(
                    """INSERT INTO evaluations
                       (id, proposal_id, evaluator_id, score, explanation, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        evaluation.id,
                        evaluation.proposal_id,
                        evaluation.evaluator_id,
                        evaluation.score,
                        evaluation.explanation,
                        to_iso(evaluation.created_at),
                    ),
                )
            except aiosqlite.IntegrityError as exc:
                if "UNIQUE" in str(exc):
                    raise DuplicateEvaluation(proposal_id, agent_id) from exc
                raise

            await conn.execute(
                "UPDATE proposals SET status = ? WHERE id = ? AND status = ?",
                (ProposalStatus.EVALUATING.value, proposal_id, ProposalStatus.PENDING.value),
            )
        return evaluation

    # Tasks

    async def save_task(
        self,
        description: str,
        required_capabilities: Iterable[str],
        priority: int,
        assigned_agent_id: str | None = None,
        explanation: str = "",
    ) -> Task:
        created_at = utcnow()
        task = Task(
            id=str(uuid.uuid4()),
            description=description,
            required_capabilities=frozenset(required_capabilities),
            priority=priority,
            assigned_agent_id=assigned_agent_id,
            status=TaskStatus.ASSIGNED if assigned_agent_id else TaskStatus.PENDING,
            explanation=explanation,
            created_at=created_at,
        )
        async with self.transaction() as conn:
            await conn.execute(
                """INSERT INTO tasks
                   (id, description, required_capabilities, priority, assigned_agent_id,
                    status, explanation, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task.id,
                    task.description,
                    json.dumps(sorted(task.required_capabilities)),
                    task.priority,
                    task.assigned_agent_id,
                    task.status.value,
                    task.explanation,
                    to_iso(created_at),
                ),
            )
        return task

    async def get_task(self, task_id: str) -> Task | None:
        row = await self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return _task_from_row(row) if row else None

    async def update_task_assignment(
        self, task_id: str, agent_id: str, explanation: str = ""
    ) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """UPDATE tasks SET assigned_agent_id = ?, status = ?, explanation = ?
                   WHERE id = ? AND status = ?""",
                (
                    agent_id,
                    TaskStatus.ASSIGNED.value,
                    explanation,
                    task_id,
                    TaskStatus.PENDING.value,
                ),
            )
            return cursor.rowcount == 1

    async def update_task_status(self, task_id: str, status: TaskStatus) -> Task:
        completed_at = to_iso(utcnow()) if status == TaskStatus.COMPLETED else None
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """UPDATE tasks SET status = ?, completed_at = ?
                   WHERE id = ? AND status IN (?, ?)""",
                (
                    status.value,
                    completed_at,
                    task_id,
                    TaskStatus.ASSIGNED.value,
                    TaskStatus.IN_PROGRESS.value,
                ),
            )
            updated = cursor.rowcount == 1
            cursor = await conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            row = await cursor.fetchone()
            if row is None:
                raise NotFound(f"Task {task_id} not found")
            if not updated:
                raise InvalidInput(f"Task {task_id} is already {row['status']}")
        return _task_from_row(row)

    async def get_tasks_in_range(self, window: TimeWindow) -> list[Task]:
        rows = await self._fetchall(
            """SELECT * FROM tasks WHERE created_at >= ? AND created_at <= ?
               ORDER BY created_at ASC""",
            (to_iso(window.start), to_iso(window.end)),
        )
        return [_task_from_row(row) for row in rows]

    # Metrics

    async def save_metrics_snapshot(
        self, metrics: PerformanceMetrics, smoothing: float
    ) -> PerformanceMetrics:
        async with self.transaction() as conn:
            agents = []
            for rollup in metrics.agents:
                if rollup.observed is not None:
                    # EMA step against the stored value, under the write lock
                    await conn.execute(
                        """UPDATE agents
                           SET reputation = MIN(1.0, MAX(0.0, (1 - ?) * reputation + ? * ?))
                           WHERE id = ?""",
                        (smoothing, smoothing, rollup.observed, rollup.agent_id),
                    )
                cursor = await conn.execute(
                    "SELECT reputation FROM agents WHERE id = ?", (rollup.agent_id,)
                )
                row = await cursor.fetchone()
                if row is None:
                    raise NotFound(f"Agent {rollup.agent_id} not found")
                agents.append(dataclasses.replace(rollup, reputation=row["reputation"]))

            committed = dataclasses.replace(metrics, agents=tuple(agents))
            cursor = await conn.execute(
                """INSERT INTO metrics_snapshots (window_start, window_end, payload, computed_at)
                   VALUES (?, ?, ?, ?)""",
                (
                    to_iso(metrics.window.start),
                    to_iso(metrics.window.end),
                    json.dumps(committed.to_dict()),
                    to_iso(metrics.computed_at),
                ),
            )
            if cursor.lastrowid is None:
                raise RepositoryError("Metrics snapshot insert returned no row id")
            return dataclasses.replace(committed, snapshot_id=cursor.lastrowid)

    async def get_metrics_snapshots(self, limit: int = 20) -> list[dict]:
        rows = await self._fetchall(
            "SELECT id, payload FROM metrics_snapshots ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [{"id": row["id"], **json.loads(row["payload"])} for row in rows]


def _agent_from_row(row: aiosqlite.Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        specialty=row["specialty"],
        capabilities=frozenset(json.loads(row["capabilities"])),
        reputation=row["reputation"],
        created_at=_from_iso(row["created_at"]),
    )


def _proposal_from_row(row: aiosqlite.Row) -> Proposal:
    return Proposal(
        id=row["id"],
        content=row["content"],
        specialty=row["specialty"],
        status=ProposalStatus(row["status"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        decided_at=_from_iso(row["decided_at"]),
    )


def _evaluation_from_row(row: aiosqlite.Row) -> Evaluation:
    return Evaluation(
        id=row["id"],
        proposal_id=row["proposal_id"],
        evaluator_id=row["evaluator_id"],
        score=row["score"],
        explanation=row["explanation"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _task_from_row(row: aiosqlite.Row) -> Task:
    return Task(
        id=row["id"],
        description=row["description"],
        required_capabilities=frozenset(json.loads(row["required_capabilities"])),
        priority=row["priority"],
        assigned_agent_id=row["assigned_agent_id"],
        status=TaskStatus(row["status"]),
        explanation=row["explanation"],
        created_at=_from_iso(row["created_at"]),
        completed_at=_from_iso(row["completed_at"]),
    )


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    specialty TEXT NOT NULL,
    capabilities TEXT NOT NULL DEFAULT '[]',
    reputation REAL NOT NULL DEFAULT 0.5,
    created_at TEXT NOT NULL,
    CHECK (reputation BETWEEN 0.0 AND 1.0)
);

CREATE TABLE IF NOT EXISTS proposals (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    specialty TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'evaluating', 'accepted', 'rejected')),
    created_at TEXT NOT NULL,
    decided_at TEXT
);

CREATE TABLE IF NOT EXISTS evaluations (
    id TEXT PRIMARY KEY,
    proposal_id TEXT NOT NULL REFERENCES proposals(id),
    evaluator_id TEXT NOT NULL REFERENCES agents(id),
    score REAL NOT NULL,
    explanation TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    UNIQUE (proposal_id, evaluator_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    description TEXT NOT NULL,
    required_capabilities TEXT NOT NULL DEFAULT '[]',
    priority INTEGER NOT NULL DEFAULT 0,
    assigned_agent_id TEXT REFERENCES agents(id),
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'assigned', 'in_progress', 'completed')),
    explanation TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS metrics_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    window_start TEXT NOT NULL,
    window_end TEXT NOT NULL,
    payload TEXT NOT NULL,
    computed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_proposals_created ON proposals(created_at);
CREATE INDEX IF NOT EXISTS idx_evaluations_proposal ON evaluations(proposal_id);
CREATE INDEX IF NOT EXISTS idx_tasks_created ON tasks(created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_assigned_agent ON tasks(assigned_agent_id, status);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
