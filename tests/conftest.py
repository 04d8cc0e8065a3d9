"""Shared fixtures for engine tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from proposal_engine.config import EngineConfig
from proposal_engine.engine import ProposalEngine
from proposal_engine.models import PerformanceMetrics, ProposalStatus
from proposal_engine.storage import SQLiteRepository


class RecordingRepository(SQLiteRepository):
    """SQLite repository that records every write and agent roster read."""

    def __init__(self, data_dir: Path) -> None:
        super().__init__(data_dir)
        self.writes: list[str] = []
        self.roster_reads = 0

    async def get_agents(self) -> Any:
        self.roster_reads += 1
        return await super().get_agents()

    async def update_proposal_status(
        self, proposal_id: str, status: ProposalStatus, expected_current: ProposalStatus
    ) -> bool:
        self.writes.append("update_proposal_status")
        return await super().update_proposal_status(proposal_id, status, expected_current)

    async def save_task(self, *args: Any, **kwargs: Any) -> Any:
        self.writes.append("save_task")
        return await super().save_task(*args, **kwargs)

    async def update_task_assignment(self, *args: Any, **kwargs: Any) -> bool:
        self.writes.append("update_task_assignment")
        return await super().update_task_assignment(*args, **kwargs)

    async def save_metrics_snapshot(self, *args: Any, **kwargs: Any) -> PerformanceMetrics:
        self.writes.append("save_metrics_snapshot")
        return await super().save_metrics_snapshot(*args, **kwargs)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def repo(tmp_path: Path) -> RecordingRepository:
    repository = RecordingRepository(tmp_path / "engine")
    await repository.ensure_schema()
    return repository


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def engine(repo: RecordingRepository, config: EngineConfig) -> ProposalEngine:
    return ProposalEngine(repo, config)
