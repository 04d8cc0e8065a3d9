"""FastAPI server for programmatic engine access."""

from __future__ import annotations

import dataclasses
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

import click
from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from proposal_engine import __version__
from proposal_engine.allocation import Allocation
from proposal_engine.consensus import InsufficientEvidence
from proposal_engine.engine import ProposalEngine
from proposal_engine.errors import (
    AlreadyDecided,
    ConfigurationError,
    DuplicateEvaluation,
    EngineError,
    InvalidInput,
    NoEligibleAgents,
    NotFound,
    OracleError,
    RepositoryError,
    Timeout,
)
from proposal_engine.models import TaskStatus, utcnow

_engine: ProposalEngine | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global _engine
    yield
    if _engine is not None:
        await _engine.close()
        _engine = None


app = FastAPI(
    title="Proposal Engine API",
    version=__version__,
    description="Consensus decisions and task allocation for agent teams",
    lifespan=lifespan,
)

_start_time = time.monotonic()
_MAX_WINDOW_DAYS = 36500

# Checked in order; subclasses before their bases
_STATUS_CODES: list[tuple[type[EngineError], int]] = [
    (NotFound, 404),
    (DuplicateEvaluation, 409),
    (AlreadyDecided, 409),
    (NoEligibleAgents, 409),
    (InvalidInput, 400),
    (OracleError, 503),
    (RepositoryError, 503),
    (Timeout, 504),
    (ConfigurationError, 500),
]


async def get_engine() -> ProposalEngine:
    """Engine on the default data directory, opened on first use."""
    global _engine
    if _engine is None:
        _engine = await ProposalEngine.open()
    return _engine


EngineDep = Annotated[ProposalEngine, Depends(get_engine)]


def status_code_for(exc: EngineError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"error": {"code": exc.code, "message": exc.message}},
    )


def _text(body: dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str):
        raise InvalidInput(f"{name} is required and must be a string")
    return value


def _tags(body: dict[str, Any], name: str) -> list[str]:
    value = body.get(name, [])
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidInput(f"{name} must be a list of strings")
    return value


def _number(body: dict[str, Any], name: str) -> float | None:
    value = body.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidInput(f"{name} must be a number")
    return value


def _moment(body: dict[str, Any], name: str) -> datetime | None:
    value = body.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidInput(f"{name} must be an ISO-8601 string")
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as exc:
        raise InvalidInput(f"{name} is not a valid ISO-8601 timestamp: {value!r}") from exc
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _encode(obj: Any) -> Any:
    return jsonable_encoder(dataclasses.asdict(obj))


def _allocation(allocation: Allocation) -> dict[str, Any]:
    return {
        "task": _encode(allocation.task),
        "agent_id": allocation.agent_id,
        "explanation": allocation.explanation,
        "oracle_explained": allocation.oracle_explained,
        "ranking": [
            {
                "agent_id": c.agent.id,
                "capability_match": c.capability_match,
                "workload_inverse": c.workload_inverse,
                "performance": c.performance,
                "final_score": c.final_score,
            }
            for c in allocation.ranking
        ],
    }


@app.get("/api/health")
async def health() -> dict[str, Any]:
    """Health check."""
    uptime = time.monotonic() - _start_time
    return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}


@app.post("/api/agents")
async def register_agent(request: dict[str, Any], engine: EngineDep) -> dict[str, Any]:
    """Register an agent."""
    agent = await engine.register_agent(
        _text(request, "name"),
        _text(request, "specialty"),
        _tags(request, "capabilities"),
        _number(request, "reputation"),
    )
    return _encode(agent)


@app.get("/api/agents")
async def list_agents(engine: EngineDep) -> dict[str, Any]:
    """All agents with their current reputation."""
    agents = await engine.list_agents()
    return {"agents": [_encode(a) for a in agents], "count": len(agents)}


@app.put("/api/agents/{agent_id}/capabilities")
async def update_capabilities(
    agent_id: str, request: dict[str, Any], engine: EngineDep
) -> dict[str, Any]:
    """Replace an agent's capabilities."""
    agent = await engine.update_agent_capabilities(agent_id, _tags(request, "capabilities"))
    return _encode(agent)


@app.post("/api/proposals")
async def submit_proposal(request: dict[str, Any], engine: EngineDep) -> dict[str, Any]:
    """Submit a proposal for evaluation."""
    proposal = await engine.submit_proposal(
        _text(request, "content"), _text(request, "specialty")
    )
    return _encode(proposal)


@app.get("/api/proposals/{proposal_id}/consensus")
async def consensus(proposal_id: str, engine: EngineDep) -> dict[str, Any]:
    """Weighted consensus so far, without deciding."""
    result = await engine.aggregate(proposal_id)
    if isinstance(result, InsufficientEvidence):
        return {"proposal_id": proposal_id, "decidable": False, "sample_count": 0}
    return {"decidable": True, **_encode(result)}


@app.post("/api/proposals/{proposal_id}/evaluations")
async def submit_evaluation(
    proposal_id: str, request: dict[str, Any], engine: EngineDep
) -> dict[str, Any]:
    """Record an evaluation; omit ``score`` to ask the scoring oracle."""
    explanation = request.get("explanation", "")
    if not isinstance(explanation, str):
        raise InvalidInput("explanation must be a string")
    evaluation = await engine.submit_evaluation(
        proposal_id,
        _text(request, "evaluator_id"),
        _number(request, "score"),
        explanation,
    )
    return _encode(evaluation)


@app.post("/api/proposals/{proposal_id}/decision")
async def decide(proposal_id: str, engine: EngineDep) -> dict[str, Any]:
    """Finalize a proposal from its evaluations."""
    decision = await engine.decide_consensus(proposal_id)
    return _encode(decision)


@app.post("/api/tasks")
async def create_task(request: dict[str, Any], engine: EngineDep) -> dict[str, Any]:
    """Create a task and allocate it, or store it pending with ``"allocate": false``."""
    description = _text(request, "description")
    capabilities = _tags(request, "required_capabilities")
    priority = request.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise InvalidInput("priority must be an integer")

    if request.get("allocate", True):
        return _allocation(await engine.allocate_task(description, capabilities, priority))
    return {"task": _encode(await engine.submit_task(description, capabilities, priority))}


@app.post("/api/tasks/{task_id}/allocation")
async def allocate_task(task_id: str, engine: EngineDep) -> dict[str, Any]:
    """Allocate a stored pending task."""
    return _allocation(await engine.allocate_existing_task(task_id))


@app.post("/api/tasks/{task_id}/status")
async def update_task_status(
    task_id: str, request: dict[str, Any], engine: EngineDep
) -> dict[str, Any]:
    """Move an allocated task to in_progress or completed."""
    raw = _text(request, "status")
    try:
        status = TaskStatus(raw)
    except ValueError as exc:
        raise InvalidInput(f"Unknown task status: {raw!r}") from exc
    task = await engine.update_task_status(task_id, status)
    return _encode(task)


@app.post("/api/metrics")
async def compute_metrics(request: dict[str, Any], engine: EngineDep) -> dict[str, Any]:
    """Compute metrics for ``[start, end]`` (default: the trailing ``days``, 30)."""
    end = _moment(request, "end") or utcnow()
    start = _moment(request, "start")
    if start is None:
        days = _number(request, "days")
        if days is None:
            days = 30
        if not 0 < days <= _MAX_WINDOW_DAYS:
            raise InvalidInput(f"days must be in (0, {_MAX_WINDOW_DAYS}], got {days}")
        try:
            start = end - timedelta(days=days)
        except OverflowError as exc:
            raise InvalidInput(
                f"A {days}-day window before {end.isoformat()} is out of range"
            ) from exc
    metrics = await engine.compute_window_metrics(start, end)
    return metrics.to_dict()


@app.get("/api/metrics/history")
async def metrics_history(engine: EngineDep, limit: int = 20) -> dict[str, Any]:
    """Recent metrics snapshots, newest first."""
    snapshots = await engine.metrics_history(limit)
    return {"snapshots": snapshots, "count": len(snapshots), "limit": limit}


@click.command()
@click.option("--port", default=3848, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the Proposal Engine API server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
