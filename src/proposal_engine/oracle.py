"""
Scoring Oracle — External Judgment of Proposals and Task Matches

The oracle produces the numbers and rationale the engine consumes; it never
decides anything on its own. Responses are parsed strictly: a field that is
missing, of the wrong type, out of range, or naming an agent outside the
candidate list raises ``OracleMalformedResponse``. Nothing is coerced to a
default.
"""

from __future__ import annotations

import logging
import math
import os
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from proposal_engine.errors import OracleMalformedResponse, OracleUnavailable
from proposal_engine.models import Agent

logger = logging.getLogger(__name__)

ORACLE_URL_ENV = "PROPOSAL_ENGINE_ORACLE_URL"
ORACLE_KEY_ENV = "PROPOSAL_ENGINE_ORACLE_KEY"


@dataclass(frozen=True)
class OracleEvaluation:
    """Oracle judgment of a proposal."""

    score: float
    explanation: str


@dataclass(frozen=True)
class OracleMatch:
    """Oracle pick of an agent for a task."""

    agent_id: str
    explanation: str


class ScoringOracle(ABC):
    """Interface to the external scoring collaborator."""

    @abstractmethod
    async def evaluate(self, content: str) -> OracleEvaluation:
        """Score a proposal's content."""

    @abstractmethod
    async def match_task(self, description: str, candidates: Sequence[Agent]) -> OracleMatch:
        """Pick one of ``candidates`` for a task and explain why."""


def parse_evaluation(
    payload: Any, score_min: float, score_max: float
) -> OracleEvaluation:
    """Parse an evaluation payload or raise ``OracleMalformedResponse``."""
    if not isinstance(payload, dict):
        raise OracleMalformedResponse(f"Expected an object, got {type(payload).__name__}")

    score = payload.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise OracleMalformedResponse(f"score must be a number, got {score!r}")
    if not math.isfinite(score) or not score_min <= score <= score_max:
        raise OracleMalformedResponse(
            f"score {score!r} outside [{score_min}, {score_max}]"
        )

    explanation = payload.get("explanation")
    if not isinstance(explanation, str):
        raise OracleMalformedResponse(f"explanation must be a string, got {explanation!r}")

    return OracleEvaluation(score=float(score), explanation=explanation)


def parse_match(payload: Any, candidates: Sequence[Agent]) -> OracleMatch:
    """Parse a match payload or raise ``OracleMalformedResponse``."""
    if not isinstance(payload, dict):
        raise OracleMalformedResponse(f"Expected an object, got {type(payload).__name__}")

    agent_id = payload.get("agent_id")
    if not isinstance(agent_id, str):
        raise OracleMalformedResponse(f"agent_id must be a string, got {agent_id!r}")
    if agent_id not in {agent.id for agent in candidates}:
        raise OracleMalformedResponse(f"agent_id {agent_id!r} is not among the candidates")

    explanation = payload.get("explanation")
    if not isinstance(explanation, str):
        raise OracleMalformedResponse(f"explanation must be a string, got {explanation!r}")

    return OracleMatch(agent_id=agent_id, explanation=explanation)


class HttpScoringOracle(ScoringOracle):
    """
    Scoring oracle reached over HTTP.

    Endpoints (JSON in, JSON out):
    - POST {base_url}/evaluate  {"content"} -> {"score", "explanation"}
    - POST {base_url}/match     {"description", "agents": [...]} -> {"agent_id", "explanation"}
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        score_min: float = 0.0,
        score_max: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.score_min = score_min
        self.score_max = score_max
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> HttpScoringOracle:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(path, json=body)
        except httpx.RequestError as exc:
            raise OracleUnavailable(f"{path}: {exc}") from exc

        if response.status_code >= 400:
            raise OracleUnavailable(f"{path}: HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as exc:
            raise OracleMalformedResponse(f"{path}: response is not JSON") from exc

    async def evaluate(self, content: str) -> OracleEvaluation:
        payload = await self._post("/evaluate", {"content": content})
        result = parse_evaluation(payload, self.score_min, self.score_max)
        logger.debug("Oracle scored content at %.2f", result.score)
        return result

    async def match_task(self, description: str, candidates: Sequence[Agent]) -> OracleMatch:
        payload = await self._post(
            "/match",
            {
                "description": description,
                "agents": [
                    {
                        "id": agent.id,
                        "specialty": agent.specialty,
                        "capabilities": sorted(agent.capabilities),
                    }
                    for agent in candidates
                ],
            },
        )
        return parse_match(payload, candidates)


def oracle_from_env(score_min: float = 0.0, score_max: float = 10.0) -> HttpScoringOracle | None:
    """HTTP oracle configured by ``PROPOSAL_ENGINE_ORACLE_URL``, or None when unset."""
    base_url = os.environ.get(ORACLE_URL_ENV)
    if not base_url:
        return None
    return HttpScoringOracle(
        base_url,
        api_key=os.environ.get(ORACLE_KEY_ENV),
        score_min=score_min,
        score_max=score_max,
    )
