"""Tests for the HTTP scoring oracle and its response parsing."""

import json

import httpx
import pytest

from proposal_engine.errors import OracleMalformedResponse, OracleUnavailable
from proposal_engine.models import Agent
from proposal_engine.oracle import HttpScoringOracle, oracle_from_env, parse_evaluation, parse_match

pytestmark = pytest.mark.anyio

CANDIDATES = [
    Agent(id="a1", name="Ada", specialty="Finance", capabilities={"audit"}),
    Agent(id="b2", name="Bob", specialty="Legal", capabilities={"contracts"}),
]


class TestParseEvaluation:
    def test_valid(self):
        result = parse_evaluation({"score": 7, "explanation": "fine"}, 0, 10)
        assert result.score == 7.0
        assert result.explanation == "fine"

    @pytest.mark.parametrize(
        "payload",
        [
            {"score": "7", "explanation": "x"},
            {"score": 11, "explanation": "x"},
            {"score": True, "explanation": "x"},
            {"score": float("nan"), "explanation": "x"},
            {"explanation": "x"},
            {"score": 5},
            [7, "x"],
        ],
    )
    def test_malformed(self, payload):
        with pytest.raises(OracleMalformedResponse):
            parse_evaluation(payload, 0, 10)


class TestParseMatch:
    def test_valid(self):
        match = parse_match({"agent_id": "b2", "explanation": "contracts"}, CANDIDATES)
        assert match.agent_id == "b2"

    def test_unknown_agent(self):
        with pytest.raises(OracleMalformedResponse, match="not among the candidates"):
            parse_match({"agent_id": "zz", "explanation": "?"}, CANDIDATES)


def _oracle(handler) -> HttpScoringOracle:
    return HttpScoringOracle("http://oracle.test", transport=httpx.MockTransport(handler))


async def test_evaluate_round_trip():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"score": 8.5, "explanation": "strong case"})

    async with _oracle(handler) as oracle:
        result = await oracle.evaluate("Cut costs")

    assert seen == {"path": "/evaluate", "body": {"content": "Cut costs"}}
    assert result.score == 8.5
    assert result.explanation == "strong case"


async def test_match_sends_candidates():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"agent_id": "a1", "explanation": "auditor"})

    async with _oracle(handler) as oracle:
        match = await oracle.match_task("Audit", CANDIDATES)

    assert match.agent_id == "a1"
    assert [a["id"] for a in seen["body"]["agents"]] == ["a1", "b2"]
    assert seen["body"]["agents"][0]["capabilities"] == ["audit"]


async def test_server_error_is_unavailable():
    async with _oracle(lambda request: httpx.Response(503)) as oracle:
        with pytest.raises(OracleUnavailable, match="503"):
            await oracle.evaluate("Cut costs")


async def test_connection_error_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _oracle(handler) as oracle:
        with pytest.raises(OracleUnavailable):
            await oracle.evaluate("Cut costs")


async def test_non_json_is_malformed():
    async with _oracle(lambda request: httpx.Response(200, text="eight")) as oracle:
        with pytest.raises(OracleMalformedResponse):
            await oracle.evaluate("Cut costs")


def test_oracle_from_env(monkeypatch):
    monkeypatch.delenv("PROPOSAL_ENGINE_ORACLE_URL", raising=False)
    assert oracle_from_env() is None

    monkeypatch.setenv("PROPOSAL_ENGINE_ORACLE_URL", "http://oracle.test/")
    oracle = oracle_from_env()
    assert oracle is not None
    assert oracle.base_url == "http://oracle.test"
