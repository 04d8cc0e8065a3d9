"""Tests for evaluation aggregation and consensus decisions."""

import asyncio
from datetime import datetime, timezone

import pytest

from proposal_engine.config import EngineConfig
from proposal_engine.consensus import (
    ConsensusAggregate,
    ConsensusDecisionEngine,
    EvaluationAggregator,
    InsufficientEvidence,
    aggregate_evaluations,
    classify_confidence,
    evaluation_weight,
)
from proposal_engine.errors import NotFound
from proposal_engine.models import (
    Agent,
    Band,
    Confidence,
    DecisionOutcome,
    Evaluation,
    Proposal,
    ProposalStatus,
)

pytestmark = pytest.mark.anyio

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _proposal(specialty: str = "Finance") -> Proposal:
    return Proposal(
        id="p1", content="Cut costs", specialty=specialty, status=ProposalStatus.EVALUATING,
        created_at=NOW,
    )


def _evaluation(evaluator_id: str, score: float) -> Evaluation:
    return Evaluation(
        id=f"e-{evaluator_id}", proposal_id="p1", evaluator_id=evaluator_id, score=score,
        explanation="", created_at=NOW,
    )


# ═══════════════════════════════════════════════════════════════════════════
# AGGREGATION
# ═══════════════════════════════════════════════════════════════════════════


class TestWeights:
    def test_matching_specialty(self):
        agent = Agent(id="a", name="A", specialty="Finance", reputation=0.8)
        assert evaluation_weight(agent, "Finance", EngineConfig()) == pytest.approx(0.8)

    def test_other_specialty_halved(self):
        agent = Agent(id="a", name="A", specialty="Legal", reputation=0.8)
        assert evaluation_weight(agent, "Finance", EngineConfig()) == pytest.approx(0.4)

    def test_unknown_evaluator(self):
        assert evaluation_weight(None, "Finance", EngineConfig()) == pytest.approx(0.25)


class TestConfidence:
    def test_high(self):
        assert classify_confidence(0.5, 3, EngineConfig()) == Confidence.HIGH

    def test_medium_with_few_samples(self):
        assert classify_confidence(0.5, 2, EngineConfig()) == Confidence.MEDIUM

    def test_low_with_wide_spread(self):
        assert classify_confidence(4.0, 5, EngineConfig()) == Confidence.LOW

    def test_single_sample_is_low(self):
        assert classify_confidence(0.0, 1, EngineConfig()) == Confidence.LOW


class TestAggregate:
    def test_unanimous_weights(self):
        roster = {
            aid: Agent(id=aid, name=aid, specialty="Finance", reputation=1.0)
            for aid in ("a", "b", "c")
        }
        evaluations = [_evaluation("a", 8), _evaluation("b", 7), _evaluation("c", 9)]

        result = aggregate_evaluations(_proposal(), evaluations, roster, EngineConfig())

        assert isinstance(result, ConsensusAggregate)
        assert result.consensus_score == pytest.approx(8.0)
        assert result.sample_count == 3
        assert result.variance == pytest.approx(0.667, abs=1e-3)
        assert result.confidence == Confidence.HIGH
        assert result.variance_band == Band.LOW

    def test_constant_scores(self):
        roster = {
            "a": Agent(id="a", name="A", specialty="Finance", reputation=0.9),
            "b": Agent(id="b", name="B", specialty="Legal", reputation=0.2),
        }
        evaluations = [_evaluation("a", 6.5), _evaluation("b", 6.5)]
        result = aggregate_evaluations(_proposal(), evaluations, roster, EngineConfig())
        assert result.consensus_score == pytest.approx(6.5)
        assert result.variance == 0.0

    def test_weighted_toward_reputation(self):
        roster = {
            "a": Agent(id="a", name="A", specialty="Finance", reputation=1.0),
            "b": Agent(id="b", name="B", specialty="Legal", reputation=0.5),
        }
        evaluations = [_evaluation("a", 9), _evaluation("b", 1)]
        result = aggregate_evaluations(_proposal(), evaluations, roster, EngineConfig())
        # weights 1.0 and 0.25
        assert result.consensus_score == pytest.approx((9 * 1.0 + 1 * 0.25) / 1.25)

    def test_order_independent(self):
        roster = {
            "a": Agent(id="a", name="A", specialty="Finance", reputation=0.7),
            "b": Agent(id="b", name="B", specialty="Legal", reputation=0.4),
            "c": Agent(id="c", name="C", specialty="Finance", reputation=0.1),
        }
        evaluations = [_evaluation("a", 3), _evaluation("b", 8), _evaluation("c", 6)]
        forward = aggregate_evaluations(_proposal(), evaluations, roster, EngineConfig())
        backward = aggregate_evaluations(
            _proposal(), list(reversed(evaluations)), roster, EngineConfig()
        )
        assert forward.consensus_score == pytest.approx(backward.consensus_score)
        assert forward.variance == pytest.approx(backward.variance)

    def test_zero_reputation_falls_back_to_mean(self):
        roster = {
            "a": Agent(id="a", name="A", specialty="Finance", reputation=0.0),
            "b": Agent(id="b", name="B", specialty="Finance", reputation=0.0),
        }
        evaluations = [_evaluation("a", 4), _evaluation("b", 8)]
        result = aggregate_evaluations(_proposal(), evaluations, roster, EngineConfig())
        assert result.consensus_score == pytest.approx(6.0)

    def test_no_evaluations(self):
        result = aggregate_evaluations(_proposal(), [], {}, EngineConfig())
        assert result == InsufficientEvidence(proposal_id="p1")


class TestVarianceBand:
    def _spread(self, *scores: float, config: EngineConfig | None = None) -> ConsensusAggregate:
        roster = {
            f"a{i}": Agent(id=f"a{i}", name="A", specialty="Finance", reputation=0.5)
            for i in range(len(scores))
        }
        evaluations = [_evaluation(f"a{i}", s) for i, s in enumerate(scores)]
        return aggregate_evaluations(_proposal(), evaluations, roster, config or EngineConfig())

    def test_variance_of_one_is_medium(self):
        result = self._spread(3, 5)
        assert result.variance == pytest.approx(1.0)
        assert result.variance_band == Band.MEDIUM

    def test_wide_spread_is_high(self):
        result = self._spread(1, 9)
        assert result.variance == pytest.approx(16.0)
        assert result.variance_band == Band.HIGH

    def test_thresholds_from_config(self):
        config = EngineConfig(variance_low_max=0.1, variance_medium_max=0.5)
        assert self._spread(8, 7, 9, config=config).variance_band == Band.HIGH


async def test_aggregate_missing_proposal(repo, config):
    with pytest.raises(NotFound):
        await EvaluationAggregator(repo, config).aggregate("missing")


# ═══════════════════════════════════════════════════════════════════════════
# DECISIONS
# ═══════════════════════════════════════════════════════════════════════════


async def _evaluated_proposal(repo, scores, specialty="Finance"):
    proposal = await repo.save_proposal("Cut costs", specialty)
    for i, score in enumerate(scores):
        agent = await repo.save_agent(f"agent-{i}", specialty, reputation=1.0)
        await repo.save_evaluation(proposal.id, agent.id, score, "")
    return proposal


async def test_accepts_above_threshold(repo, engine):
    proposal = await _evaluated_proposal(repo, [8, 7, 9])

    decision = await engine.decide_consensus(proposal.id)

    assert decision.outcome == DecisionOutcome.ACCEPTED
    assert decision.status == ProposalStatus.ACCEPTED
    assert decision.consensus_score == pytest.approx(8.0)
    assert decision.sample_count == 3
    assert decision.confidence == Confidence.HIGH
    stored = await repo.get_proposal(proposal.id)
    assert stored.status == ProposalStatus.ACCEPTED


async def test_rejects_below_threshold(repo, engine):
    proposal = await _evaluated_proposal(repo, [3, 5])
    decision = await engine.decide_consensus(proposal.id)
    assert decision.outcome == DecisionOutcome.REJECTED
    assert (await repo.get_proposal(proposal.id)).status == ProposalStatus.REJECTED


async def test_threshold_is_inclusive(repo, engine):
    proposal = await _evaluated_proposal(repo, [7])
    decision = await engine.decide_consensus(proposal.id)
    assert decision.outcome == DecisionOutcome.ACCEPTED


async def test_no_evaluations_is_pending_without_write(repo, engine):
    proposal = await repo.save_proposal("Cut costs", "Finance")

    decision = await engine.decide_consensus(proposal.id)

    assert decision.outcome == DecisionOutcome.PENDING
    assert decision.status == ProposalStatus.PENDING
    assert decision.consensus_score is None
    assert repo.writes == []


async def test_below_min_evaluations_is_pending(repo):
    config = EngineConfig(min_evaluations=3)
    engine = ConsensusDecisionEngine(repo, config)
    proposal = await _evaluated_proposal(repo, [9, 9])

    decision = await engine.decide(proposal.id)

    assert decision.outcome == DecisionOutcome.PENDING
    assert decision.status == ProposalStatus.EVALUATING
    assert decision.consensus_score == pytest.approx(9.0)
    assert repo.writes == []


async def test_decided_proposal_is_idempotent(repo, engine):
    proposal = await _evaluated_proposal(repo, [9])
    first = await engine.decide_consensus(proposal.id)
    repo.writes.clear()

    second = await engine.decide_consensus(proposal.id)

    assert second.outcome == first.outcome == DecisionOutcome.ACCEPTED
    assert second.already_decided
    assert repo.writes == []


async def test_concurrent_decisions_write_once(repo, engine):
    proposal = await _evaluated_proposal(repo, [2, 4])

    decisions = await asyncio.gather(*(engine.decide_consensus(proposal.id) for _ in range(5)))

    assert {d.outcome for d in decisions} == {DecisionOutcome.REJECTED}
    committed = [d for d in decisions if not d.already_decided]
    assert len(committed) == 1
    assert (await repo.get_proposal(proposal.id)).status == ProposalStatus.REJECTED


async def test_lost_write_reports_winner(repo, config):
    proposal = await _evaluated_proposal(repo, [9])

    class RacingRepository(type(repo)):
        async def update_proposal_status(self, proposal_id, status, expected_current):
            # Another caller finalizes first
            await super().update_proposal_status(
                proposal_id, ProposalStatus.REJECTED, expected_current
            )
            return False

    racing = RacingRepository(repo.data_dir)
    decision = await ConsensusDecisionEngine(racing, config).decide(proposal.id)

    assert decision.outcome == DecisionOutcome.REJECTED
    assert decision.already_decided


async def test_decide_missing_proposal(engine):
    with pytest.raises(NotFound):
        await engine.decide_consensus("missing")
