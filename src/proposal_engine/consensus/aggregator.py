"""
Evaluation Aggregator — Weighted Consensus over Agent Evaluations

Weight per evaluation:
    weight = specialty_relevance * evaluator_reputation

where relevance is ``specialty_match_weight`` (1.0) when the evaluator's
specialty equals the proposal's, ``specialty_mismatch_weight`` (0.5)
otherwise. Consensus is the weighted mean of scores; confidence comes from
the population variance of the raw scores and the sample count, and the
variance alone is also reported as a Low/Medium/High spread band.
"""

from __future__ import annotations

import statistics
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from proposal_engine.config import EngineConfig
from proposal_engine.deadline import bounded
from proposal_engine.errors import NotFound
from proposal_engine.models import Agent, Band, Confidence, Evaluation, Proposal
from proposal_engine.storage.repository import Repository


@dataclass(frozen=True)
class ConsensusAggregate:
    """Weighted consensus over the current evaluations of a proposal."""

    proposal_id: str
    consensus_score: float
    sample_count: int
    variance: float
    confidence: Confidence
    variance_band: Band = Band.LOW


@dataclass(frozen=True)
class InsufficientEvidence:
    """A proposal without evaluations: not yet decidable, not a failure."""

    proposal_id: str
    sample_count: int = 0


def evaluation_weight(
    evaluator: Agent | None, proposal_specialty: str, config: EngineConfig
) -> float:
    """Weight of one evaluation. Unknown evaluators get the default reputation and mismatch relevance."""
    if evaluator is None:
        return config.specialty_mismatch_weight * config.default_reputation

    if evaluator.specialty == proposal_specialty:
        relevance = config.specialty_match_weight
    else:
        relevance = config.specialty_mismatch_weight
    return relevance * evaluator.reputation


def classify_confidence(variance: float, sample_count: int, config: EngineConfig) -> Confidence:
    if (
        variance < config.high_confidence_max_variance
        and sample_count >= config.high_confidence_min_samples
    ):
        return Confidence.HIGH
    if (
        variance < config.medium_confidence_max_variance
        and sample_count >= config.medium_confidence_min_samples
    ):
        return Confidence.MEDIUM
    return Confidence.LOW


def aggregate_evaluations(
    proposal: Proposal,
    evaluations: Sequence[Evaluation],
    roster: Mapping[str, Agent],
    config: EngineConfig,
) -> ConsensusAggregate | InsufficientEvidence:
    """Compute the consensus for ``proposal`` from its evaluations.

    Depends only on the set of evaluations, never on their order.
    """
    if not evaluations:
        return InsufficientEvidence(proposal_id=proposal.id)

    scores = [e.score for e in evaluations]
    weights = [
        evaluation_weight(roster.get(e.evaluator_id), proposal.specialty, config)
        for e in evaluations
    ]
    total_weight = sum(weights)

    if total_weight > 0:
        consensus = sum(s * w for s, w in zip(scores, weights)) / total_weight
    else:
        # Every evaluator has zero reputation
        consensus = statistics.fmean(scores)

    variance = statistics.pvariance(scores)

    return ConsensusAggregate(
        proposal_id=proposal.id,
        consensus_score=consensus,
        sample_count=len(scores),
        variance=variance,
        confidence=classify_confidence(variance, len(scores), config),
        variance_band=Band.of(
            variance, config.variance_low_max, config.variance_medium_max
        ),
    )


class EvaluationAggregator:
    """Reads a proposal's evaluations and computes the weighted consensus.

    Holds no state between calls; safe to call repeatedly and concurrently.
    """

    def __init__(self, repository: Repository, config: EngineConfig | None = None) -> None:
        self.repository = repository
        self.config = config or EngineConfig()

    async def aggregate(self, proposal_id: str) -> ConsensusAggregate | InsufficientEvidence:
        timeout = self.config.call_timeout_seconds
        proposal = await bounded(
            self.repository.get_proposal(proposal_id), timeout, "get_proposal"
        )
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found")
        return await self.aggregate_proposal(proposal)

    async def aggregate_proposal(
        self, proposal: Proposal
    ) -> ConsensusAggregate | InsufficientEvidence:
        timeout = self.config.call_timeout_seconds
        evaluations = await bounded(
            self.repository.get_evaluations(proposal.id), timeout, "get_evaluations"
        )
        if not evaluations:
            return InsufficientEvidence(proposal_id=proposal.id)

        agents = await bounded(self.repository.get_agents(), timeout, "get_agents")
        roster = {agent.id: agent for agent in agents}
        return aggregate_evaluations(proposal, evaluations, roster, self.config)
