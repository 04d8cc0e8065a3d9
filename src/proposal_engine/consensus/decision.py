"""Consensus decision engine: threshold policy and conditional finalization."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from proposal_engine.config import EngineConfig
from proposal_engine.consensus.aggregator import (
    ConsensusAggregate,
    EvaluationAggregator,
    InsufficientEvidence,
)
from proposal_engine.deadline import bounded
from proposal_engine.errors import NotFound
from proposal_engine.models import Confidence, DecisionOutcome, Proposal, ProposalStatus
from proposal_engine.storage.repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    """Outcome of a decide call.

    ``status`` is always the committed proposal status. ``already_decided``
    is set when the proposal was finalized before this call (or by a
    concurrent caller that won the write).
    """

    proposal_id: str
    outcome: DecisionOutcome
    status: ProposalStatus
    consensus_score: float | None = None
    sample_count: int = 0
    confidence: Confidence | None = None
    already_decided: bool = False


class ConsensusDecisionEngine:
    """
    Applies the acceptance policy to a proposal's consensus.

    State machine:
        pending -> evaluating -> {accepted | rejected}

    Terminal statuses are never overwritten. The commit is a compare-and-swap
    on the status read at the start of the attempt; a lost swap re-reads the
    proposal and either returns the winner's status or recomputes when the
    proposal is still open.
    """

    def __init__(
        self,
        repository: Repository,
        config: EngineConfig | None = None,
        aggregator: EvaluationAggregator | None = None,
    ) -> None:
        self.repository = repository
        self.config = config or EngineConfig()
        self.aggregator = aggregator or EvaluationAggregator(repository, self.config)

    async def decide(self, proposal_id: str) -> Decision:
        timeout = self.config.call_timeout_seconds

        for attempt in range(1, self.config.decide_max_attempts + 1):
            proposal = await bounded(
                self.repository.get_proposal(proposal_id), timeout, "get_proposal"
            )
            if proposal is None:
                raise NotFound(f"Proposal {proposal_id} not found")

            aggregate = await self.aggregator.aggregate_proposal(proposal)

            if proposal.status.is_terminal:
                return self._settled(proposal, aggregate)

            if (
                isinstance(aggregate, InsufficientEvidence)
                or aggregate.sample_count < self.config.min_evaluations
            ):
                logger.info(
                    "Proposal %s pending: %d evaluation(s), need %d",
                    proposal_id,
                    aggregate.sample_count,
                    self.config.min_evaluations,
                )
                return self._pending(proposal, aggregate)

            if aggregate.consensus_score >= self.config.acceptance_threshold:
                new_status = ProposalStatus.ACCEPTED
            else:
                new_status = ProposalStatus.REJECTED

            committed = await bounded(
                self.repository.update_proposal_status(proposal_id, new_status, proposal.status),
                timeout,
                "update_proposal_status",
            )
            if committed:
                logger.info(
                    "Proposal %s %s (consensus %.2f, n=%d, confidence %s)",
                    proposal_id,
                    new_status.value,
                    aggregate.consensus_score,
                    aggregate.sample_count,
                    aggregate.confidence.value,
                )
                return Decision(
                    proposal_id=proposal_id,
                    outcome=DecisionOutcome(new_status.value),
                    status=new_status,
                    consensus_score=aggregate.consensus_score,
                    sample_count=aggregate.sample_count,
                    confidence=aggregate.confidence,
                )

            logger.info(
                "Proposal %s changed from %s during decision (attempt %d)",
                proposal_id,
                proposal.status.value,
                attempt,
            )

        # Still open after every attempt: report it as undecided.
        logger.warning(
            "Proposal %s still open after %d attempts", proposal_id, self.config.decide_max_attempts
        )
        latest = await bounded(
            self.repository.get_proposal(proposal_id), timeout, "get_proposal"
        )
        if latest is None:
            raise NotFound(f"Proposal {proposal_id} not found")
        aggregate = await self.aggregator.aggregate_proposal(latest)
        if latest.status.is_terminal:
            return self._settled(latest, aggregate)
        return self._pending(latest, aggregate)

    def _settled(
        self, proposal: Proposal, aggregate: ConsensusAggregate | InsufficientEvidence
    ) -> Decision:
        return Decision(
            proposal_id=proposal.id,
            outcome=DecisionOutcome(proposal.status.value),
            status=proposal.status,
            consensus_score=_score(aggregate),
            sample_count=aggregate.sample_count,
            confidence=_confidence(aggregate),
            already_decided=True,
        )

    def _pending(
        self, proposal: Proposal, aggregate: ConsensusAggregate | InsufficientEvidence
    ) -> Decision:
        return Decision(
            proposal_id=proposal.id,
            outcome=DecisionOutcome.PENDING,
            status=proposal.status,
            consensus_score=_score(aggregate),
            sample_count=aggregate.sample_count,
            confidence=_confidence(aggregate),
        )


def _score(aggregate: ConsensusAggregate | InsufficientEvidence) -> float | None:
    return aggregate.consensus_score if isinstance(aggregate, ConsensusAggregate) else None


def _confidence(aggregate: ConsensusAggregate | InsufficientEvidence) -> Confidence | None:
    return aggregate.confidence if isinstance(aggregate, ConsensusAggregate) else None
