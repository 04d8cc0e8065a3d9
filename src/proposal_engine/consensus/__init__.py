"""Evaluation aggregation and consensus decisions."""

from proposal_engine.consensus.aggregator import (
    ConsensusAggregate,
    EvaluationAggregator,
    InsufficientEvidence,
    aggregate_evaluations,
    classify_confidence,
    evaluation_weight,
)
from proposal_engine.consensus.decision import ConsensusDecisionEngine, Decision

__all__ = [
    "ConsensusAggregate",
    "ConsensusDecisionEngine",
    "Decision",
    "EvaluationAggregator",
    "InsufficientEvidence",
    "aggregate_evaluations",
    "classify_confidence",
    "evaluation_weight",
]
