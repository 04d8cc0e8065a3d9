"""Task allocation: multi-factor agent ranking and assignment."""

from proposal_engine.allocation.scorer import (
    Allocation,
    CandidateScore,
    TaskAllocationScorer,
    capability_match,
    eligible_agents,
    historical_performance,
    rank_candidates,
    template_explanation,
    workload_inverse,
)

__all__ = [
    "Allocation",
    "CandidateScore",
    "TaskAllocationScorer",
    "capability_match",
    "eligible_agents",
    "historical_performance",
    "rank_candidates",
    "template_explanation",
    "workload_inverse",
]
