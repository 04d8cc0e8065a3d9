"""Engine exception classes.

Every failure carries a stable ``code`` so callers (CLI, HTTP handlers) can
render a structured error kind plus a human-readable message. Informational
outcomes such as "not enough evaluations yet" are returned values, not
exceptions.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base exception for all engine errors."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"[{self.code}] {message}")


class NotFound(EngineError):
    """Raised when a referenced agent, proposal or task does not exist."""

    code = "NOT_FOUND"


class InvalidInput(EngineError):
    """Raised when caller-supplied input fails validation."""

    code = "INVALID_INPUT"


class DuplicateEvaluation(InvalidInput):
    """Raised when an evaluator submits a second evaluation for a proposal."""

    code = "DUPLICATE_EVALUATION"

    def __init__(self, proposal_id: str, evaluator_id: str) -> None:
        self.proposal_id = proposal_id
        self.evaluator_id = evaluator_id
        super().__init__(
            f"Agent {evaluator_id} has already evaluated proposal {proposal_id}"
        )


class AlreadyDecided(EngineError):
    """Raised when a write targets a proposal that already has a terminal status."""

    code = "ALREADY_DECIDED"

    def __init__(self, proposal_id: str, status: str) -> None:
        self.proposal_id = proposal_id
        self.status = status
        super().__init__(f"Proposal {proposal_id} is already {status}")


class NoEligibleAgents(EngineError):
    """Raised when no agent can take a task."""

    code = "NO_ELIGIBLE_AGENTS"


class OracleError(EngineError):
    """Base class for scoring oracle failures."""

    code = "ORACLE_ERROR"


class OracleUnavailable(OracleError):
    """Raised when the scoring oracle cannot be reached or refuses the call."""

    code = "ORACLE_UNAVAILABLE"


class OracleMalformedResponse(OracleError):
    """Raised when the scoring oracle answers with something unparseable."""

    code = "ORACLE_MALFORMED_RESPONSE"


class RepositoryError(EngineError):
    """Raised when the backing store fails a read or write."""

    code = "REPOSITORY_ERROR"


class Timeout(EngineError):
    """Raised when an external call exceeds its deadline."""

    code = "TIMEOUT"


class ConfigurationError(EngineError):
    """Raised when engine configuration is invalid or unreadable."""

    code = "CONFIGURATION_ERROR"
