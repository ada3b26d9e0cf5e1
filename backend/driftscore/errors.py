"""
DriftScore - Error Types
Every failure the engine surfaces derives from DriftScoreError so callers
can catch the whole family at the service boundary.
"""


class DriftScoreError(Exception):
    """Base class for all DriftScore errors."""


class ValidationError(DriftScoreError):
    """Malformed resource, baseline or configuration value."""


class NotFoundError(DriftScoreError):
    """Requested baseline, finding, assessment or framework does not exist."""


class StoreError(DriftScoreError):
    """Persistence layer failure."""


class RuleEvaluationError(DriftScoreError):
    """A single security rule is malformed. Fatal to that rule only."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"Rule '{rule_id}': {message}")
        self.rule_id = rule_id


class InvalidTransitionError(DriftScoreError):
    """Drift finding status change not allowed by the lifecycle."""

    def __init__(self, finding_id: str, current: str, target: str):
        super().__init__(
            f"Cannot move drift finding {finding_id} from '{current}' to '{target}'"
        )
        self.finding_id = finding_id
        self.current = current
        self.target = target


class AssessmentError(DriftScoreError):
    """Compliance assessment could not be computed."""
