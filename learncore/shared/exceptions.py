"""
Exception hierarchy for learncore.
"""


class LearnCoreError(Exception):
    """Base exception for all learncore errors."""
    pass


class ValidationError(LearnCoreError):
    """Raised when input is malformed, e.g. a survey answer outside 1-5."""
    pass


class InvalidTransitionError(ValidationError):
    """Raised when a questionnaire response status change is not allowed."""
    pass


class NotFoundError(LearnCoreError):
    """Raised when a learner, content item, response or profile does not exist."""

    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier!r} not found")


class IncompleteDataError(LearnCoreError):
    """Raised when scores are requested for an empty response or questionnaire."""
    pass


class ExternalServiceError(LearnCoreError):
    """Raised when the text-generation collaborator is unavailable or fails."""
    pass


class AIResponseParseError(ExternalServiceError):
    """Raised when no valid JSON object can be read from a generated reply."""
    pass


class UniqueConstraintError(LearnCoreError):
    """Raised when a natural key matches more than one stored row."""
    pass
