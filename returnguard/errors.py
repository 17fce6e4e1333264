"""
returnguard/errors.py
======================
Error Taxonomy — ReturnGuard

Responsibility:
    - Define every exception the decision engine raises to its callers
    - Carry enough structured context (entity kind, ids, constraint names)
      for the API layer to build a precise error response

Only AuditWriteError is fatal to a decision. AnalysisUnavailable is
recovered locally (score-only fallback) and reported afterwards.
"""


class ReturnGuardError(Exception):
    """Base class for all engine errors."""


class InvalidPolicy(ReturnGuardError):
    """Raised when a proposed policy edit violates a constraint."""

    def __init__(self, constraint: str, message: str):
        self.constraint = constraint
        self.message = message
        super().__init__(f"Invalid policy ({constraint}): {message}")


class AnalysisUnavailable(ReturnGuardError):
    """Raised when the image classifier failed, timed out, or is disabled."""

    def __init__(self, message: str, return_request=None):
        self.message = message
        # Set by the engine once the score-only fallback has been applied
        self.return_request = return_request
        super().__init__(f"Image analysis unavailable: {message}")


class UnknownEntity(ReturnGuardError):
    """Raised for a reference to a nonexistent customer, return or session."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"Unknown {kind}: {entity_id!r}")


class InvalidTransition(ReturnGuardError):
    """Raised when a state change is not allowed from the current state."""

    def __init__(self, kind: str, entity_id: str, current: str, requested: str):
        self.kind = kind
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot move {kind} {entity_id!r} from {current!r} to {requested!r}"
        )


class AuditWriteError(ReturnGuardError):
    """Raised when an audit entry could not be persisted."""
