# Error taxonomy shared by every engine component

class EngineError(Exception):
    """Base class for workflow-engine failures."""

class NotFound(EngineError):
    """Referenced grievance, user, request or notification is absent."""

class ValidationError(EngineError):
    """Input or state precondition failed; nothing was written."""

class InsufficientCredits(EngineError):
    pass

class DuplicateRequest(EngineError):
    pass

class AuthorizationError(EngineError):
    """Caller may not perform the action (non-admin on an admin-only transition, foreign grievance)."""

class Blocked(AuthorizationError):
    """The acting user is blocked by moderation."""

class PersistenceError(EngineError):
    """Store call failed or the store is unreachable."""

class Conflict(PersistenceError):
    """Store rejected a write that violates a uniqueness constraint."""
