"""
Exceptions for the delegation core.

Every failure the core raises derives from DelegationError. Validation and
state errors are raised before any side effect is performed. Collaborator
errors come from the store/transport layer and are never caught here.
"""


class DelegationError(Exception):
    """Base exception for all delegation errors."""
    pass


class ValidationError(DelegationError, ValueError):
    """
    Raised when input violates a structural rule.

    Examples: a non-leaf child below the verifiability threshold during
    decomposition, a malformed caveat, an out-of-range score.
    """
    pass


class StateError(DelegationError):
    """
    Raised when an operation is not legal in the entity's current state.

    Examples: an invalid task status transition, attenuating a revoked or
    expired capability token.
    """
    pass


class NotFoundError(DelegationError, LookupError):
    """Raised when a task, agent, contract or token lookup misses."""
    pass


class CollaboratorError(DelegationError):
    """Raised by record store, broadcast or access-registry implementations."""
    pass


class AccessDeniedError(DelegationError):
    """Raised when a capability token does not permit the requested access."""
    pass
