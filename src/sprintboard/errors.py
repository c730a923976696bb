"""Exceptions raised by sprintboard operations."""


class SprintboardError(Exception):
    """Base class for errors surfaced to API, CLI and MCP callers."""

    status_code = 500


class NotFoundError(SprintboardError):
    """A referenced task, sprint, project or user does not exist."""

    status_code = 404


class UnauthorizedError(SprintboardError):
    """No acting user could be resolved."""

    status_code = 401


class ForbiddenError(SprintboardError):
    """The acting user lacks the role required for the operation."""

    status_code = 403


class PreconditionFailedError(SprintboardError):
    """The operation cannot start in the current state."""

    status_code = 400


class TransactionFailedError(SprintboardError):
    """The store could not commit. Retrying the whole operation is safe."""

    status_code = 409


class ChainCycleError(SprintboardError):
    """A split lineage loops back on itself."""
