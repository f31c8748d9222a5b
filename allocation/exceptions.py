"""Error taxonomy for the allocation engine."""

from __future__ import annotations


class AllocationError(Exception):
    """Base class for engine errors."""


class BookingValidationError(AllocationError):
    """Raised when a request breaks a booking rule. The caller fixes input; never retried."""

    def __init__(self, rule: str, message: str):
        self.rule = rule
        self.message = message
        super().__init__(message)


class NotFoundError(AllocationError):
    def __init__(self, entity: str, identifier):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found.")


class PermissionDeniedError(AllocationError):
    pass


class ConflictDetectionError(AllocationError):
    """A conflict source failed; detection cannot proceed on partial data."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Conflict source {source} failed: {message}")


class TransactionConflictError(AllocationError):
    """Concurrent modification persisted after all retries."""

    def __init__(self, resource_id: str, attempts: int):
        self.resource_id = resource_id
        self.attempts = attempts
        super().__init__(
            f"Concurrent modification on resource {resource_id} could not be resolved after {attempts} attempts."
        )
