from dataclasses import dataclass


class ServiceError(ValueError):
    """Base class for user-visible service errors."""


class ValidationError(ServiceError):
    pass


class NotFoundError(ServiceError):
    pass


class InvalidTransitionError(ServiceError):
    pass


class ConflictError(ServiceError):
    """Optimistic-concurrency check failed or the entity is busy; refetch and retry."""


class PermissionDeniedError(ServiceError):
    pass


class TransientIOError(ServiceError):
    """Store or collaborator unreachable."""


@dataclass
class PartialFailure:
    """A dependent side effect failed after the primary write committed.

    Never raised; carried in outcomes and logged so the caller still sees success.
    """

    operation: str
    entity_id: str
    detail: str

    def __str__(self) -> str:
        return f"{self.operation} for {self.entity_id} incomplete: {self.detail}"
