from crewcall.models import ServiceRequest


class CrewCallError(Exception):
    """Base class for errors raised by the service core."""


class ValidationError(CrewCallError):
    """Malformed or unrecognized value. Nothing was persisted."""


class NotFoundError(CrewCallError):
    pass


class PermissionDeniedError(CrewCallError):
    pass


class PersistenceError(CrewCallError):
    """Store unavailable. Callers may retry."""


class InvalidTransitionError(CrewCallError):
    """
    Illegal status change. ``request`` is the stored, unchanged request.
    """

    def __init__(self, request: ServiceRequest, target: str) -> None:
        self.request = request
        self.target = target
        super().__init__(
            f"Cannot move service request {request.id} "
            f"from '{request.status}' to '{target}'"
        )


class UnreachableRecipientWarning(UserWarning):
    """A recipient could not be notified. Dispatch to others continues."""

    def __init__(self, crew_member_id: str, reason: str) -> None:
        self.crew_member_id = crew_member_id
        self.reason = reason
        super().__init__(f"crew member {crew_member_id} unreachable: {reason}")
