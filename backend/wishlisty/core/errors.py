"""Error kinds shared by the reservation, notification and relationship services.

Every ``DomainError`` carries a stable ``kind`` string and the HTTP status the
API maps it to. Delivery-side errors (``RenderError``, ``DeliveryError``) are
recovered inside the notification router and never reach API callers.
"""

from typing import Any


class DomainError(Exception):
    kind = "domain_error"
    status_code = 400

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "kind": self.kind, **self.extra}


class ValidationError(DomainError):
    kind = "validation_error"
    status_code = 400


class NotFoundError(DomainError):
    kind = "not_found"
    status_code = 404


class Forbidden(DomainError):
    kind = "forbidden"
    status_code = 403


class StateConflict(DomainError):
    kind = "state_conflict"
    status_code = 409


class InvalidState(StateConflict):
    kind = "invalid_state"


class QuantityExceeded(StateConflict):
    kind = "quantity_exceeded"

    def __init__(self, remaining: int) -> None:
        super().__init__(
            f"Only {remaining} unit(s) available for reservation",
            remaining=remaining,
        )
        self.remaining = remaining


class NothingToCancel(StateConflict):
    kind = "nothing_to_cancel"


class NoActiveReservation(StateConflict):
    kind = "no_active_reservation"


class ExtensionLimitReached(StateConflict):
    kind = "extension_limit_reached"


class AlreadyBlocked(StateConflict):
    kind = "already_blocked"


class NotBlocked(StateConflict):
    kind = "not_blocked"


class PersistenceError(DomainError):
    kind = "persistence_error"
    status_code = 500


class RenderError(Exception):
    """Message template could not be rendered."""


class DeliveryError(Exception):
    """A notification channel failed to deliver."""


class InvalidDeviceToken(DeliveryError):
    """The push endpoint rejected the registered device token."""
