from __future__ import annotations


class PothichorError(Exception):
    """Base class for every failure the marketplace surfaces to callers."""


class AuthError(PothichorError):
    """Raised when the identity provider rejects a sign-in."""


class NotAuthenticated(PothichorError):
    """Raised when an operation needs an active session and none exists."""


class ProfileIncomplete(PothichorError):
    """Raised when a profile lacks the role/name (or location) an operation needs."""


class ValidationError(PothichorError):
    """Caller-supplied data violates an invariant; nothing was written."""


class OrderingClosed(ValidationError):
    """The meal's order deadline has already passed."""


class CapacityExceeded(PothichorError):
    def __init__(self, meal_id: str, requested: int, remaining: int):
        super().__init__(
            f"Meal {meal_id} has {remaining} portion(s) left; cannot reserve {requested}."
        )
        self.meal_id = meal_id
        self.requested = requested
        self.remaining = remaining


class NotFound(PothichorError):
    """Referenced document does not exist."""


class PersistenceError(PothichorError):
    """The document store rejected a read or write."""

    PERMISSION_DENIED = "permission-denied"
    NETWORK_BLOCKED = "network-blocked"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"

    HINTS = {
        PERMISSION_DENIED: "Access denied by the database. Check the account's permissions.",
        NETWORK_BLOCKED: (
            "Could not reach the database. A firewall, VPN or ad-blocking extension "
            "may be blocking the connection."
        ),
        DUPLICATE: "This record already exists.",
        UNKNOWN: "The database could not complete the request. Please try again.",
    }

    def __init__(self, message: str, *, reason: str = UNKNOWN):
        super().__init__(message)
        self.reason = reason

    @property
    def hint(self) -> str:
        return self.HINTS.get(self.reason, self.HINTS[self.UNKNOWN])


class DependencyError(PothichorError):
    """An external advisor or dispatcher failed or returned unusable data."""


class DispatchError(DependencyError):
    """Raised when the notification dispatcher does not accept a message."""


class Forbidden(PothichorError):
    """The signed-in user's role does not allow this operation."""
