"""Error taxonomy for the booking and chat core.

Every operation raises one of these instead of alerting.  ``user_message``
is the text a UI layer can show as-is; ``code`` is a stable machine key
used by the HTTP surface.
"""

from __future__ import annotations

INVITATION_EXISTS = "An invitation already exists"
INVITATION_UNAVAILABLE = "This invitation is no longer available"


class TripChatError(Exception):
    """Base class for all core errors."""

    code = "error"
    default_message = "Something went wrong"
    retryable = False

    def __init__(self, user_message: str | None = None, *, detail: str = "") -> None:
        self.user_message = user_message or self.default_message
        self.detail = detail
        super().__init__(self.user_message if not detail else f"{self.user_message}: {detail}")


class ConflictError(TripChatError):
    """Action violates the one-booking-per-pair rule or a state precondition."""

    code = "conflict"
    default_message = INVITATION_EXISTS


class NotMatchedError(ConflictError):
    code = "not_matched"
    default_message = "You can only plan a trip with someone you've matched with"


class NotFoundError(TripChatError):
    """Referenced booking or message no longer exists."""

    code = "not_found"
    default_message = INVITATION_UNAVAILABLE


class ValidationError(TripChatError):
    code = "validation"
    default_message = "Invalid request"


class TransportError(TripChatError):
    """The data collaborator call failed (network, auth expiry, server error).

    Always safe to retry: core operations are either idempotent or
    repaired on the next read.
    """

    code = "transport"
    default_message = "Couldn't reach the server. Please try again"
    retryable = True

    def __init__(
        self,
        user_message: str | None = None,
        *,
        detail: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(user_message, detail=detail)
        self.status_code = status_code
