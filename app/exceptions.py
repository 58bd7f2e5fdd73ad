"""
Typed HTTP errors for the booking and payment flows.

Each error carries a stable machine-readable `code` next to the message so
callers can tell "someone beat you to it" apart from a generic failure:

    {"detail": {"code": "already_claimed", "message": "..."}}
"""

from fastapi import HTTPException, status


class DomainError(HTTPException):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "bad_request"
    message: str = "Request cannot be processed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            status_code=type(self).status_code,
            detail={"code": self.code, "message": message or self.message},
        )


# ---------------------------------------------------------------------------
# Lookup / authorization
# ---------------------------------------------------------------------------


class BookingNotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "booking_not_found"
    message = "Booking not found"


class NotBookingParty(DomainError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "not_booking_party"
    message = "Not authorized for this booking"


# ---------------------------------------------------------------------------
# Acceptance
# ---------------------------------------------------------------------------


class BookingAlreadyClaimed(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_claimed"
    message = "This booking has already been accepted by another cleaner"


class BookingNoLongerPending(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "no_longer_pending"
    message = "This booking is no longer available"


class AcceptConflict(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "accept_conflict"
    message = "Another cleaner accepted this booking first"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class InvalidStatusTransition(DomainError):
    code = "invalid_transition"
    message = "Status transition not allowed"


class CancellationDisabled(DomainError):
    code = "cancellation_disabled"
    message = "Cancellation disabled"


class BookingNotCompleted(DomainError):
    code = "booking_not_completed"
    message = "Booking must be completed before it can be rated"


class AlreadyRated(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_rated"
    message = "Booking has already been rated"


# ---------------------------------------------------------------------------
# Payment initiation
# ---------------------------------------------------------------------------


class BookingNotConfirmed(DomainError):
    code = "booking_not_confirmed"
    message = "Booking must be confirmed first"


class CleanerNotAssigned(DomainError):
    code = "cleaner_not_assigned"
    message = (
        "Cannot pay for booking - no cleaner assigned yet. "
        "Please wait for a cleaner to accept the booking."
    )


class BookingAlreadyPaid(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_paid"
    message = "Booking already paid"


class GatewayNotConfigured(DomainError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "payment_gateway_not_configured"
    message = "Payment service not configured. Please contact support."


class GatewayError(DomainError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "payment_gateway_error"
    message = "Payment gateway request failed"


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class InvalidWebhookSignature(DomainError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "invalid_signature"
    message = "Invalid webhook signature"


class WebhookSecretMissing(DomainError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "webhook_secret_not_configured"
    message = "Webhook verification is not configured"


class MalformedWebhook(DomainError):
    code = "malformed_payload"
    message = "Webhook payload is not a JSON object"


class SettlementUnavailable(DomainError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "settlement_unavailable"
    message = "Settlement temporarily unavailable, retry later"
