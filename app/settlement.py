"""
Settlement of IntaSend payment callbacks.

The webhook is processed as an ordered series of gates; a booking is only
marked paid once, however many times the gateway delivers the same event:

  1. HMAC signature over the raw body          -> 401 / 503 on failure
  2. JSON object body                          -> 400 on failure
  3. status == COMPLETE                        -> otherwise acknowledged, ignored
  4. metadata.booking_id resolves to a booking -> otherwise acknowledged, ignored
  5. booking.paid is False                     -> otherwise duplicate
  6. no payment row with this gateway id       -> otherwise duplicate
  7. reported amount ~= recomputed total       -> otherwise amount_mismatch
  8. ledger insert + paid flag, one DB transaction
  9. payout + notifications, best-effort, after commit

Business outcomes are acknowledged with 200 so the gateway does not retry
them; only a transient database failure answers 503 to ask for redelivery.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from uuid import UUID

from loguru import logger
from tortoise.exceptions import DBConnectionError, IntegrityError, OperationalError
from tortoise.transactions import in_transaction

from app import settings
from app.deps import NotificationsClient
from app.exceptions import (
    InvalidWebhookSignature,
    MalformedWebhook,
    SettlementUnavailable,
    WebhookSecretMissing,
)
from app.gateway import IntaSendGateway
from app.models import (
    Booking,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from app.payouts import disburse_payout
from app.pricing import amount_matches, compute_pricing
from app.schemas import WebhookAck

SIGNATURE_HEADERS = ("x-intasend-signature", "signature")
SETTLED_STATES = {"COMPLETE"}


class SettlementOutcome(StrEnum):
    SETTLED = "settled"
    IGNORED = "ignored"
    BOOKING_NOT_FOUND = "booking_not_found"
    DUPLICATE = "duplicate"
    AMOUNT_MISMATCH = "amount_mismatch"


class _AlreadySettled(Exception):
    """Raised inside the settlement transaction to roll it back."""


def verify_signature(raw_body: bytes, signature: str | None) -> None:
    """
    Check the gateway's HMAC-SHA256 hex digest of the raw request body.
    Unsigned webhooks are refused in every environment.
    """
    secret = settings.intasend_webhook_secret
    if not secret:
        logger.error("Webhook refused: INTASEND_WEBHOOK_SECRET is not configured")
        raise WebhookSecretMissing()
    if not signature:
        logger.error("Webhook rejected: no signature header")
        raise InvalidWebhookSignature("Webhook signature required")

    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(signature.strip().encode(), expected.encode()):
        logger.error("Webhook rejected: signature verification failed")
        raise InvalidWebhookSignature()


def _parse(raw_body: bytes) -> dict:
    try:
        data = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise MalformedWebhook() from None
    if not isinstance(data, dict):
        raise MalformedWebhook()
    return data


def _booking_ref(data: dict) -> UUID | None:
    metadata = data.get("metadata")
    ref = metadata.get("booking_id") if isinstance(metadata, dict) else None
    ref = ref or data.get("api_ref")
    if not ref:
        return None
    try:
        return UUID(str(ref))
    except ValueError:
        return None


def _external_id(data: dict, booking_id: UUID) -> str:
    ref = data.get("id") or data.get("transaction_id") or data.get("invoice_id")
    # without a gateway id, fall back to one lock per booking
    return str(ref) if ref else f"NOID_{booking_id}"


def _reported_amount(data: dict) -> Decimal | None:
    raw = data.get("amount", data.get("value"))
    if raw is None:
        return None
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        return None
    # NaN and Infinity cannot be compared against the booking total
    return value if value.is_finite() else None


async def handle_settlement_callback(
    raw_body: bytes,
    signature: str | None,
    gateway: IntaSendGateway,
    notifier: NotificationsClient,
) -> WebhookAck:
    verify_signature(raw_body, signature)
    data = _parse(raw_body)

    state = str(data.get("status") or data.get("state") or "").upper()
    if state not in SETTLED_STATES:
        logger.info("Webhook with status {!r} acknowledged without settlement", state)
        return WebhookAck(outcome=SettlementOutcome.IGNORED)

    booking_id = _booking_ref(data)
    if booking_id is None:
        logger.warning("Webhook: no usable booking_id in metadata")
        return WebhookAck(outcome=SettlementOutcome.IGNORED)

    try:
        outcome = await _settle(booking_id, data, gateway, notifier)
    except (DBConnectionError, OperationalError) as exc:
        logger.exception("Settlement for booking {} hit a database error", booking_id)
        raise SettlementUnavailable() from exc
    return WebhookAck(outcome=outcome)


async def _settle(
    booking_id: UUID,
    data: dict,
    gateway: IntaSendGateway,
    notifier: NotificationsClient,
) -> SettlementOutcome:
    booking = await Booking.get_or_none(id=booking_id)
    if booking is None:
        logger.warning("Webhook for unknown booking {}", booking_id)
        return SettlementOutcome.BOOKING_NOT_FOUND

    if booking.paid:
        logger.info("Payment already processed for booking {}", booking_id)
        return SettlementOutcome.DUPLICATE

    external_id = _external_id(data, booking_id)
    if await Transaction.filter(
        transaction_id=external_id, type=TransactionType.PAYMENT
    ).exists():
        logger.info("Duplicate transaction {} for booking {}", external_id, booking_id)
        return SettlementOutcome.DUPLICATE

    pricing = compute_pricing(booking)
    reported = _reported_amount(data)
    if reported is None or not amount_matches(reported, pricing):
        logger.error(
            "Payment amount mismatch for booking {}: received {}, expected {} "
            "(transaction {}), needs manual reconciliation",
            booking_id,
            reported,
            pricing.total_price,
            external_id,
        )
        return SettlementOutcome.AMOUNT_MISMATCH

    now = datetime.now(timezone.utc)
    try:
        async with in_transaction():
            # ledger row first: its unique gateway id is the idempotency lock
            await Transaction.create(
                booking_id=booking.id,
                client_id=booking.client_id,
                cleaner_id=booking.cleaner_id,
                type=TransactionType.PAYMENT,
                amount=pricing.total_price,
                payment_method=booking.payment_method,
                transaction_id=external_id,
                reference=f"JOB_{booking.id}",
                description=f"Payment for {booking.service_category}",
                status=TransactionStatus.COMPLETED,
                processed_at=now,
                metadata={
                    "gateway": data,
                    "split": {
                        "platform_fee": pricing.platform_fee,
                        "cleaner_payout": pricing.cleaner_payout,
                    },
                },
            )
            marked = await Booking.filter(id=booking.id, paid=False).update(
                paid=True,
                paid_at=now,
                payment_status=PaymentStatus.PAID,
                transaction_id=external_id,
                total_price=pricing.total_price,
                platform_fee=pricing.platform_fee,
                cleaner_payout=pricing.cleaner_payout,
                updated_at=now,
            )
            if not marked:
                raise _AlreadySettled()
    except (IntegrityError, _AlreadySettled):
        logger.info("Concurrent delivery already settled booking {}", booking_id)
        return SettlementOutcome.DUPLICATE

    booking.paid = True
    booking.paid_at = now
    booking.payment_status = PaymentStatus.PAID
    booking.transaction_id = external_id
    booking.total_price = pricing.total_price
    booking.platform_fee = pricing.platform_fee
    booking.cleaner_payout = pricing.cleaner_payout
    logger.info(
        "Payment SUCCESS: KES {} for booking {} (platform {}, cleaner {})",
        pricing.total_price,
        booking_id,
        pricing.platform_fee,
        pricing.cleaner_payout,
    )

    if booking.cleaner_id is not None:
        await disburse_payout(booking, pricing.cleaner_payout, gateway, notifier)
    else:
        logger.warning("Booking {} paid with no cleaner assigned; payout deferred", booking_id)

    try:
        await notifier.notify_many(
            [booking.client_id, booking.cleaner_id],
            "payment_completed",
            {"booking_id": str(booking_id), "amount": pricing.total_price},
        )
    except Exception:
        logger.warning("payment_completed notification failed", exc_info=True)

    return SettlementOutcome.SETTLED
