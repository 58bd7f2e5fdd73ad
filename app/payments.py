from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from loguru import logger

from app import settings
from app.exceptions import (
    BookingAlreadyPaid,
    BookingNotConfirmed,
    BookingNotFound,
    CleanerNotAssigned,
    GatewayNotConfigured,
    NotBookingParty,
)
from app.gateway import IntaSendGateway, gateway_configured
from app.models import Booking, BookingStatus
from app.pricing import compute_pricing
from app.schemas import PaymentInitiateResponse, PaymentStatusResponse

WEBHOOK_PATH = "/payments/webhook"


def callback_url() -> str:
    return f"{settings.backend_url.rstrip('/')}{WEBHOOK_PATH}"


async def initiate_payment(
    booking_id: UUID,
    requester_id: UUID,
    phone_number: str,
    gateway: IntaSendGateway,
) -> PaymentInitiateResponse:
    """
    Request an M-Pesa STK push for a confirmed, unpaid booking.

    Every precondition is checked before the gateway is contacted. The
    platform/cleaner split is persisted first so it is durable whatever the
    gateway does. Calling this again (retry) issues a brand-new STK push;
    duplicate settlement is prevented by the webhook processor, not here.
    """
    booking = await Booking.get_or_none(id=booking_id)
    if booking is None:
        raise BookingNotFound()
    if booking.client_id != requester_id:
        raise NotBookingParty()
    if booking.status != BookingStatus.CONFIRMED:
        raise BookingNotConfirmed()
    if booking.paid:
        raise BookingAlreadyPaid()
    if booking.cleaner_id is None:
        raise CleanerNotAssigned()
    if not gateway_configured():
        logger.error("Payment for booking {} refused: IntaSend not configured", booking_id)
        raise GatewayNotConfigured()

    pricing = compute_pricing(booking)
    await Booking.filter(id=booking_id).update(
        total_price=pricing.total_price,
        platform_fee=pricing.platform_fee,
        cleaner_payout=pricing.cleaner_payout,
        updated_at=datetime.now(timezone.utc),
    )

    result = await gateway.stk_push(
        amount=pricing.total_price,
        phone_number=phone_number,
        api_ref=str(booking_id),
        callback_url=callback_url(),
        metadata={
            "booking_id": str(booking_id),
            "client_id": str(requester_id),
            "service": str(booking.service_category),
            "split": {
                "platform_fee": pricing.platform_fee,
                "cleaner_payout": pricing.cleaner_payout,
            },
        },
    )
    logger.info(
        "STK push {} sent for booking {} (KES {})",
        result.checkout_reference,
        booking_id,
        pricing.total_price,
    )
    return PaymentInitiateResponse(
        booking_id=booking_id,
        checkout_reference=result.checkout_reference,
        tracking_id=result.tracking_id,
        total_price=pricing.total_price,
        platform_fee=pricing.platform_fee,
        cleaner_payout=pricing.cleaner_payout,
    )


async def get_payment_status(
    booking_id: UUID, requester_id: UUID
) -> PaymentStatusResponse:
    booking = await Booking.get_or_none(id=booking_id, client_id=requester_id)
    if booking is None:
        raise BookingNotFound()
    return PaymentStatusResponse(
        booking_id=booking.id,
        payment_status=booking.payment_status,
        paid=booking.paid,
        paid_at=booking.paid_at,
        transaction_id=booking.transaction_id,
    )
