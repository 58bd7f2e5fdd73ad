from __future__ import annotations

from datetime import datetime, timezone

from loguru import logger

from app.deps import NotificationsClient
from app.gateway import IntaSendGateway, TransferResult
from app.models import (
    Booking,
    CleanerProfile,
    PaymentMethod,
    PayoutStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)


def _payout_reference(booking: Booking) -> str:
    return f"CLEANER_PAYOUT_JOB_{booking.id}"


async def _set_payout_status(booking: Booking, payout_status: PayoutStatus, **extra) -> None:
    now = datetime.now(timezone.utc)
    await Booking.filter(id=booking.id).update(
        payout_status=payout_status, updated_at=now, **extra
    )
    booking.payout_status = payout_status


async def _record_precondition_failure(booking: Booking, amount: int, error: str) -> None:
    logger.error("Payout for booking {} not attempted: {}", booking.id, error)
    await Transaction.create(
        booking_id=booking.id,
        client_id=booking.client_id,
        cleaner_id=booking.cleaner_id,
        type=TransactionType.PAYOUT,
        amount=amount,
        payment_method=PaymentMethod.MPESA,
        reference=f"FAILED_{_payout_reference(booking)}",
        description=f"Failed cleaner payout - {booking.service_category}",
        status=TransactionStatus.FAILED,
        metadata={"error": error, "original_amount": amount},
    )
    await _set_payout_status(booking, PayoutStatus.FAILED)


async def _transfer(
    gateway: IntaSendGateway, amount: int, account: str, narrative: str
) -> TransferResult:
    try:
        return await gateway.transfer_mpesa(
            amount=amount, account=account, narrative=narrative
        )
    except Exception as exc:
        logger.warning("M-Pesa payout call raised", exc_info=True)
        detail = getattr(exc, "detail", None)
        message = detail.get("message") if isinstance(detail, dict) else str(exc)
        return TransferResult(success=False, message=message)


async def disburse_payout(
    booking: Booking,
    amount: int,
    gateway: IntaSendGateway,
    notifier: NotificationsClient,
) -> None:
    """
    Send the cleaner's share of a settled booking over M-Pesa B2C.

    Fire-and-forget for the caller: every outcome is written to the ledger
    and to `Booking.payout_status` and nothing is raised, so a payout
    failure can never unwind the payment settlement that preceded it.
    Failed payouts are left for operators to re-drive.
    """
    if booking.cleaner_id is None:
        logger.warning("Payout for booking {} skipped: no cleaner assigned", booking.id)
        return
    try:
        await _disburse(booking, amount, gateway, notifier)
    except Exception:
        logger.exception("Payout bookkeeping for booking {} failed", booking.id)


async def _disburse(
    booking: Booking,
    amount: int,
    gateway: IntaSendGateway,
    notifier: NotificationsClient,
) -> None:
    profile = await CleanerProfile.get_or_none(user_id=booking.cleaner_id)
    if profile is None:
        await _record_precondition_failure(booking, amount, "Cleaner profile not found")
        return
    if not profile.mpesa_phone_number:
        await _record_precondition_failure(
            booking, amount, "Cleaner M-Pesa phone number not configured"
        )
        return

    # durable record of intent before money moves
    tx = await Transaction.create(
        booking_id=booking.id,
        client_id=booking.client_id,
        cleaner_id=booking.cleaner_id,
        type=TransactionType.PAYOUT,
        amount=amount,
        payment_method=PaymentMethod.MPESA,
        reference=_payout_reference(booking),
        description=f"Cleaner payout - {booking.service_category}",
        status=TransactionStatus.PENDING,
        metadata={"mpesa_phone": profile.mpesa_phone_number},
    )
    await _set_payout_status(booking, PayoutStatus.PENDING)

    result = await _transfer(
        gateway,
        amount=amount,
        account=profile.mpesa_phone_number,
        narrative=f"Cleaner payout for {tx.reference}",
    )

    if not result.success:
        logger.error(
            "M-Pesa payout of KES {} for booking {} failed: {}",
            amount,
            booking.id,
            result.message,
        )
        tx.status = TransactionStatus.FAILED
        tx.metadata = {**tx.metadata, "error": result.message, "gateway": result.raw}
        await tx.save()
        await _set_payout_status(booking, PayoutStatus.FAILED)
        return

    now = datetime.now(timezone.utc)
    tx.status = TransactionStatus.COMPLETED
    tx.transaction_id = result.id
    tx.processed_at = now
    tx.metadata = {**tx.metadata, "gateway": result.raw}
    await tx.save()
    await _set_payout_status(booking, PayoutStatus.PROCESSED, payout_processed_at=now)

    logger.info(
        "M-Pesa payout of KES {} for booking {} sent ({})", amount, booking.id, result.id
    )
    await notifier.notify(
        booking.cleaner_id,
        "payout_processed",
        {"booking_id": str(booking.id), "amount": amount},
    )
