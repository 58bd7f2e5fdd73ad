"""
Webhook settlement: signature gate, idempotency, amount check and the
payout hand-off, against the in-memory database.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import httpx
import pytest
from tortoise.exceptions import OperationalError

from app import settings
from app.exceptions import (
    InvalidWebhookSignature,
    MalformedWebhook,
    SettlementUnavailable,
    WebhookSecretMissing,
)
from app.gateway import TransferResult
from app.models import (
    Booking,
    PaymentStatus,
    PayoutStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from app.settlement import handle_settlement_callback, verify_signature

from .conftest import build_app
from .factories import (
    CLEANER_ID,
    CLEANER_PHONE,
    CLIENT_ID,
    create_cleaner_profile,
    create_confirmed_booking,
    make_client,
    signed,
    webhook_payload,
)


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("intasend_configured")
class TestVerifySignature:
    def test_valid_signature_passes(self):
        raw, sig = signed({"status": "COMPLETE"})
        verify_signature(raw, sig)

    def test_missing_signature_rejected(self):
        raw, _ = signed({"status": "COMPLETE"})
        with pytest.raises(InvalidWebhookSignature) as exc_info:
            verify_signature(raw, None)
        assert exc_info.value.status_code == 401

    def test_wrong_secret_rejected(self):
        raw, sig = signed({"status": "COMPLETE"}, secret="other")
        with pytest.raises(InvalidWebhookSignature):
            verify_signature(raw, sig)

    def test_tampered_body_rejected(self):
        _, sig = signed({"status": "COMPLETE", "amount": 10})
        raw, _ = signed({"status": "COMPLETE", "amount": 10000})
        with pytest.raises(InvalidWebhookSignature):
            verify_signature(raw, sig)

    def test_missing_secret_refuses_everything(self, monkeypatch):
        monkeypatch.setattr(settings, "intasend_webhook_secret", "")
        raw, sig = signed({"status": "COMPLETE"})
        with pytest.raises(WebhookSecretMissing) as exc_info:
            verify_signature(raw, sig)
        assert exc_info.value.status_code == 503


# ---------------------------------------------------------------------------
# handle_settlement_callback
# ---------------------------------------------------------------------------


async def _deliver(payload, gateway, notifications):
    raw, sig = signed(payload)
    return await handle_settlement_callback(raw, sig, gateway, notifications)


@pytest.mark.usefixtures("db", "intasend_configured")
class TestSettlement:
    @pytest.mark.asyncio
    async def test_settles_and_pays_out(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking(price=10000)

        ack = await _deliver(webhook_payload(row.id), gateway, notifications)

        assert ack.success is True
        assert ack.outcome == "settled"
        booking = await Booking.get(id=row.id)
        assert booking.paid is True
        assert booking.paid_at is not None
        assert booking.payment_status == PaymentStatus.PAID
        assert booking.transaction_id == "INTASEND-TX-1"
        assert (booking.total_price, booking.platform_fee, booking.cleaner_payout) == (
            10000,
            6000,
            4000,
        )
        assert booking.payout_status == PayoutStatus.PROCESSED

        payment = await Transaction.get(booking_id=row.id, type=TransactionType.PAYMENT)
        assert payment.amount == 10000
        assert payment.status == TransactionStatus.COMPLETED
        assert payment.reference == f"JOB_{row.id}"
        assert payment.metadata["split"] == {"platform_fee": 6000, "cleaner_payout": 4000}

        gateway.transfer_mpesa.assert_awaited_once()
        kwargs = gateway.transfer_mpesa.call_args.kwargs
        assert kwargs["amount"] == 4000
        assert kwargs["account"] == CLEANER_PHONE

        notifications.notify_many.assert_awaited_once()
        user_ids, event_type, _ = notifications.notify_many.call_args[0]
        assert user_ids == [CLIENT_ID, CLEANER_ID]
        assert event_type == "payment_completed"

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_idempotent(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking()
        payload = webhook_payload(row.id)

        first = await _deliver(payload, gateway, notifications)
        second = await _deliver(payload, gateway, notifications)

        assert first.outcome == "settled"
        assert second.outcome == "duplicate"
        assert (
            await Transaction.filter(
                booking_id=row.id, type=TransactionType.PAYMENT
            ).count()
            == 1
        )
        gateway.transfer_mpesa.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_gateway_id_for_paid_booking_is_duplicate(
        self, gateway, notifications
    ):
        await create_cleaner_profile()
        row = await create_confirmed_booking()

        await _deliver(webhook_payload(row.id, id="TX-A"), gateway, notifications)
        ack = await _deliver(webhook_payload(row.id, id="TX-B"), gateway, notifications)

        assert ack.outcome == "duplicate"
        assert await Transaction.filter(transaction_id="TX-B").count() == 0

    @pytest.mark.asyncio
    async def test_existing_ledger_row_blocks_settlement(self, gateway, notifications):
        row = await create_confirmed_booking()
        await Transaction.create(
            booking_id=row.id,
            client_id=row.client_id,
            cleaner_id=row.cleaner_id,
            type=TransactionType.PAYMENT,
            amount=row.price,
            transaction_id="INTASEND-TX-1",
            reference=f"JOB_{row.id}",
        )

        ack = await _deliver(webhook_payload(row.id), gateway, notifications)

        assert ack.outcome == "duplicate"
        assert (await Booking.get(id=row.id)).paid is False

    @pytest.mark.asyncio
    async def test_amount_mismatch_writes_nothing(self, gateway, notifications):
        row = await create_confirmed_booking(price=10000)

        ack = await _deliver(
            webhook_payload(row.id, amount=100), gateway, notifications
        )

        assert ack.outcome == "amount_mismatch"
        assert (await Booking.get(id=row.id)).paid is False
        assert await Transaction.filter(booking_id=row.id).count() == 0
        gateway.transfer_mpesa.assert_not_called()

    @pytest.mark.asyncio
    async def test_amount_within_tolerance_settles(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking(price=10000)

        ack = await _deliver(
            webhook_payload(row.id, amount="9999.50"), gateway, notifications
        )

        assert ack.outcome == "settled"

    @pytest.mark.asyncio
    async def test_missing_amount_is_mismatch(self, gateway, notifications):
        row = await create_confirmed_booking()
        payload = webhook_payload(row.id)
        del payload["amount"]

        ack = await _deliver(payload, gateway, notifications)

        assert ack.outcome == "amount_mismatch"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["NaN", "-Infinity", float("nan")])
    async def test_non_finite_amount_is_mismatch(self, amount, gateway, notifications):
        row = await create_confirmed_booking(price=10000)

        ack = await _deliver(
            webhook_payload(row.id, amount=amount), gateway, notifications
        )

        assert ack.outcome == "amount_mismatch"
        assert (await Booking.get(id=row.id)).paid is False
        gateway.transfer_mpesa.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_settle_once(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking()
        payloads = [
            webhook_payload(row.id, id=tx_id)
            for tx_id in ("TX-A", "TX-B")
            for _ in range(3)
        ]

        acks = await asyncio.gather(
            *(_deliver(p, gateway, notifications) for p in payloads)
        )

        outcomes = sorted(ack.outcome for ack in acks)
        assert outcomes == ["duplicate"] * 5 + ["settled"]
        assert (
            await Transaction.filter(
                booking_id=row.id, type=TransactionType.PAYMENT
            ).count()
            == 1
        )
        gateway.transfer_mpesa.assert_awaited_once()
        assert (await Booking.get(id=row.id)).paid is True

    @pytest.mark.asyncio
    async def test_ledger_id_collision_rolls_back(self, gateway, notifications):
        row = await create_confirmed_booking()
        # same gateway id on a non-payment row: the payment gate passes,
        # the unique ledger insert does not
        await Transaction.create(
            booking_id=row.id,
            client_id=row.client_id,
            cleaner_id=row.cleaner_id,
            type=TransactionType.PAYOUT,
            amount=4000,
            transaction_id="INTASEND-TX-1",
            reference=f"CLEANER_PAYOUT_JOB_{row.id}",
        )

        ack = await _deliver(webhook_payload(row.id), gateway, notifications)

        assert ack.outcome == "duplicate"
        booking = await Booking.get(id=row.id)
        assert booking.paid is False
        assert booking.payment_status != PaymentStatus.PAID
        assert (
            await Transaction.filter(
                booking_id=row.id, type=TransactionType.PAYMENT
            ).count()
            == 0
        )
        gateway.transfer_mpesa.assert_not_called()

    @pytest.mark.asyncio
    async def test_payout_runs_without_rereading_booking(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking()

        with patch.object(
            Booking, "refresh_from_db", AsyncMock(side_effect=OperationalError("gone"))
        ):
            ack = await _deliver(webhook_payload(row.id), gateway, notifications)

        assert ack.outcome == "settled"
        gateway.transfer_mpesa.assert_awaited_once()
        assert (await Booking.get(id=row.id)).payout_status == PayoutStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_non_complete_status_ignored(self, gateway, notifications):
        row = await create_confirmed_booking()

        ack = await _deliver(
            webhook_payload(row.id, status="PENDING"), gateway, notifications
        )

        assert ack.outcome == "ignored"
        assert (await Booking.get(id=row.id)).paid is False

    @pytest.mark.asyncio
    async def test_missing_booking_reference_ignored(self, gateway, notifications):
        ack = await _deliver(
            {"status": "COMPLETE", "id": "TX", "amount": 10}, gateway, notifications
        )
        assert ack.outcome == "ignored"

    @pytest.mark.asyncio
    async def test_unknown_booking_acknowledged(self, gateway, notifications):
        ack = await _deliver(webhook_payload(uuid4()), gateway, notifications)
        assert ack.outcome == "booking_not_found"

    @pytest.mark.asyncio
    async def test_api_ref_fallback(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking()
        payload = webhook_payload(row.id, metadata={}, api_ref=str(row.id))

        ack = await _deliver(payload, gateway, notifications)

        assert ack.outcome == "settled"

    @pytest.mark.asyncio
    async def test_missing_gateway_id_uses_booking_lock(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking()
        payload = webhook_payload(row.id)
        del payload["id"]

        ack = await _deliver(payload, gateway, notifications)

        assert ack.outcome == "settled"
        assert (await Booking.get(id=row.id)).transaction_id == f"NOID_{row.id}"

    @pytest.mark.asyncio
    async def test_payout_failure_does_not_undo_payment(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking()
        gateway.transfer_mpesa = AsyncMock(
            return_value=TransferResult(success=False, message="Insufficient float")
        )

        ack = await _deliver(webhook_payload(row.id), gateway, notifications)

        assert ack.outcome == "settled"
        booking = await Booking.get(id=row.id)
        assert booking.paid is True
        assert booking.payment_status == PaymentStatus.PAID
        assert booking.payout_status == PayoutStatus.FAILED
        [payout] = await Transaction.filter(
            booking_id=row.id, type=TransactionType.PAYOUT
        )
        assert payout.status == TransactionStatus.FAILED
        assert payout.metadata["error"] == "Insufficient float"
        assert (
            await Transaction.get(booking_id=row.id, type=TransactionType.PAYMENT)
        ).status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_webhook(
        self, gateway, notifications
    ):
        await create_cleaner_profile()
        row = await create_confirmed_booking()
        notifications.notify_many = AsyncMock(side_effect=RuntimeError("down"))

        ack = await _deliver(webhook_payload(row.id), gateway, notifications)

        assert ack.outcome == "settled"

    @pytest.mark.asyncio
    async def test_malformed_body_rejected(self, gateway, notifications):
        raw, sig = signed("[1, 2, 3]")
        with pytest.raises(MalformedWebhook):
            await handle_settlement_callback(raw, sig, gateway, notifications)

    @pytest.mark.asyncio
    async def test_database_error_asks_for_redelivery(self, gateway, notifications):
        with patch(
            "app.settlement._settle", AsyncMock(side_effect=OperationalError("locked"))
        ):
            with pytest.raises(SettlementUnavailable) as exc_info:
                await _deliver(webhook_payload(uuid4()), gateway, notifications)
        assert exc_info.value.status_code == 503


# ---------------------------------------------------------------------------
# POST /payments/webhook
# ---------------------------------------------------------------------------


class TestWebhookRoute:
    @pytest.mark.usefixtures("intasend_configured")
    def test_bad_signature_is_401(self, client_client):
        raw, _ = signed(webhook_payload(uuid4()))
        resp = client_client.post(
            "/payments/webhook",
            content=raw,
            headers={"X-IntaSend-Signature": "deadbeef"},
        )
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "invalid_signature"

    @pytest.mark.usefixtures("intasend_unconfigured")
    def test_missing_secret_is_503(self, client_client):
        raw, sig = signed(webhook_payload(uuid4()))
        resp = client_client.post(
            "/payments/webhook", content=raw, headers={"X-IntaSend-Signature": sig}
        )
        assert resp.status_code == 503

    @pytest.mark.usefixtures("intasend_configured")
    def test_fallback_signature_header(self, client_client):
        raw, sig = signed({"status": "PENDING"})
        resp = client_client.post(
            "/payments/webhook", content=raw, headers={"Signature": sig}
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "outcome": "ignored"}

    @pytest.mark.usefixtures("intasend_configured")
    def test_malformed_json_is_400(self, client_client):
        raw = b"{not json"
        _, sig = signed(raw.decode())
        resp = client_client.post(
            "/payments/webhook", content=raw, headers={"X-IntaSend-Signature": sig}
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.usefixtures("db", "intasend_configured")
    async def test_end_to_end_settlement(self, gateway, notifications):
        await create_cleaner_profile()
        row = await create_confirmed_booking(price=10000)
        app = build_app(
            make_client(), notifications_client=notifications, gateway_client=gateway
        )
        raw, sig = signed(webhook_payload(row.id))

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as http:
            first = await http.post(
                "/payments/webhook",
                content=raw,
                headers={
                    "X-IntaSend-Signature": sig,
                    "Content-Type": "application/json",
                },
            )
            second = await http.post(
                "/payments/webhook",
                content=raw,
                headers={"X-IntaSend-Signature": sig},
            )

        assert first.status_code == 200
        assert first.json()["outcome"] == "settled"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"
        booking = await Booking.get(id=row.id)
        assert (booking.platform_fee, booking.cleaner_payout) == (6000, 4000)
        assert gateway.transfer_mpesa.call_args.kwargs["amount"] == 4000
        assert json.loads(raw)["metadata"]["booking_id"] == str(row.id)

