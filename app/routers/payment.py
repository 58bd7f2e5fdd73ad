from uuid import UUID

from fastapi import APIRouter, Depends, Request

from app.deps import (
    CurrentUser,
    NotificationsClient,
    can_initiate_payment,
    can_read_payment,
    get_notifications_client,
)
from app.gateway import IntaSendGateway, get_gateway
from app.payments import get_payment_status, initiate_payment
from app.schemas import (
    PaymentInitiate,
    PaymentInitiateResponse,
    PaymentRetry,
    PaymentStatusResponse,
    WebhookAck,
)
from app.settlement import SIGNATURE_HEADERS, handle_settlement_callback

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/initiate", response_model=PaymentInitiateResponse)
async def initiate(
    payload: PaymentInitiate,
    current_user: CurrentUser = Depends(can_initiate_payment),
    gateway: IntaSendGateway = Depends(get_gateway),
) -> PaymentInitiateResponse:
    return await initiate_payment(
        payload.booking_id, current_user.id, payload.phone_number, gateway
    )


@router.post("/retry/{booking_id}", response_model=PaymentInitiateResponse)
async def retry(
    booking_id: UUID,
    payload: PaymentRetry,
    current_user: CurrentUser = Depends(can_initiate_payment),
    gateway: IntaSendGateway = Depends(get_gateway),
) -> PaymentInitiateResponse:
    """Issues a fresh STK push; the previous one is not cancelled."""
    response = await initiate_payment(
        booking_id, current_user.id, payload.phone_number, gateway
    )
    response.message = "STK push resent. Check your phone."
    return response


@router.get("/status/{booking_id}", response_model=PaymentStatusResponse)
async def payment_status(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_payment),
) -> PaymentStatusResponse:
    return await get_payment_status(booking_id, current_user.id)


@router.post("/webhook", response_model=WebhookAck)
async def webhook(
    request: Request,
    gateway: IntaSendGateway = Depends(get_gateway),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> WebhookAck:
    """
    IntaSend payment callback. No gateway identity headers here: the HMAC
    signature over the raw body is the only credential.
    """
    raw_body = await request.body()
    signature = next(
        (request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers),
        None,
    )
    return await handle_settlement_callback(raw_body, signature, gateway, notifications)
