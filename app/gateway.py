from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

import httpx
from loguru import logger

from app import settings
from app.exceptions import GatewayError, GatewayNotConfigured

# IntaSend send-money statuses that mean the transfer will not happen
_FAILED_TRANSFER_STATES = {"FAILED", "CANCELLED", "REJECTED"}


@dataclass
class StkPushResult:
    checkout_reference: str
    tracking_id: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class TransferResult:
    success: bool
    id: str | None = None
    message: str | None = None
    raw: dict = field(default_factory=dict)


def gateway_configured() -> bool:
    return bool(settings.intasend_public_key and settings.intasend_secret_key)


@lru_cache(maxsize=1)
def _get_intasend_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.intasend_base_url,
        timeout=httpx.Timeout(30.0),
        follow_redirects=True,
    )


class IntaSendGateway:
    """
    Thin async wrapper around the IntaSend REST API.
    Collections go through M-Pesa STK push, cleaner payouts through
    the MPESA-B2C send-money rail. Credentials are read per call so a
    missing key surfaces as GatewayNotConfigured, never as a 4xx.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_intasend_http_client()

    def _headers(self) -> dict[str, str]:
        if not gateway_configured():
            logger.error("IntaSend credentials not configured")
            raise GatewayNotConfigured()
        return {"Authorization": f"Bearer {settings.intasend_secret_key}"}

    async def stk_push(
        self,
        amount: int,
        phone_number: str,
        api_ref: str,
        callback_url: str,
        metadata: dict,
    ) -> StkPushResult:
        """Ask the payer's phone to confirm a charge. Raises GatewayError on failure."""
        headers = self._headers()
        try:
            resp = await self._client.post(
                "/v1/payment/mpesa-stk-push/",
                headers=headers,
                json={
                    "public_key": settings.intasend_public_key,
                    "amount": amount,
                    "currency": "KES",
                    "phone_number": phone_number,
                    "api_ref": api_ref,
                    "callback_url": callback_url,
                    "metadata": metadata,
                },
            )
        except httpx.HTTPError as exc:
            logger.error("IntaSend STK push for {} failed: {}", api_ref, exc)
            raise GatewayError() from exc

        if resp.status_code >= 400:
            logger.error(
                "IntaSend STK push for {} returned {}: {}",
                api_ref,
                resp.status_code,
                resp.text,
            )
            raise GatewayError(f"IntaSend returned {resp.status_code}")

        data = resp.json()
        reference = (data.get("invoice") or {}).get("invoice_id") or data.get("id")
        if not reference:
            raise GatewayError("IntaSend response carried no checkout reference")
        return StkPushResult(
            checkout_reference=str(reference),
            tracking_id=data.get("tracking_id"),
            raw=data,
        )

    async def transfer_mpesa(
        self, amount: int, account: str, narrative: str
    ) -> TransferResult:
        """
        Send `amount` to an M-Pesa account.
        Rejections come back as TransferResult(success=False); transport
        errors and missing credentials raise.
        """
        headers = self._headers()
        try:
            resp = await self._client.post(
                "/v1/send-money/initiate/",
                headers=headers,
                json={
                    "currency": "KES",
                    "provider": "MPESA-B2C",
                    "requires_approval": "NO",
                    "transactions": [
                        {"account": account, "amount": amount, "narrative": narrative}
                    ],
                },
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"IntaSend transfer failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            return TransferResult(
                success=False,
                message=data.get("detail") or f"IntaSend returned {resp.status_code}",
                raw=data,
            )

        state = str(data.get("status", "")).upper()
        tracking_id = data.get("tracking_id")
        if not tracking_id or state in _FAILED_TRANSFER_STATES:
            return TransferResult(
                success=False,
                id=tracking_id,
                message=data.get("status_description") or "M-Pesa payout failed",
                raw=data,
            )
        return TransferResult(success=True, id=str(tracking_id), raw=data)


_gateway = IntaSendGateway()


def get_gateway() -> IntaSendGateway:
    return _gateway
