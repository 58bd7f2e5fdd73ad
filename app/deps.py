from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from app import settings
from app.scopes import BookingScope, PaymentScope


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_booking_admin(self) -> bool:
        return any(
            s in self.scopes
            for s in (
                BookingScope.ADMIN,
                BookingScope.ADMIN_READ,
                BookingScope.ADMIN_WRITE,
            )
        )


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by Traefik after forwardAuth validation.
    The JWT has already been verified; we just trust these headers.
    NOTE: This only works behind Traefik. Run with that assumption.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("bookings:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_write_booking = require_scopes(BookingScope.WRITE)
can_accept_booking = require_scopes(BookingScope.ACCEPT)
can_rate_booking = require_scopes(BookingScope.RATE)
can_admin_read_booking = require_scopes(BookingScope.ADMIN_READ)
can_initiate_payment = require_scopes(PaymentScope.INITIATE)
can_read_payment = require_scopes(PaymentScope.READ)


async def can_read_booking(
    current_user: CurrentUser = Depends(get_current_user),
) -> CurrentUser:
    """
    Passes for clients (own bookings), cleaners (claimed bookings) and admins.
    - bookings:read   → client sees own bookings
    - bookings:manage → cleaner sees bookings they accepted
    - admin:bookings* → admin sees all
    """
    has_read = BookingScope.READ in current_user.scopes
    has_manage = BookingScope.MANAGE in current_user.scopes
    if not (has_read or has_manage or current_user.is_booking_admin):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=(
                f"Requires '{BookingScope.READ}' (clients), "
                f"'{BookingScope.MANAGE}' (cleaners), "
                f"or '{BookingScope.ADMIN_READ}' (admin)."
            ),
        )
    return current_user


# ---------------------------------------------------------------------------
# NotificationsClient: fire-and-forget wrapper around notifications-ms
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_notifications_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.notifications_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class NotificationsClient:
    """
    Thin async wrapper around the notifications-ms internal API.
    Delivery (SSE, push, email) is entirely notifications-ms' concern.
    Failures are logged and swallowed. A notification must never fail
    or roll back the booking/payment operation that triggered it.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_notifications_http_client()

    async def notify(self, user_id: UUID, event_type: str, payload: dict) -> bool:
        try:
            resp = await self._client.post(
                "/notifications/internal",
                json={
                    "user_id": str(user_id),
                    "event_type": event_type,
                    "payload": payload,
                },
            )
        except httpx.HTTPError:
            logger.warning(
                "Notification {} to user {} failed", event_type, user_id, exc_info=True
            )
            return False
        if resp.status_code >= 400:
            logger.warning(
                "notifications-ms returned {} for {} to user {}",
                resp.status_code,
                event_type,
                user_id,
            )
            return False
        return True

    async def notify_many(
        self, user_ids: list[UUID | None], event_type: str, payload: dict
    ) -> None:
        for user_id in user_ids:
            if user_id is not None:
                await self.notify(user_id, event_type, payload)


_notifications_client = NotificationsClient()


def get_notifications_client() -> NotificationsClient:
    return _notifications_client
