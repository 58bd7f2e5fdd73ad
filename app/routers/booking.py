from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, status
from loguru import logger

from app.cache import (
    get_available_jobs_cache,
    invalidate_available_jobs_cache,
    set_available_jobs_cache,
)
from app.crud import booking_crud
from app.deps import (
    CurrentUser,
    NotificationsClient,
    can_accept_booking,
    can_admin_read_booking,
    can_rate_booking,
    can_read_booking,
    can_write_booking,
    get_current_user,
    get_notifications_client,
)
from app.exceptions import (
    BookingNotFound,
    CancellationDisabled,
    InvalidStatusTransition,
    NotBookingParty,
)
from app.schemas import (
    AvailableBooking,
    BookingCreate,
    BookingFilters,
    BookingRating,
    BookingResponse,
    BookingStatus,
    BookingStatusUpdate,
    TransactionResponse,
)
from app.scopes import BookingScope

router = APIRouter(prefix="/bookings", tags=["bookings"])


# ---------------------------------------------------------------------------
# Transition guard helpers
# ---------------------------------------------------------------------------

# pending -> confirmed happens only through POST /{id}/accept
_VALID_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: set(),
    BookingStatus.CONFIRMED: {BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


def _assert_transition(
    old_status: BookingStatus,
    new_status: BookingStatus,
    booking_cleaner_id: UUID | None,
    current_user: CurrentUser,
) -> None:
    """
    Raise 400/403 if the transition is invalid or the caller lacks permission.

    Rules:
      confirmed   → in-progress : MANAGE + assigned cleaner, OR admin
      confirmed   → completed   : MANAGE + assigned cleaner, OR admin
      in-progress → completed   : MANAGE + assigned cleaner, OR admin
      *           → cancelled   : never (cancellation is disabled)
    """
    if new_status == BookingStatus.CANCELLED:
        raise CancellationDisabled()

    is_admin = (
        BookingScope.ADMIN in current_user.scopes
        or BookingScope.ADMIN_WRITE in current_user.scopes
    )
    is_cleaner = (
        BookingScope.MANAGE in current_user.scopes
        and booking_cleaner_id == current_user.id
    )
    if not (is_admin or is_cleaner):
        raise NotBookingParty(
            f"Transitioning to '{new_status}' requires '{BookingScope.MANAGE}' "
            "scope and being the assigned cleaner."
        )

    if new_status not in _VALID_TRANSITIONS.get(old_status, set()):
        raise InvalidStatusTransition(
            f"Cannot transition from '{old_status}' to '{new_status}'. Allowed: "
            f"{sorted(s.value for s in _VALID_TRANSITIONS.get(old_status, set()))}"
        )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/available", response_model=list[AvailableBooking])
async def list_available_bookings(
    _: CurrentUser = Depends(can_accept_booking),
) -> list[AvailableBooking]:
    """Job board for cleaners: pending bookings nobody has claimed."""
    cached = await get_available_jobs_cache()
    if cached is not None:
        logger.debug("Cache hit for available jobs")
        return [AvailableBooking(**j) for j in cached]

    logger.debug("Cache miss for available jobs")
    jobs = await booking_crud.list_available()
    await set_available_jobs_cache([j.model_dump(mode="json") for j in jobs])
    return jobs


@router.get("/", response_model=list[BookingResponse])
async def list_bookings(
    filters: BookingFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_booking),
) -> list[BookingResponse]:
    is_cleaner = BookingScope.MANAGE in current_user.scopes
    is_client = BookingScope.READ in current_user.scopes

    if current_user.is_booking_admin:
        return await booking_crud.list_bookings(filters=filters)
    if is_cleaner and not is_client:
        return await booking_crud.list_bookings(
            filters=filters, cleaner_id=current_user.id
        )
    return await booking_crud.list_bookings(filters=filters, client_id=current_user.id)


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    current_user: CurrentUser = Depends(can_write_booking),
) -> BookingResponse:
    booking = await booking_crud.create_booking(current_user.id, payload)
    await invalidate_available_jobs_cache()
    return booking


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_read_booking),
) -> BookingResponse:
    if current_user.is_booking_admin:
        booking = await booking_crud.get_booking(booking_id)
    else:
        booking = await booking_crud.get_booking(booking_id, party_id=current_user.id)

    if not booking:
        raise BookingNotFound()
    return booking


@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(can_accept_booking),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> BookingResponse:
    booking = await booking_crud.accept_booking(booking_id, current_user.id)
    await invalidate_available_jobs_cache()

    # runs after the response is sent; failures are logged by the client
    background_tasks.add_task(
        notifications.notify,
        booking.client_id,
        "booking_accepted",
        {"booking_id": str(booking.id), "cleaner_id": str(current_user.id)},
    )
    return booking


@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    payload: BookingStatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> BookingResponse:
    # no party filter here, permissions are checked below
    booking = await booking_crud.get_booking(booking_id)
    if not booking:
        raise BookingNotFound()

    _assert_transition(
        old_status=booking.status,
        new_status=payload.status,
        booking_cleaner_id=booking.cleaner_id,
        current_user=current_user,
    )

    updated = await booking_crud.update_booking_status(
        booking_id, booking.status, payload
    )
    if not updated:
        raise InvalidStatusTransition(
            "Booking status changed while updating. Reload and retry."
        )

    if payload.status == BookingStatus.COMPLETED:
        background_tasks.add_task(
            notifications.notify_many,
            [updated.client_id, updated.cleaner_id],
            "booking_completed",
            {"booking_id": str(updated.id)},
        )
    return updated


async def _rate_booking(
    booking_id: UUID,
    payload: BookingRating,
    current_user: CurrentUser,
) -> BookingResponse:
    return await booking_crud.rate_booking(booking_id, current_user.id, payload)


@router.post("/{booking_id}/rating", response_model=BookingResponse)
async def rate_booking(
    booking_id: UUID,
    payload: BookingRating,
    current_user: CurrentUser = Depends(can_rate_booking),
) -> BookingResponse:
    return await _rate_booking(booking_id, payload, current_user)


@router.put("/{booking_id}/rating", response_model=BookingResponse)
async def replace_booking_rating(
    booking_id: UUID,
    payload: BookingRating,
    current_user: CurrentUser = Depends(can_rate_booking),
) -> BookingResponse:
    """Same as POST; a booking can still only be rated once."""
    return await _rate_booking(booking_id, payload, current_user)


@router.get(
    "/{booking_id}/transactions",
    response_model=list[TransactionResponse],
    dependencies=[Depends(can_admin_read_booking)],
)
async def list_booking_transactions(booking_id: UUID) -> list[TransactionResponse]:
    if not await booking_crud.get_booking(booking_id):
        raise BookingNotFound()
    return await booking_crud.list_transactions(booking_id)
