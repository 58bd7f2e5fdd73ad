from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from loguru import logger
from tortoise.expressions import F, Q

from app.exceptions import (
    AcceptConflict,
    AlreadyRated,
    BookingAlreadyClaimed,
    BookingNoLongerPending,
    BookingNotCompleted,
    BookingNotFound,
    NotBookingParty,
)
from app.models import (
    Booking,
    BookingStatus,
    CleanerProfile,
    ServiceCategory,
    Transaction,
)
from app.schemas import (
    AvailableBooking,
    BookingCreate,
    BookingFilters,
    BookingRating,
    BookingResponse,
    BookingStatusUpdate,
    TransactionResponse,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class BookingCRUD:
    async def create_booking(
        self, client_id: UUID, payload: BookingCreate
    ) -> BookingResponse:
        """Persist a new pending booking; only the chosen variant's columns are set."""
        selection = payload.service.model_dump(mode="json", exclude_none=True)
        selection["service_category"] = ServiceCategory(selection["service_category"])
        inst = await Booking.create(
            client_id=client_id,
            **selection,
            price=payload.price,
            booking_type=payload.booking_type,
            scheduled_date=payload.scheduled_date,
            scheduled_time=payload.scheduled_time,
            payment_method=payload.payment_method,
            location=payload.location.model_dump() if payload.location else None,
            notes=payload.notes,
        )
        logger.info(
            "Booking {} created by client {} ({})",
            inst.id,
            client_id,
            inst.service_category,
        )
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def get_booking(
        self,
        booking_id: UUID,
        party_id: UUID | None = None,
    ) -> BookingResponse | None:
        """Fetch a booking, optionally restricted to its client or cleaner."""
        qs = Booking.filter(id=booking_id)
        if party_id is not None:
            qs = qs.filter(Q(client_id=party_id) | Q(cleaner_id=party_id))
        inst = await qs.first()
        if not inst:
            return None
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def list_bookings(
        self,
        filters: BookingFilters,
        client_id: UUID | None = None,
        cleaner_id: UUID | None = None,
    ) -> list[BookingResponse]:
        qs = Booking.all()

        if client_id is not None:
            qs = qs.filter(client_id=client_id)
        if cleaner_id is not None:
            qs = qs.filter(cleaner_id=cleaner_id)
        if filters.status is not None:
            qs = qs.filter(status=filters.status)
        if filters.service_category is not None:
            qs = qs.filter(service_category=filters.service_category)

        offset = (filters.page - 1) * filters.page_size
        qs = qs.offset(offset).limit(filters.page_size)

        bookings = await qs
        return [
            BookingResponse.model_validate(b, from_attributes=True) for b in bookings
        ]

    async def list_available(self) -> list[AvailableBooking]:
        """Pending bookings no cleaner has claimed yet."""
        bookings = await Booking.filter(
            status=BookingStatus.PENDING, cleaner_id__isnull=True
        ).order_by("created_at")
        return [
            AvailableBooking.model_validate(b, from_attributes=True) for b in bookings
        ]

    async def accept_booking(self, booking_id: UUID, cleaner_id: UUID) -> BookingResponse:
        """
        Attach `cleaner_id` to a pending, unclaimed booking.

        The claim is one conditional UPDATE, so concurrent accepts for the same
        booking produce exactly one winner. When nothing matched, the row is
        re-read only to explain why to the caller.
        """
        now = _now()
        claimed = await Booking.filter(
            id=booking_id,
            cleaner_id__isnull=True,
            status=BookingStatus.PENDING,
        ).update(
            cleaner_id=cleaner_id,
            status=BookingStatus.CONFIRMED,
            accepted_at=now,
            updated_at=now,
        )

        if claimed:
            inst = await Booking.get(id=booking_id)
            logger.info("Booking {} accepted by cleaner {}", booking_id, cleaner_id)
            return BookingResponse.model_validate(inst, from_attributes=True)

        inst = await Booking.get_or_none(id=booking_id)
        if inst is None:
            raise BookingNotFound()
        if inst.cleaner_id is not None:
            logger.info(
                "Cleaner {} lost claim on booking {} to {}",
                cleaner_id,
                booking_id,
                inst.cleaner_id,
            )
            raise BookingAlreadyClaimed()
        if inst.status != BookingStatus.PENDING:
            raise BookingNoLongerPending()
        raise AcceptConflict()

    async def update_booking_status(
        self,
        booking_id: UUID,
        expected_status: BookingStatus,
        payload: BookingStatusUpdate,
    ) -> BookingResponse | None:
        """
        Move a booking forward from `expected_status`.
        Returns None when the status changed underneath us.
        """
        now = _now()
        values: dict = {"status": payload.status, "updated_at": now}
        if payload.notes is not None:
            values["completion_notes"] = payload.notes
        if payload.status == BookingStatus.COMPLETED:
            values["completed_at"] = now

        updated = await Booking.filter(id=booking_id, status=expected_status).update(
            **values
        )
        if not updated:
            return None
        inst = await Booking.get(id=booking_id)
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def rate_booking(
        self,
        booking_id: UUID,
        client_id: UUID,
        payload: BookingRating,
    ) -> BookingResponse:
        """Record the client's rating once, then fold it into the cleaner's average."""
        rated = await Booking.filter(
            id=booking_id,
            client_id=client_id,
            status=BookingStatus.COMPLETED,
            rating__isnull=True,
        ).update(rating=payload.rating, review=payload.review or "", updated_at=_now())

        if not rated:
            inst = await Booking.get_or_none(id=booking_id)
            if inst is None:
                raise BookingNotFound()
            if inst.client_id != client_id:
                raise NotBookingParty()
            if inst.status != BookingStatus.COMPLETED:
                raise BookingNotCompleted()
            raise AlreadyRated()

        inst = await Booking.get(id=booking_id)
        if inst.cleaner_id is not None:
            # single UPDATE so concurrent ratings cannot lose an increment
            await CleanerProfile.filter(user_id=inst.cleaner_id).update(
                rating=(F("rating") * F("rating_count") + payload.rating)
                / (F("rating_count") + 1),
                rating_count=F("rating_count") + 1,
            )
        return BookingResponse.model_validate(inst, from_attributes=True)

    async def list_transactions(self, booking_id: UUID) -> list[TransactionResponse]:
        rows = await Transaction.filter(booking_id=booking_id).order_by("created_at")
        return [TransactionResponse.model_validate(t, from_attributes=True) for t in rows]


booking_crud = BookingCRUD()
