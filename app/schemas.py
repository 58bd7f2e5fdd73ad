from __future__ import annotations

import re
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models import (
    BookingStatus,
    BookingType,
    PaymentMethod,
    PaymentStatus,
    PayoutStatus,
    ServiceCategory,
    TransactionStatus,
    TransactionType,
)

FREE_TEXT_MAX = 500

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.I)
_TAG_RE = re.compile(r"<[^>]*>")
_HANDLER_RE = re.compile(r"\s*on\w+\s*=\s*[\"'][^\"']*[\"']", re.I)
_JS_RE = re.compile(r"javascript:", re.I)


def sanitize_text(value: str | None) -> str | None:
    """Strip markup and inline script vectors, then clamp to FREE_TEXT_MAX."""
    if value is None:
        return None
    value = _SCRIPT_RE.sub("", value)
    value = _TAG_RE.sub("", value)
    value = _HANDLER_RE.sub("", value)
    value = _JS_RE.sub("", value)
    return value.strip()[:FREE_TEXT_MAX]


# ---------------------------------------------------------------------------
# Service selection: one variant per category, no cross-category fields
# ---------------------------------------------------------------------------


class VehicleType(StrEnum):
    SEDAN = "SEDAN"
    MID_SUV = "MID-SUV"
    SUV_DOUBLE_CAB = "SUV-DOUBLE-CAB"


class CarServicePackage(StrEnum):
    NORMAL_DETAIL = "NORMAL-DETAIL"
    INTERIOR_STEAMING = "INTERIOR-STEAMING"
    PAINT_CORRECTION = "PAINT-CORRECTION"
    FULL_DETAIL = "FULL-DETAIL"
    FLEET_PACKAGE = "FLEET-PACKAGE"


class PaintCorrectionStage(StrEnum):
    STAGE_1 = "STAGE-1"
    STAGE_2 = "STAGE-2"
    STAGE_3 = "STAGE-3"


class MidSUVPricingTier(StrEnum):
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"


class CarExtra(StrEnum):
    PLASTIC_RESTORATION = "plastic-restoration"
    RUST_REMOVAL = "rust-removal"
    DE_GREASING = "de-greasing"
    BROWN_STAIN_REMOVAL = "brown-stain-removal"


class CleaningCategory(StrEnum):
    HOUSE_CLEANING = "HOUSE_CLEANING"
    FUMIGATION = "FUMIGATION"
    MOVE_IN_OUT = "MOVE_IN_OUT"
    POST_CONSTRUCTION = "POST_CONSTRUCTION"


class HouseCleaningType(StrEnum):
    BATHROOM = "BATHROOM"
    WINDOW = "WINDOW"
    ROOM = "ROOM"


class FumigationType(StrEnum):
    GENERAL = "GENERAL"
    BED_BUG = "BED_BUG"


class RoomSize(StrEnum):
    STUDIO = "STUDIO"
    ONE_BED = "1BED"
    TWO_BED = "2BED"
    THREE_BED = "3BED"
    FOUR_BED = "4BED"
    FIVE_BED = "5BED"


class BathroomItems(BaseModel):
    model_config = ConfigDict(extra="forbid")

    general: bool = False
    sink: bool = False
    toilet: bool = False


class WindowCount(BaseModel):
    model_config = ConfigDict(extra="forbid")

    small: int = Field(default=0, ge=0)
    large: int = Field(default=0, ge=0)
    whole_house: bool = False


class CarDetailingSelection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    service_category: Literal["car-detailing"]
    vehicle_type: VehicleType
    car_service_package: CarServicePackage
    paint_correction_stage: PaintCorrectionStage | None = None
    mid_suv_pricing_tier: MidSUVPricingTier | None = None
    fleet_car_count: int | None = Field(default=None, ge=5)
    selected_car_extras: list[CarExtra] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_package_options(self) -> CarDetailingSelection:
        paint = self.car_service_package == CarServicePackage.PAINT_CORRECTION
        if self.paint_correction_stage is not None and not paint:
            raise ValueError("paint_correction_stage requires PAINT-CORRECTION")
        fleet = self.car_service_package == CarServicePackage.FLEET_PACKAGE
        if fleet and self.fleet_car_count is None:
            raise ValueError("FLEET-PACKAGE requires fleet_car_count")
        if not fleet and self.fleet_car_count is not None:
            raise ValueError("fleet_car_count is only valid for FLEET-PACKAGE")
        return self


class HomeCleaningSelection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    service_category: Literal["home-cleaning"]
    cleaning_category: CleaningCategory
    house_cleaning_type: HouseCleaningType | None = None
    fumigation_type: FumigationType | None = None
    room_size: RoomSize | None = None
    bathroom_items: BathroomItems | None = None
    window_count: WindowCount | None = None


ServiceSelection = Annotated[
    CarDetailingSelection | HomeCleaningSelection,
    Field(discriminator="service_category"),
]


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class Location(BaseModel):
    address: str | None = Field(default=None, max_length=255)
    coordinates: list[float] | None = Field(default=None, min_length=2, max_length=2)
    manual_address: str | None = Field(default=None, max_length=255)


class BookingCreate(BaseModel):
    service: ServiceSelection
    price: int = Field(ge=0)
    booking_type: BookingType = BookingType.IMMEDIATE
    scheduled_date: str | None = Field(default=None, max_length=20)
    scheduled_time: str | None = Field(default=None, max_length=10)
    payment_method: PaymentMethod = PaymentMethod.MPESA
    location: Location | None = None
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("notes", mode="after")
    @classmethod
    def clean_notes(cls, v: str | None) -> str | None:
        return sanitize_text(v)

    @model_validator(mode="after")
    def validate_schedule(self) -> BookingCreate:
        if self.booking_type == BookingType.SCHEDULED and not (
            self.scheduled_date and self.scheduled_time
        ):
            raise ValueError("Scheduled bookings need scheduled_date and scheduled_time")
        return self


class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("notes", mode="after")
    @classmethod
    def clean_notes(cls, v: str | None) -> str | None:
        return sanitize_text(v)


class BookingRating(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: str | None = Field(default=None, max_length=2000)

    @field_validator("review", mode="after")
    @classmethod
    def clean_review(cls, v: str | None) -> str | None:
        return sanitize_text(v)


class BookingResponse(BaseModel):
    id: UUID
    client_id: UUID
    cleaner_id: UUID | None
    service: ServiceSelection
    booking_type: BookingType
    scheduled_date: str | None
    scheduled_time: str | None
    location: dict | None
    notes: str | None
    payment_method: PaymentMethod
    price: int
    total_price: int
    platform_fee: int
    cleaner_payout: int
    status: BookingStatus
    payment_status: PaymentStatus
    paid: bool
    paid_at: datetime | None
    transaction_id: str | None
    payout_status: PayoutStatus
    payout_processed_at: datetime | None
    rating: int | None
    review: str | None
    completion_notes: str | None
    accepted_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AvailableBooking(BaseModel):
    """Job-board entry shown to cleaners, without client identity."""

    id: UUID
    service: ServiceSelection
    booking_type: BookingType
    scheduled_date: str | None
    scheduled_time: str | None
    location: dict | None
    price: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    status: BookingStatus | None = None
    service_category: ServiceCategory | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class TransactionResponse(BaseModel):
    id: UUID
    booking_id: UUID
    client_id: UUID
    cleaner_id: UUID | None
    type: TransactionType
    amount: int
    payment_method: PaymentMethod
    transaction_id: str | None
    reference: str
    status: TransactionStatus
    processed_at: datetime | None
    metadata: dict
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

_PHONE_RE = re.compile(r"^(?:\+?254|0)?(7\d{8}|1\d{8})$")


class PaymentInitiate(BaseModel):
    booking_id: UUID
    phone_number: str

    @field_validator("phone_number", mode="after")
    @classmethod
    def normalize_phone(cls, v: str) -> str:
        return normalize_msisdn(v)


class PaymentRetry(BaseModel):
    phone_number: str

    @field_validator("phone_number", mode="after")
    @classmethod
    def normalize_phone(cls, v: str) -> str:
        return normalize_msisdn(v)


def normalize_msisdn(raw: str) -> str:
    """07XXXXXXXX / +2547XXXXXXXX / 2547XXXXXXXX -> 2547XXXXXXXX."""
    digits = re.sub(r"[\s-]", "", raw)
    match = _PHONE_RE.match(digits)
    if not match:
        raise ValueError("phone_number must be a Kenyan mobile number")
    return f"254{match.group(1)}"


class PaymentInitiateResponse(BaseModel):
    booking_id: UUID
    checkout_reference: str
    tracking_id: str | None = None
    total_price: int
    platform_fee: int
    cleaner_payout: int
    message: str = "STK push sent. Check your phone."


class PaymentStatusResponse(BaseModel):
    booking_id: UUID
    payment_status: PaymentStatus
    paid: bool
    paid_at: datetime | None
    transaction_id: str | None


class WebhookAck(BaseModel):
    success: bool = True
    outcome: str
