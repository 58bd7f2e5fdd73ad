from enum import StrEnum

from tortoise import fields
from tortoise.models import Model


class ServiceCategory(StrEnum):
    CAR_DETAILING = "car-detailing"
    HOME_CLEANING = "home-cleaning"


class BookingStatus(StrEnum):
    PENDING = "pending"  # created by the client, waiting for a cleaner
    CONFIRMED = "confirmed"  # claimed by exactly one cleaner
    IN_PROGRESS = "in-progress"  # cleaner on site
    COMPLETED = "completed"  # job done, rating allowed
    CANCELLED = "cancelled"  # reserved, cancellation is disabled


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(StrEnum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentMethod(StrEnum):
    MPESA = "mpesa"
    CARD = "card"
    CASH = "cash"


class BookingType(StrEnum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class TransactionType(StrEnum):
    PAYMENT = "payment"
    PAYOUT = "payout"


class TransactionStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


_CAR_FIELDS = (
    "vehicle_type",
    "car_service_package",
    "paint_correction_stage",
    "mid_suv_pricing_tier",
    "fleet_car_count",
    "selected_car_extras",
)
_HOME_FIELDS = (
    "cleaning_category",
    "house_cleaning_type",
    "fumigation_type",
    "room_size",
    "bathroom_items",
    "window_count",
)


class Booking(Model):
    id = fields.UUIDField(primary_key=True)

    client_id = fields.UUIDField()  # immutable, set at creation
    cleaner_id = fields.UUIDField(null=True)  # set exactly once by accept

    service_category = fields.CharEnumField(ServiceCategory, max_length=20)

    # car-detailing variant
    vehicle_type = fields.CharField(max_length=20, null=True)
    car_service_package = fields.CharField(max_length=30, null=True)
    paint_correction_stage = fields.CharField(max_length=10, null=True)
    mid_suv_pricing_tier = fields.CharField(max_length=10, null=True)
    fleet_car_count = fields.IntField(null=True)
    selected_car_extras = fields.JSONField(null=True)

    # home-cleaning variant
    cleaning_category = fields.CharField(max_length=30, null=True)
    house_cleaning_type = fields.CharField(max_length=20, null=True)
    fumigation_type = fields.CharField(max_length=20, null=True)
    room_size = fields.CharField(max_length=10, null=True)
    bathroom_items = fields.JSONField(null=True)
    window_count = fields.JSONField(null=True)

    booking_type = fields.CharEnumField(BookingType, default=BookingType.IMMEDIATE)
    scheduled_date = fields.CharField(max_length=20, null=True)
    scheduled_time = fields.CharField(max_length=10, null=True)
    location = fields.JSONField(null=True)
    notes = fields.TextField(null=True)

    payment_method = fields.CharEnumField(PaymentMethod, default=PaymentMethod.MPESA)

    # whole KES, no sub-unit currency
    price = fields.IntField()
    total_price = fields.IntField(default=0)
    platform_fee = fields.IntField(default=0)
    cleaner_payout = fields.IntField(default=0)

    status = fields.CharEnumField(
        BookingStatus, max_length=20, default=BookingStatus.PENDING
    )

    payment_status = fields.CharEnumField(PaymentStatus, default=PaymentStatus.PENDING)
    paid = fields.BooleanField(default=False)
    paid_at = fields.DatetimeField(null=True)
    transaction_id = fields.CharField(max_length=100, null=True)

    payout_status = fields.CharEnumField(PayoutStatus, default=PayoutStatus.PENDING)
    payout_processed_at = fields.DatetimeField(null=True)

    rating = fields.SmallIntField(null=True)
    review = fields.CharField(max_length=500, null=True)
    completion_notes = fields.CharField(max_length=500, null=True)

    accepted_at = fields.DatetimeField(null=True)
    completed_at = fields.DatetimeField(null=True)
    cancelled_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]
        indexes = (("client_id", "created_at"), ("cleaner_id", "status"))

    @property
    def service(self) -> dict:
        """Rebuild the tagged service selection from the variant columns."""
        names = (
            _CAR_FIELDS
            if self.service_category == ServiceCategory.CAR_DETAILING
            else _HOME_FIELDS
        )
        data = {
            name: getattr(self, name)
            for name in names
            if getattr(self, name) is not None
        }
        return {"service_category": str(self.service_category), **data}


class Transaction(Model):
    """Ledger row for one money-movement attempt. Never deleted."""

    id = fields.UUIDField(primary_key=True)
    booking = fields.ForeignKeyField(
        "models.Booking", related_name="transactions", on_delete=fields.RESTRICT
    )
    client_id = fields.UUIDField()
    cleaner_id = fields.UUIDField(null=True)

    type = fields.CharEnumField(TransactionType)
    amount = fields.IntField()
    payment_method = fields.CharEnumField(PaymentMethod, default=PaymentMethod.MPESA)
    # external gateway reference; the unique index doubles as the settlement lock
    transaction_id = fields.CharField(max_length=100, null=True, unique=True)
    reference = fields.CharField(max_length=100)
    description = fields.CharField(max_length=255, null=True)
    status = fields.CharEnumField(TransactionStatus, default=TransactionStatus.PENDING)
    processed_at = fields.DatetimeField(null=True)
    metadata = fields.JSONField(default=dict)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "transactions"
        ordering = ["created_at"]


class CleanerProfile(Model):
    id = fields.UUIDField(primary_key=True)
    user_id = fields.UUIDField(unique=True)
    mpesa_phone_number = fields.CharField(max_length=20, null=True)
    rating = fields.FloatField(default=0.0)  # running average
    rating_count = fields.IntField(default=0)
    approval_status = fields.CharEnumField(
        ApprovalStatus, default=ApprovalStatus.PENDING
    )
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "cleaner_profiles"
