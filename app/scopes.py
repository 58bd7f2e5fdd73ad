from enum import StrEnum


class BookingScope(StrEnum):
    # Client scopes
    READ = "bookings:read"  # view own bookings
    WRITE = "bookings:write"  # create a booking
    RATE = "bookings:rate"  # rate a completed booking

    # Cleaner scopes
    ACCEPT = "bookings:accept"  # browse the job board and claim a booking
    MANAGE = "bookings:manage"  # move own claimed bookings forward

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"


class PaymentScope(StrEnum):
    INITIATE = "payments:initiate"  # client pays for a confirmed booking
    READ = "payments:read"  # client polls payment status


BOOKING_SCOPE_DESCRIPTIONS: dict[str, str] = {
    BookingScope.READ: "View your own bookings.",
    BookingScope.WRITE: "Create a new car-detailing or home-cleaning booking.",
    BookingScope.RATE: "Rate and review a completed booking.",
    BookingScope.ACCEPT: "Browse available jobs and accept one.",
    BookingScope.MANAGE: "Start or complete bookings you have accepted.",
    BookingScope.ADMIN_READ: "Read any booking and its ledger (admin).",
    BookingScope.ADMIN_WRITE: "Modify any booking status (admin).",
    PaymentScope.INITIATE: "Start an M-Pesa payment for your booking.",
    PaymentScope.READ: "Check the payment status of your booking.",
}
