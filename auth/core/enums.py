# /core/enums.py
import enum

class UserRole(enum.Enum):
    USER = "user"
    ADMIN = "admin"

class SessionStatus(enum.Enum):
    BOOKED = "booked"
    CHECKED_IN = "checked_in"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class PaymentStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class ActivityType(enum.Enum):
    PARKING = "parking"
    BOOKING = "booking"
    PAYMENT = "payment"
    ADMIN = "admin"
    USER = "user"

class ScanMode(enum.Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"

class ChangeType(enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

class ActivityFeedName(enum.Enum):
    PAYMENTS = "payments"
    BOOKINGS = "bookings"
    ADMIN = "admin"
