import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict
from zoneinfo import ZoneInfo
from auth.core.config import settings
from auth.core.enums import ActivityType
from .details import Details, Freeform, Structured, parse_details, space_display

logger = logging.getLogger(__name__)

@dataclass
class ActivityRecord:
    id: str
    type: ActivityType
    description: str
    time: datetime
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "description": self.description,
            "time": self.time,
            "details": self.details,
        }

def as_utc(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def _fallback(details: Details, action: str, default: str) -> str:
    if isinstance(details, Freeform) and details.text:
        return details.text
    return action or default

def _describe_booking(action: str, details: Details) -> str:
    where = space_display(details)
    if where:
        return f"New booking created for space {where}"
    return _fallback(details, action, "New booking")

def _describe_payment(action: str, details: Details) -> str:
    return _fallback(details, "", "Payment event")

def _describe_parking(action: str, details: Details) -> str:
    return _fallback(details, "", "Checked in" if action == "check_in" else "Checked out")

def _describe_other(action: str, details: Details) -> str:
    return _fallback(details, action, "Activity")

DESCRIBERS: Dict[ActivityType, Callable[[str, Details], str]] = {
    ActivityType.BOOKING: _describe_booking,
    ActivityType.PAYMENT: _describe_payment,
    ActivityType.PARKING: _describe_parking,
    ActivityType.ADMIN: _describe_other,
    ActivityType.USER: _describe_other,
}

def describe(kind: ActivityType, action: str, details: Details) -> str:
    return DESCRIBERS[kind](action or "", details)

def user_activity_type(raw_type: str | None) -> ActivityType:
    try:
        kind = ActivityType(raw_type)
    except ValueError:
        return ActivityType.USER
    return ActivityType.USER if kind == ActivityType.ADMIN else kind

def admin_activity_type(action: str | None) -> ActivityType:
    if action == "customer_booking":
        return ActivityType.BOOKING
    if action in ("check_in", "check_out"):
        return ActivityType.PARKING
    return ActivityType.ADMIN

def format_user_activity(row: dict) -> ActivityRecord:
    kind = user_activity_type(row.get("type"))
    details = parse_details(row.get("details"))
    return ActivityRecord(
        id=row["id"],
        type=kind,
        description=describe(kind, row.get("action"), details),
        time=as_utc(row.get("created_at")),
        details={},
    )

def format_payment(row: dict) -> ActivityRecord:
    amount = row.get("amount") if row.get("amount") is not None else 0
    if isinstance(amount, Decimal):
        amount = amount.normalize() if amount == amount.to_integral_value() else amount
        amount = f"{amount:f}"
    return ActivityRecord(
        id=row["id"],
        type=ActivityType.PAYMENT,
        description=f"Payment of {settings.CURRENCY_SYMBOL}{amount}",
        time=as_utc(row.get("created_at")),
        details={"method": row.get("payment_method"), "status": row.get("status")},
    )

def format_admin_activity(row: dict) -> ActivityRecord:
    action = row.get("action")
    kind = admin_activity_type(action)
    details = parse_details(row.get("details"))
    return ActivityRecord(
        id=row["id"],
        type=kind,
        description=describe(kind, action, details),
        time=as_utc(row.get("created_at")),
        details=dict(details.fields) if isinstance(details, Structured) else {},
    )

def display_zone(name: str | None = None):
    name = name or settings.DISPLAY_TIMEZONE
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)

def time_ago(timestamp, now: datetime | None = None, tz: str | None = None) -> str:
    ts = as_utc(timestamp)
    if ts is None:
        return "Invalid date"
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    seconds = max(0, int((now - ts).total_seconds() + 0.5))
    if seconds < 5:
        return "just now"
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{int(seconds / 60 + 0.5)}m ago"
    if seconds < 86400:
        return f"{int(seconds / 3600 + 0.5)}h ago"
    local = ts.astimezone(display_zone(tz))
    hour = local.strftime("%I").lstrip("0") or "12"
    return f"{local.strftime('%b %d, %Y')} {hour}:{local.strftime('%M %p')}"
