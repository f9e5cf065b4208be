import asyncio
import hashlib
import hmac
import logging
import weakref
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional, Tuple

import httpx

from auth.core.config import settings
from auth.core.enums import PaymentStatus
from parking.store import ParkingStore

logger = logging.getLogger(__name__)

PAID_EVENT_TYPES = ("checkout_session.payment.paid", "payment.paid", "payment.paid_event")
DEFAULT_PAYMENT_METHODS = ["gcash", "card", "paymaya"]

class WebhookSignatureError(Exception):
    pass

class CheckoutError(Exception):
    def __init__(self, status_code: int, detail):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail

def parse_signature_header(header: str) -> dict:
    parts = {}
    for item in (header or "").split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    return parts

def verify_signature(raw_body: bytes, header: str, secret: str):
    """Check ``v1`` of a ``t=<ts>,v1=<hex>`` header against HMAC-SHA256(secret, body)."""
    v1 = parse_signature_header(header).get("v1")
    if not v1:
        raise WebhookSignatureError("Missing v1 signature")
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(digest, v1):
        raise WebhookSignatureError("invalid signature")

@dataclass(frozen=True)
class WebhookEvent:
    type: str
    session_id: Optional[str]
    user_id: Optional[str]
    amount: Optional[Decimal]
    payment_method: str

    @property
    def is_paid(self) -> bool:
        return self.type in PAID_EVENT_TYPES

def minor_to_major(cents) -> Optional[Decimal]:
    """Provider minor units to a 2-place amount; None when absent or not a number."""
    if cents is None or isinstance(cents, bool):
        return None
    try:
        return (Decimal(str(cents)) / 100).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None

def parse_webhook_event(payload: dict) -> WebhookEvent:
    data = payload.get("data") or {}
    attributes = data.get("attributes") or {}
    event_type = attributes.get("type") or data.get("type") or ""
    checkout = (attributes.get("data") or {}).get("attributes") or {}
    meta = checkout.get("metadata") or {}
    line_items = checkout.get("line_items") if isinstance(checkout.get("line_items"), list) else []
    cents = (line_items[0] or {}).get("amount") if line_items else None
    amount = minor_to_major(cents)
    methods = checkout.get("payment_method_types") or []
    if isinstance(methods, list) and "gcash" in methods:
        method = "gcash"
    else:
        method = methods[0] if isinstance(methods, list) and methods else "gcash"
    return WebhookEvent(
        type=event_type,
        session_id=meta.get("session_id") or meta.get("sessionId"),
        user_id=meta.get("user_id") or meta.get("userId"),
        amount=amount,
        payment_method=method,
    )

_record_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Lock]" = weakref.WeakKeyDictionary()

def _record_lock() -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    lock = _record_locks.get(loop)
    if lock is None:
        lock = _record_locks[loop] = asyncio.Lock()
    return lock

async def record_payment(store: ParkingStore, event: WebhookEvent) -> Tuple[bool, Optional[dict]]:
    """Insert a completed payment unless one already exists for (session, user).

    Returns (created, row); row is the existing one on a replay.
    """
    # The lock makes check-then-insert atomic within this process only; the
    # table has no unique constraint, so concurrent workers can still race.
    async with _record_lock():
        existing = await store.find_completed_payment(event.session_id, event.user_id)
        if existing:
            logger.info("Payment for session %s already recorded", event.session_id)
            return False, existing
        row = await store.insert_payment({
            "session_id": event.session_id,
            "user_id": event.user_id,
            "amount": event.amount,
            "payment_method": event.payment_method,
            "status": PaymentStatus.COMPLETED,
        })
    logger.info("Recorded %s payment for session %s", event.payment_method, event.session_id)
    return True, row

def to_minor_units(amount) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

class PayMongoClient:
    def __init__(self, secret: Optional[str] = None, api_url: Optional[str] = None, transport: httpx.AsyncBaseTransport | None = None):
        self.secret = secret if secret is not None else settings.PAYMONGO_SECRET
        self.api_url = api_url or settings.PAYMONGO_API_URL
        self.transport = transport

    def build_payload(
        self,
        amount,
        success_url: str,
        cancel_url: str,
        description: Optional[str] = None,
        email: Optional[str] = None,
        metadata: Optional[dict] = None,
        payment_method_types: Optional[List[str]] = None,
    ) -> dict:
        attributes = {
            "description": description or "Parking Payment",
            "line_items": [{
                "name": "Parking Fee",
                "amount": to_minor_units(amount),
                "currency": settings.CURRENCY,
                "quantity": 1,
            }],
            "payment_method_types": payment_method_types or list(DEFAULT_PAYMENT_METHODS),
            "send_email_receipt": bool(email),
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if email:
            attributes["billing"] = {"email": email}
        return {"data": {"attributes": attributes}}

    async def create_checkout(self, payload: dict) -> dict:
        if not self.secret:
            raise CheckoutError(500, "Server missing PAYMONGO_SECRET configuration")
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=settings.READ_TIMEOUT_SECONDS * 2) as client:
                resp = await client.post(self.api_url, json=payload, auth=(self.secret, ""))
        except httpx.RequestError as e:
            logger.error("Failed to reach PayMongo: %s", e)
            raise CheckoutError(502, "Payment provider unreachable")
        try:
            data = resp.json()
        except ValueError:
            data = {"body": resp.text}
        if not isinstance(data, dict):
            data = {"body": data}
        if resp.is_error:
            raise CheckoutError(resp.status_code, data.get("errors") or data)
        checkout_url = ((data.get("data") or {}).get("attributes") or {}).get("checkout_url")
        if not checkout_url:
            raise CheckoutError(500, "Missing checkout_url in PayMongo response")
        return {"checkout_url": checkout_url, "raw": data}

    @property
    def mode(self) -> str:
        if not self.secret:
            return "UNKNOWN"
        return "TEST" if "_test_" in self.secret else "LIVE"

def get_paymongo_client() -> PayMongoClient:
    return PayMongoClient()
