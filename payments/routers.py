import html
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from urllib.parse import quote
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse
from auth.core.config import settings
from parking.store import ParkingStore, StoreError, get_store
from .schemas import CheckoutRequest, CheckoutResponse, HealthResponse
from .services import (
    CheckoutError, PayMongoClient, WebhookSignatureError,
    get_paymongo_client, parse_webhook_event, record_payment, verify_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Payments"])

@router.get("/api/health", response_model=HealthResponse)
def health():
    return {"ok": True, "service": "paymongo-proxy", "time": datetime.now(timezone.utc).isoformat()}

@router.post("/api/paymongo/checkout", response_model=CheckoutResponse)
async def create_checkout(request: CheckoutRequest, http_request: Request, client: PayMongoClient = Depends(get_paymongo_client)):
    if not client.secret:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server missing PAYMONGO_SECRET configuration")
    try:
        amount = Decimal(str(request.amount))
    except (InvalidOperation, ValueError):
        amount = None
    if request.amount in (None, "") or amount is None or not amount.is_finite() or amount <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"amount is required (in {settings.CURRENCY}), e.g., 100 for {settings.CURRENCY_SYMBOL}100",
        )
    origin = http_request.headers.get("origin") or f"http://localhost:{settings.PORT}"
    payload = client.build_payload(
        amount,
        success_url=request.success_url or f"{origin}/paymongo/return?status=success",
        cancel_url=request.cancel_url or f"{origin}/paymongo/return?status=cancelled",
        description=request.description,
        email=request.email,
        metadata=request.metadata,
        payment_method_types=request.payment_method_types,
    )
    try:
        return await client.create_checkout(payload)
    except CheckoutError as e:
        logger.warning("Checkout failed with %s", e.status_code)
        raise HTTPException(status_code=e.status_code, detail=e.detail)

def render_deep_link_page(target_url: str) -> str:
    url = html.escape(target_url, quote=True)
    script_url = json.dumps(target_url).replace("<", "\\u003c")
    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>Returning to app...</title>
    <meta http-equiv="refresh" content="0;url='{url}'" />
    <script>
      (function(){{
        var url = {script_url};
        try {{ window.location.href = url; }} catch (e) {{}}
        setTimeout(function(){{ window.location.href = url; }}, 200);
      }})();
    </script>
  </head>
  <body>
    <div>
      <h2>Returning to the app...</h2>
      <p>If you are not redirected automatically, <a href="{url}">tap here</a>.</p>
    </div>
  </body>
</html>"""

@router.get("/paymongo/return", response_class=HTMLResponse)
def payment_return(status_value: str = Query("", alias="status"), redirect: str = ""):
    deep_link = redirect or f"{settings.APP_DEEP_LINK}?status={quote(status_value or 'unknown')}"
    return HTMLResponse(render_deep_link_page(deep_link))

@router.post("/api/paymongo/webhook")
async def paymongo_webhook(request: Request, store: ParkingStore = Depends(get_store)):
    raw = await request.body()
    if settings.PAYMONGO_WEBHOOK_SECRET:
        try:
            verify_signature(raw, request.headers.get("Paymongo-Signature", ""), settings.PAYMONGO_WEBHOOK_SECRET)
        except WebhookSignatureError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    else:
        logger.warning("PAYMONGO_WEBHOOK_SECRET not set. Skipping signature verification.")

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON")

    event = parse_webhook_event(payload)
    if not event.is_paid:
        return {"received": True, "ignored": event.type}
    if not event.session_id or not event.user_id:
        logger.warning("Webhook missing session_id or user_id in metadata; skipping insert")
        return {"received": True, "skipped": "missing metadata"}
    try:
        created, _ = await record_payment(store, event)
    except StoreError:
        logger.exception("Webhook payment insert failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="insert failed")
    if not created:
        return {"received": True, "duplicate": True}
    return {"received": True}
