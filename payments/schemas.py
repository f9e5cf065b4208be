from pydantic import BaseModel
from typing import Any, List, Optional

class CheckoutRequest(BaseModel):
    amount: Any = None
    description: Optional[str] = None
    email: Optional[str] = None
    metadata: dict = {}
    payment_method_types: Optional[List[str]] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

class CheckoutResponse(BaseModel):
    checkout_url: str
    raw: dict = {}

class HealthResponse(BaseModel):
    ok: bool
    service: str
    time: str
