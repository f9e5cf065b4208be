# schemas.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime
from decimal import Decimal
from auth.core.enums import ScanMode, SessionStatus

class ScanRequest(BaseModel):
    mode: ScanMode
    payload: str = Field(..., description="QR text: a JSON object or a bare session id")
    space_id: Optional[str] = None

class ReconcileResponse(BaseModel):
    success: bool
    message: str
    space_id: Optional[str] = None
    session_id: Optional[str] = None
    session_updated: bool = False
    history_preserved: Optional[bool] = None
    space_deleted: bool = False
    sessions_detached: int = 0
    activities_enriched: int = 0
    model_config = ConfigDict(from_attributes=True)

class ParkingSpaceCreate(BaseModel):
    section: str = Field(..., min_length=1, max_length=50)
    category: str = Field(..., min_length=1, max_length=50)
    address: str = Field(..., min_length=1, max_length=255)
    daily_rate: Decimal = Field(..., gt=0)
    space_number: Optional[str] = Field(None, max_length=50)

class ParkingSpaceRead(BaseModel):
    id: str
    space_number: str
    section: Optional[str] = None
    address: Optional[str] = None
    category: Optional[str] = None
    daily_rate: Decimal
    is_occupied: bool
    occupied_since: Optional[datetime] = None
    vehicle_id: Optional[str] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)

class ParkingSessionRead(BaseModel):
    id: str
    user_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    space_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: SessionStatus
    total_amount: Optional[Decimal] = None
    daily_rate_snapshot: Optional[Decimal] = None
    days_booked: Optional[int] = None
    model_config = ConfigDict(from_attributes=True)

class ProfileSummary(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None

class VehicleSummary(BaseModel):
    plate: str
    vehicle_type: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    color: Optional[str] = None

class SpaceSessionRead(BaseModel):
    space: ParkingSpaceRead
    session: Optional[ParkingSessionRead] = None
    profile: Optional[ProfileSummary] = None
    vehicle: Optional[VehicleSummary] = None
    owner_label: str = "Unknown"
    inconsistent: bool = False
    message: Optional[str] = None
