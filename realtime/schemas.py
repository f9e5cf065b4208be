from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal

class VisibilityUpdate(BaseModel):
    visible: bool

class DashboardStatsRead(BaseModel):
    total_spaces: int
    occupied_spaces: int
    available_spaces: int
    daily_revenue: int
    total_earnings: Decimal

class ActivityItem(BaseModel):
    id: str
    type: str
    description: str
    time: Optional[datetime] = None
    time_ago: str
    details: dict = {}

class DashboardRead(BaseModel):
    session_start: datetime
    stats: DashboardStatsRead
    recent: Dict[str, List[ActivityItem]]

class ActivityListRead(BaseModel):
    feed: str
    items: List[ActivityItem]
