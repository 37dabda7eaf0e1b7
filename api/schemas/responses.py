from pydantic import BaseModel, Field
from typing import List, Optional, Any, Dict
from datetime import datetime
from decimal import Decimal

from core.utils.time_utils import utc_now


class ErrorResponse(BaseModel):
    """Error body returned for every failed request"""
    error: str
    message: str
    timestamp: datetime = Field(default_factory=utc_now)


class TradeSubmission(BaseModel):
    """Executed trade handed over for settlement"""
    trade_id: Optional[str] = None
    buyer_id: str
    seller_id: str
    product_id: str
    quantity: int = Field(gt=0)
    price_per_share: Decimal = Field(gt=0)


class AutoCorrectRequest(BaseModel):
    report_id: Optional[str] = Field(None, description="Report to correct; latest report when omitted")
    dry_run: bool = True


class ServiceInfo(BaseModel):
    service_name: str
    status: str
    uptime_seconds: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ServiceListResponse(BaseModel):
    services: List[ServiceInfo]
    summary: Dict[str, int]
