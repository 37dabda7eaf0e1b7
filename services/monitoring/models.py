from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class MonitorCycleResult(BaseModel):
    checked: int = 0
    updated: int = 0
    failed: int = 0
    alerts: int = 0
    cancelled: int = 0
    stuck_transfer_ids: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class MonitoringStats(BaseModel):
    is_running: bool
    check_interval_seconds: float
    alert_threshold_hours: float
    pending_transfers: int
    stuck_transfers: int
    failed_transfers: int
    last_cycle_time: Optional[datetime] = None
    last_result: Optional[MonitorCycleResult] = None
