from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class AccountEventResponse(BaseModel):
    id: str
    event_type: str
    device_session_id: Optional[str] = None
    metadata: Dict[str, Any]
    created_at: datetime


class AccountEventsPage(BaseModel):
    events: List[AccountEventResponse]
    total: int
    page: int
    limit: int
