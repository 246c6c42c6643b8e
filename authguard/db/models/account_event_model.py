from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AccountEvent(BaseModel):
    # db.account_events, append-only
    user_id: str
    event_type: str
    device_session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
