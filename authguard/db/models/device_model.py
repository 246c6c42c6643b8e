from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Device(BaseModel):
    # stored in db.devices, referenced by device_sessions.device_id
    user_id: str
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None
