from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class DeviceSession(BaseModel):
    """
    One login on one device, stored in db.device_sessions.
    `last_sensitive_verification_at` drives the step-up grace period;
    `aal` records whether the session passed a second factor.
    """
    user_id: str
    device_id: str
    confidence_score: int
    is_trusted: bool
    needs_verification: bool
    provider: str = "email"
    aal: Literal["aal1", "aal2"] = "aal1"
    device_verified_at: Optional[datetime] = None
    last_sensitive_verification_at: Optional[datetime] = None
    last_active: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
