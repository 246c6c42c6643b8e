from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from authguard.schemas.auth_schema import VerificationProof


class DeviceInfo(BaseModel):
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None


class DeviceSessionResponse(BaseModel):
    """
    Response schema for a device session.
    """
    id: str
    device: Optional[DeviceInfo] = None
    is_trusted: bool
    needs_verification: bool
    confidence_score: int
    provider: str = "email"
    aal: str = "aal1"
    device_verified_at: Optional[datetime] = None
    last_sensitive_verification_at: Optional[datetime] = None
    last_active: Optional[datetime] = None
    created_at: datetime
    expires_at: datetime
    is_current: bool = False


class DeviceSessionsListResponse(BaseModel):
    sessions: List[DeviceSessionResponse]
    total: int


class TrustDeviceRequest(BaseModel):
    verification: Optional[VerificationProof] = None


class RevokeSessionRequest(BaseModel):
    """Revoke one session by id, or every session except the current one."""
    session_id: Optional[str] = Field(None, alias="sessionId")
    all_others: bool = Field(False, alias="allOthers")
    verification: Optional[VerificationProof] = None

    class Config:
        populate_by_name = True
