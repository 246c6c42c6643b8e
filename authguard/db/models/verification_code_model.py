from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class VerificationCode(BaseModel):
    # db.device_verification_codes and db.email_verification_codes
    user_id: str
    device_session_id: Optional[str] = None
    code_hash: str
    created_at: datetime
    expires_at: datetime


class BackupCode(BaseModel):
    # db.backup_codes, single use
    user_id: str
    code_hash: str
    used: bool = False
    used_at: Optional[datetime] = None
    created_at: datetime
