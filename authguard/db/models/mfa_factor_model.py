from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


class MFAFactor(BaseModel):
    # stored in db.mfa_factors
    user_id: str
    factor_type: Literal["totp", "phone"]
    status: Literal["unverified", "verified"] = "unverified"
    friendly_name: Optional[str] = None
    secret: Optional[str] = None       # totp only
    phone: Optional[str] = None        # phone only
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MFAChallenge(BaseModel):
    # stored in db.mfa_challenges (TTL on expires_at)
    factor_id: str
    user_id: str
    code_hash: Optional[str] = None    # phone challenges only
    created_at: datetime
    expires_at: datetime
