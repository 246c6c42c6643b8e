from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

from authguard.schemas.auth_schema import VerificationProof


class ChangePasswordRequest(BaseModel):
    new_password: str
    verification: Optional[VerificationProof] = None


class ChangeEmailRequest(BaseModel):
    new_email: EmailStr
    verification: Optional[VerificationProof] = None


class DeleteAccountRequest(BaseModel):
    verification: Optional[VerificationProof] = None


class SocialConnectRequest(BaseModel):
    assertion: str
    verification: Optional[VerificationProof] = None


class SocialDisconnectRequest(BaseModel):
    provider: Literal["google", "github"]
    verification: Optional[VerificationProof] = None


class TwoFactorEnrollRequest(BaseModel):
    method: Literal["authenticator", "sms"] = "authenticator"
    phone: Optional[str] = None
    friendly_name: Optional[str] = None


class TwoFactorVerifyRequest(BaseModel):
    factor_id: str = Field(..., alias="factorId")
    code: str

    class Config:
        populate_by_name = True


class TwoFactorDisableRequest(BaseModel):
    factor_id: str = Field(..., alias="factorId")
    verification: Optional[VerificationProof] = None

    class Config:
        populate_by_name = True


class TwoFactorChallengeRequest(BaseModel):
    factor_id: str = Field(..., alias="factorId")

    class Config:
        populate_by_name = True
