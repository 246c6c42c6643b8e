from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field

VerificationMethodName = Literal["authenticator", "sms", "backup_codes", "password", "email"]


class UserSignup(BaseModel):
    email: EmailStr
    password: str
    name: str = ""


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class OAuthCallback(BaseModel):
    """Signed identity assertion from the OAuth bridge."""
    assertion: str


class VerificationProof(BaseModel):
    """Proof of identity sent with (or ahead of) a sensitive action."""
    method: VerificationMethodName
    code: str
    factor_id: Optional[str] = Field(None, alias="factorId")

    class Config:
        populate_by_name = True


class VerifyRequest(VerificationProof):
    action: Optional[str] = None


class DeviceCodeRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=12)


class EmailLinkRequest(BaseModel):
    token: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResendConfirmationRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str
    password: str


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=120)
    avatar_url: Optional[str] = None


class AuthResponse(BaseModel):
    status: str = "success"
    access_token: str
    token_type: str = "bearer"
    user_id: str
    device_session_id: str = Field(..., alias="deviceSessionId")
    needs_verification: bool = Field(False, alias="needsVerification")
    requires_two_factor: bool = Field(False, alias="requiresTwoFactor")
    factor_id: Optional[str] = Field(None, alias="factorId")
    available_methods: list = Field(default_factory=list, alias="availableMethods")

    class Config:
        populate_by_name = True
