from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class Identity(BaseModel):
    provider: str                      # "email" | "google" | "github"
    provider_id: str
    identity_data: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None


class User(BaseModel):
    # stored in db.users
    email: EmailStr
    name: str = ""
    avatar_url: str = ""
    password: Optional[str] = None     # hashed; None for OAuth-only accounts
    has_password: bool = False
    email_verified: bool = False
    identities: List[Identity] = Field(default_factory=list)
    last_sign_in_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
