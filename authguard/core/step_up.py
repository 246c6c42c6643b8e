"""
Step-Up Verification Gate
-------------------------
Decides whether a sensitive action (password change, account deletion,
disconnecting a login method, ...) must re-demand proof of identity, and
which factors the client may present.

Location:
authguard/core/step_up.py
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

from authguard.core.config import AuthConfig

AAL1 = "aal1"
AAL2 = "aal2"

# Factor types as the identity platform reports them
FACTOR_TYPE_TOTP = "totp"
FACTOR_TYPE_PHONE = "phone"

TWO_FACTOR_METHODS = ("authenticator", "sms", "backup_codes")
BASIC_METHODS = ("password", "email")

# Most secure first
VERIFICATION_PREFERENCE = ["authenticator", "sms", "backup_codes", "password", "email"]
TWO_FACTOR_PREFERENCE = ["authenticator", "sms", "backup_codes"]

BACKUP_CODES_FACTOR_ID = "backup"


class VerificationFactor(BaseModel):
    """One concrete way the user can currently prove identity."""
    type: str
    factor_id: str = Field(..., alias="factorId")
    friendly_name: Optional[str] = None

    class Config:
        populate_by_name = True


class TwoFactorRequirement(BaseModel):
    requires_two_factor: bool = Field(False, alias="requiresTwoFactor")
    factor_id: Optional[str] = Field(None, alias="factorId")
    available_methods: List[VerificationFactor] = Field(default_factory=list, alias="availableMethods")

    class Config:
        populate_by_name = True


class VerificationMethods(BaseModel):
    methods: List[str] = Field(default_factory=list)
    factors: List[VerificationFactor] = Field(default_factory=list)
    has_two_factor: bool = False


class VerificationRequired(BaseModel):
    """Payload returned instead of performing a sensitive action."""
    requires_verification: bool = Field(True, alias="requiresVerification")
    available_methods: List[VerificationFactor] = Field(default_factory=list, alias="availableMethods")

    class Config:
        populate_by_name = True


def utcnow() -> datetime:
    return datetime.utcnow()


def _as_naive_utc(value: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def has_grace_period_expired(
    last_verified_at: Optional[datetime],
    grace_period_minutes: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    True when the user has to verify again: never verified, or the last
    verification is older than the grace period.
    """
    if not last_verified_at:
        return True

    now = _as_naive_utc(now or utcnow())
    cutoff = now - timedelta(minutes=grace_period_minutes)
    return _as_naive_utc(last_verified_at) < cutoff


def _verified(factors: Optional[Iterable[Mapping[str, Any]]], factor_type: str) -> List[Mapping[str, Any]]:
    return [
        f for f in (factors or [])
        if f.get("factor_type") == factor_type and f.get("status") == "verified"
    ]


def two_factor_factors(enrolled_factors: Optional[Iterable[Mapping[str, Any]]]) -> List[VerificationFactor]:
    """Verified authenticator factor first, then verified SMS factor."""
    enrolled_factors = list(enrolled_factors or [])
    factors = []

    totp = _verified(enrolled_factors, FACTOR_TYPE_TOTP)
    if totp:
        factors.append(VerificationFactor(
            type="authenticator",
            factor_id=str(totp[0]["id"]),
            friendly_name=totp[0].get("friendly_name"),
        ))

    phone = _verified(enrolled_factors, FACTOR_TYPE_PHONE)
    if phone:
        factors.append(VerificationFactor(
            type="sms",
            factor_id=str(phone[0]["id"]),
            friendly_name=phone[0].get("friendly_name"),
        ))

    return factors


def default_verification_method(methods: Iterable[str]) -> Optional[str]:
    methods = set(methods)
    return next((m for m in VERIFICATION_PREFERENCE if m in methods), None)


def default_two_factor_method(methods: Iterable[str]) -> Optional[str]:
    methods = set(methods)
    return next((m for m in TWO_FACTOR_PREFERENCE if m in methods), None)


class StepUpGate:
    """
    Step-up decisions over persisted state. Stateless; the config is the
    one built at startup.
    """

    def __init__(self, config: AuthConfig):
        self.config = config

    @property
    def grace_period_minutes(self) -> int:
        return self.config.sensitive_actions.grace_period_minutes

    def requires_fresh_verification(self, action: str) -> bool:
        return bool(getattr(self.config.sensitive_actions.require_fresh_verification, action, True))

    def grace_period_expired(self, session: Optional[Mapping[str, Any]], now: Optional[datetime] = None) -> bool:
        """Missing or unreadable session fails closed."""
        if not session:
            return True
        return has_grace_period_expired(
            session.get("last_sensitive_verification_at"),
            self.grace_period_minutes,
            now=now,
        )

    def check_two_factor_requirements(
        self,
        enrolled_factors: Optional[Iterable[Mapping[str, Any]]],
    ) -> TwoFactorRequirement:
        """
        Zero verified factors: no 2FA step-up. One or more: always required,
        defaulting to the authenticator when present.
        """
        two_factor = self.config.two_factor
        if not two_factor.enabled:
            return TwoFactorRequirement(requires_two_factor=False)

        if not any((two_factor.methods.authenticator, two_factor.methods.sms)):
            return TwoFactorRequirement(requires_two_factor=False)

        available = two_factor_factors(enrolled_factors)
        if not available:
            return TwoFactorRequirement(requires_two_factor=False)

        default = next((f for f in available if f.type == "authenticator"), available[0])
        return TwoFactorRequirement(
            requires_two_factor=True,
            factor_id=default.factor_id,
            available_methods=available,
        )

    def get_user_verification_methods(
        self,
        user: Mapping[str, Any],
        enrolled_factors: Optional[Iterable[Mapping[str, Any]]],
        has_backup_codes: bool = False,
    ) -> VerificationMethods:
        """
        Every method the user can verify with right now: 2FA factors when
        enrolled (plus backup codes), otherwise password and/or email.
        """
        factors = two_factor_factors(enrolled_factors)
        methods = [f.type for f in factors]
        has_two_factor = bool(factors)

        if has_backup_codes and self.config.two_factor.methods.backup_codes:
            methods.append("backup_codes")
            factors.append(VerificationFactor(type="backup_codes", factor_id=BACKUP_CODES_FACTOR_ID))

        if not has_two_factor:
            verification = self.config.verification_methods
            if verification.password and user.get("has_password"):
                methods.append("password")
            if verification.email and user.get("email") and user.get("email_verified"):
                methods.append("email")

        return VerificationMethods(methods=methods, factors=factors, has_two_factor=has_two_factor)

    def verification_challenge(self, methods: VerificationMethods) -> VerificationRequired:
        """
        Users with 2FA must use it; everyone else gets the basic methods,
        with the method name standing in for the factor id.
        """
        if methods.has_two_factor:
            return VerificationRequired(available_methods=methods.factors)

        available = [
            VerificationFactor(type=method, factor_id=method)
            for method in methods.methods
            if method in BASIC_METHODS
        ]
        return VerificationRequired(available_methods=available)

    def assurance_level_for(self, method: str) -> Optional[str]:
        """AAL a successful verification with `method` raises the session to."""
        return AAL2 if method in TWO_FACTOR_METHODS else None


def serialize_factors(factors: Iterable[VerificationFactor]) -> List[Dict[str, Any]]:
    return [f.model_dump(by_alias=True, exclude_none=True) for f in factors]
