# authguard/api/v1/routes/two_factor_route.py

import logging

from fastapi import APIRouter, Depends, HTTPException

from authguard.api.deps import (
    fresh_verification,
    get_auth_config,
    get_auth_provider,
    get_code_service,
    get_current_user,
    get_device_session_service,
    get_event_service,
    get_verification_service,
    limit_by_user,
    require_verified_session,
)
from authguard.core.config import AuthConfig
from authguard.core.rate_limit import limit_by_ip
from authguard.core.step_up import AAL2
from authguard.schemas.account_schema import (
    TwoFactorChallengeRequest,
    TwoFactorDisableRequest,
    TwoFactorEnrollRequest,
    TwoFactorVerifyRequest,
)
from authguard.services import email_service
from authguard.services.account_event_service import AccountEventType
from authguard.services.auth_provider import AuthProviderError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/account/2fa", tags=["Two-Factor"])

FACTOR_TYPES = {"authenticator": "totp", "sms": "phone"}
METHOD_NAMES = {"totp": "authenticator", "phone": "sms"}


def _ensure_enabled(config: AuthConfig, method: str):
    if not config.two_factor.enabled or not getattr(config.two_factor.methods, method, False):
        raise HTTPException(status_code=400, detail=f"{method} two-factor is not enabled")


@router.post("/enroll")
async def enroll(
    payload: TwoFactorEnrollRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
):
    _ensure_enabled(config, payload.method)

    try:
        factor = await provider.enroll_factor(
            user["id"], FACTOR_TYPES[payload.method], phone=payload.phone, friendly_name=payload.friendly_name,
        )
    except AuthProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = {"factorId": factor["id"], "type": payload.method}
    if payload.method == "authenticator":
        result.update({"secret": factor["secret"], "uri": factor["uri"]})
    return result


@router.post("/challenge", dependencies=[Depends(limit_by_ip("sms_ip")), Depends(limit_by_user("sms_user"))])
async def challenge(
    payload: TwoFactorChallengeRequest,
    user: dict = Depends(get_current_user),
    provider=Depends(get_auth_provider),
):
    """Send an SMS code for a phone factor."""
    try:
        challenge_id = await provider.challenge(user["id"], payload.factor_id)
    except AuthProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "challengeId": challenge_id}


@router.post("/verify", dependencies=[Depends(limit_by_ip("auth"))])
async def verify_enrollment(
    payload: TwoFactorVerifyRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
    events=Depends(get_event_service),
):
    """
    Finish enrollment with the first code. The first verified factor also
    issues backup codes (when enabled); they are only shown here.
    """
    factors = await provider.list_factors(user["id"])
    factor = next((f for f in factors if f["id"] == payload.factor_id), None)
    if not factor:
        raise HTTPException(status_code=404, detail="Factor not found")
    if factor["status"] == "verified":
        raise HTTPException(status_code=400, detail="Factor is already verified")

    try:
        valid = await provider.challenge_and_verify(user["id"], payload.factor_id, payload.code)
    except AuthProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not valid:
        raise HTTPException(status_code=400, detail="Invalid verification code")

    # The session just proved the new factor
    await sessions.stamp_sensitive_verification(session["id"], aal=AAL2)

    method = METHOD_NAMES[factor["factor_type"]]
    await events.log_event(
        user["id"], AccountEventType.TWO_FACTOR_ENABLED,
        metadata={"method": method}, device_session_id=session["id"],
    )

    backup_codes = []
    if config.two_factor.methods.backup_codes and not await codes.has_backup_codes(user["id"]):
        backup_codes = await codes.generate_backup_codes(user["id"])
        await events.log_event(
            user["id"], AccountEventType.BACKUP_CODES_GENERATED,
            metadata={"count": len(backup_codes)}, device_session_id=session["id"],
        )

    return {"status": "success", "backupCodes": backup_codes}


@router.post("/disable")
async def disable(
    payload: TwoFactorDisableRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    codes=Depends(get_code_service),
    events=Depends(get_event_service),
    verification=Depends(get_verification_service),
):
    challenge = await fresh_verification(verification, user, session, "disable_two_factor", payload.verification)
    if challenge:
        return challenge

    factors = await provider.list_factors(user["id"])
    factor = next((f for f in factors if f["id"] == payload.factor_id), None)
    if not factor:
        raise HTTPException(status_code=404, detail="Factor not found")

    await provider.unenroll(user["id"], payload.factor_id)

    remaining = [f for f in factors if f["id"] != payload.factor_id and f["status"] == "verified"]
    if not remaining:
        await codes.delete_backup_codes(user["id"])

    method = METHOD_NAMES[factor["factor_type"]]
    await events.log_event(
        user["id"], AccountEventType.TWO_FACTOR_DISABLED,
        metadata={"method": method}, device_session_id=session["id"],
    )
    await email_service.send_security_alert(
        config.email_alerts.enabled and config.email_alerts.alert_on_two_factor_disable,
        user["email"], "Two-factor authentication disabled",
        f"The {method} method was removed from your account.", session.get("device"),
    )
    return {"status": "success"}
