# authguard/api/v1/routes/auth_route.py

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from authguard.api.deps import (
    DEVICE_SESSION_COOKIE,
    get_auth_config,
    get_auth_provider,
    get_code_service,
    get_current_user,
    get_device_session,
    get_device_session_service,
    get_event_service,
    get_verification_service,
    require_verified_session,
)
from authguard.core.config import AuthConfig, settings
from authguard.core.device_trust import DeviceTrust, TrustLevel
from authguard.core.rate_limit import limit_by_ip
from authguard.core.security import (
    create_access_token,
    create_link_token,
    decode_identity_assertion,
    decode_link_token,
    validate_password_strength,
)
from authguard.core.step_up import (
    StepUpGate,
    default_two_factor_method,
    default_verification_method,
    serialize_factors,
)
from authguard.schemas.auth_schema import (
    AuthResponse,
    DeviceCodeRequest,
    EmailLinkRequest,
    ForgotPasswordRequest,
    OAuthCallback,
    ResendConfirmationRequest,
    ResetPasswordRequest,
    UpdateProfileRequest,
    UserLogin,
    UserSignup,
    VerifyRequest,
)
from authguard.services import email_service
from authguard.services.account_event_service import AccountEventType
from authguard.services.auth_provider import AuthProviderError
from authguard.services.verification_service import VerificationError
from authguard.utils.device_utils import fingerprint_from_request

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Authentication"])

auth_rate_limit = Depends(limit_by_ip("auth"))


# ===========================
#        SHARED HELPERS
# ===========================
def set_session_cookie(response: Response, session_id: str, config: AuthConfig):
    response.set_cookie(
        DEVICE_SESSION_COOKIE,
        session_id,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
        max_age=config.device_sessions.max_age_days * 24 * 60 * 60,
    )


def _should_alert_login(config: AuthConfig, trust: DeviceTrust, is_new_user: bool) -> bool:
    alerts = config.email_alerts
    if not alerts.enabled or is_new_user:
        return False
    if alerts.alert_mode == "all":
        return True
    if alerts.alert_mode == "unknown_only":
        return trust.score < alerts.confidence_threshold
    return False


async def send_device_code(user: dict, session_id: str, device: Optional[dict], codes, config: AuthConfig):
    code = await codes.issue_device_code(user["id"], session_id)
    await email_service.send_device_verification_code(
        user["email"], code, device, config.device_verification.code_expiration_minutes,
    )
    logger.info("Device verification code sent for session %s", session_id)


async def finalize_authentication(
    request: Request,
    response: Response,
    user: dict,
    trust_level: TrustLevel,
    config: AuthConfig,
    provider,
    sessions,
    codes,
    is_new_user: bool = False,
    provider_name: str = "email",
) -> AuthResponse:
    """
    Every successful sign-in ends here: score the device, create the
    device session, issue the token + cookie, send a device code if the
    device is unknown, and report any pending 2FA step.
    """
    fingerprint = fingerprint_from_request(request)
    factors = await provider.list_factors(user["id"])
    requirement = StepUpGate(config).check_two_factor_requirements(factors)

    session_id, trust = await sessions.setup_device_session(
        user["id"],
        fingerprint,
        trust_level=trust_level,
        is_new_user=is_new_user,
        has_two_factor=requirement.requires_two_factor,
        provider=provider_name,
    )

    token = create_access_token({"id": user["id"], "email": user["email"], "sid": session_id})
    set_session_cookie(response, session_id, config)

    device = fingerprint.model_dump()
    if trust.needs_verification:
        await send_device_code(user, session_id, device, codes, config)

    if _should_alert_login(config, trust, is_new_user):
        await email_service.send_security_alert(
            True, user["email"], "New sign-in",
            "Your account was just signed in to from a device we haven't seen before.",
            device,
        )

    return AuthResponse(
        access_token=token,
        user_id=user["id"],
        device_session_id=session_id,
        needs_verification=trust.needs_verification,
        requires_two_factor=requirement.requires_two_factor,
        factor_id=requirement.factor_id,
        available_methods=serialize_factors(requirement.available_methods),
    )


def _check_password(password: str, config: AuthConfig):
    problems = validate_password_strength(password, config.password_requirements)
    if problems:
        raise HTTPException(status_code=400, detail=problems)


def _link_url(path: str, token: str) -> str:
    return f"{settings.SITE_URL}{path}?token={token}"


async def redeem_link(token: str, purpose: str, config: AuthConfig, provider) -> str:
    """Check an emailed link and spend it. Returns the user id."""
    max_age = config.password_reset.link_max_age_minutes
    try:
        claims = decode_link_token(token, purpose, max_age)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    expires_at = datetime.utcfromtimestamp(claims["iat"]) + timedelta(minutes=max_age)
    if not await provider.redeem_link_token(claims["jti"], claims["user_id"], expires_at):
        raise HTTPException(status_code=400, detail="Invalid or expired link")
    return claims["user_id"]


async def send_confirmation_link(user: dict):
    token = create_link_token(user["id"], "email_confirmation")
    await email_service.send_link(
        user["email"], "Confirm your email", "Confirm your email address:",
        _link_url("/auth/confirm", token),
    )


# ===========================
#           SIGNUP
# ===========================
@router.post("/signup", dependencies=[auth_rate_limit])
async def signup(
    payload: UserSignup,
    request: Request,
    response: Response,
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
    events=Depends(get_event_service),
):
    _check_password(payload.password, config)

    try:
        user = await provider.create_user(payload.email, payload.password, name=payload.name)
    except AuthProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = await finalize_authentication(
        request, response, user, TrustLevel.NORMAL, config, provider, sessions, codes, is_new_user=True,
    )
    await events.log_event(
        user["id"], AccountEventType.ACCOUNT_CREATED,
        device_session_id=result.device_session_id, device=fingerprint_from_request(request),
    )

    await send_confirmation_link(user)

    return result.model_dump(by_alias=True)


# ===========================
#            LOGIN
# ===========================
@router.post("/login", dependencies=[auth_rate_limit])
async def login(
    credentials: UserLogin,
    request: Request,
    response: Response,
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
):
    try:
        user = await provider.sign_in_with_password(credentials.email, credentials.password)
    except AuthProviderError:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    result = await finalize_authentication(
        request, response, user, TrustLevel.NORMAL, config, provider, sessions, codes,
    )
    return result.model_dump(by_alias=True)


@router.post("/oauth/callback", dependencies=[auth_rate_limit])
async def oauth_callback(
    payload: OAuthCallback,
    request: Request,
    response: Response,
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
    events=Depends(get_event_service),
):
    try:
        claims = decode_identity_assertion(payload.assertion)
        user, is_new_user = await provider.sign_in_with_identity(claims)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))

    result = await finalize_authentication(
        request, response, user, TrustLevel.OAUTH, config, provider, sessions, codes,
        is_new_user=is_new_user, provider_name=claims["provider"],
    )

    if is_new_user:
        await events.log_event(
            user["id"], AccountEventType.ACCOUNT_CREATED,
            metadata={"provider": claims["provider"]},
            device_session_id=result.device_session_id, device=fingerprint_from_request(request),
        )

    return result.model_dump(by_alias=True)


@router.post("/post-auth")
async def post_auth(
    request: Request,
    response: Response,
    user: dict = Depends(get_current_user),
    session: Optional[dict] = Depends(get_device_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
):
    """
    Re-establish a device session for a valid token whose session is gone
    (expired, revoked, cookie cleared).
    """
    if session:
        return {"status": "success", "deviceSessionId": session["id"], "created": False}

    result = await finalize_authentication(
        request, response, user, TrustLevel.NORMAL, config, provider, sessions, codes,
    )
    return {**result.model_dump(by_alias=True), "created": True}


@router.post("/logout")
async def logout(
    response: Response,
    session: Optional[dict] = Depends(get_device_session),
    sessions=Depends(get_device_session_service),
):
    if session:
        await sessions.delete_session(session["id"])
    response.delete_cookie(DEVICE_SESSION_COOKIE)
    return {"status": "success"}


# ===========================
#        EMAIL LINKS
# ===========================
@router.post("/confirm", dependencies=[auth_rate_limit])
async def confirm_email(
    payload: EmailLinkRequest,
    request: Request,
    response: Response,
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
):
    user_id = await redeem_link(payload.token, "email_confirmation", config, provider)

    user = await provider.get_user(user_id)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired link")

    await provider.mark_email_verified(user_id)
    user["email_verified"] = True

    # Mailbox ownership proven: the device is trusted outright
    result = await finalize_authentication(
        request, response, user, TrustLevel.HIGH, config, provider, sessions, codes,
    )
    return result.model_dump(by_alias=True)


@router.post("/forgot-password", dependencies=[auth_rate_limit])
async def forgot_password(payload: ForgotPasswordRequest, provider=Depends(get_auth_provider)):
    user = await provider.get_user_by_email(payload.email)

    # Same answer whether or not the account exists
    if user:
        token = create_link_token(user["id"], "recovery")
        await email_service.send_link(
            user["email"], "Reset your password", "Use this link to choose a new password:",
            _link_url("/auth/reset-password", token),
        )
        logger.info("Recovery link sent to user %s", user["id"])

    return {"status": "success", "message": "If an account exists, a reset link has been sent"}


@router.post("/email/resend-confirmation", dependencies=[auth_rate_limit])
async def resend_confirmation(payload: ResendConfirmationRequest, provider=Depends(get_auth_provider)):
    user = await provider.get_user_by_email(payload.email)

    if user and not user.get("email_verified"):
        await send_confirmation_link(user)
        logger.info("Confirmation link resent to user %s", user["id"])

    return {"status": "success"}


@router.post("/reset-password", dependencies=[auth_rate_limit])
async def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    response: Response,
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
    events=Depends(get_event_service),
):
    _check_password(payload.password, config)
    user_id = await redeem_link(payload.token, "recovery", config, provider)

    user = await provider.get_user(user_id)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired link")

    await provider.update_password(user_id, payload.password)
    await events.log_event(user_id, AccountEventType.PASSWORD_CHANGED, metadata={"via": "recovery"},
                           device=fingerprint_from_request(request))

    if config.password_reset.require_relogin_after_reset:
        await sessions.delete_user_sessions(user_id)
        response.delete_cookie(DEVICE_SESSION_COOKIE)
        return {"status": "success", "relogin": True}

    result = await finalize_authentication(
        request, response, user, TrustLevel.HIGH, config, provider, sessions, codes,
    )
    return {**result.model_dump(by_alias=True), "relogin": False}


# ===========================
#   STEP-UP VERIFICATION
# ===========================
@router.post("/verify", dependencies=[auth_rate_limit])
async def verify(
    payload: VerifyRequest,
    user: dict = Depends(get_current_user),
    session: Optional[dict] = Depends(get_device_session),
    verification=Depends(get_verification_service),
):
    """
    Prove identity ahead of a sensitive action, or complete a pending
    2FA login. Second factors raise the session to aal2.
    """
    if not session:
        raise HTTPException(status_code=401, detail="Device session not found")

    try:
        valid = await verification.verify(
            user, session, payload.method, payload.code, payload.factor_id, action=payload.action,
        )
    except (VerificationError, AuthProviderError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not valid:
        raise HTTPException(status_code=400, detail="Invalid verification code")

    return {"status": "success"}


@router.post("/verify/send-code", dependencies=[auth_rate_limit])
async def send_verification_code(
    user: dict = Depends(get_current_user),
    session: Optional[dict] = Depends(get_device_session),
    verification=Depends(get_verification_service),
):
    try:
        await verification.send_email_code(user, session)
    except VerificationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success"}


@router.post("/verify-device", dependencies=[auth_rate_limit])
async def verify_device(
    payload: DeviceCodeRequest,
    user: dict = Depends(get_current_user),
    session: Optional[dict] = Depends(get_device_session),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
    events=Depends(get_event_service),
):
    if not session:
        raise HTTPException(status_code=401, detail="Device session not found")

    if not session.get("needs_verification"):
        return {"status": "success"}

    if not await codes.consume_device_code(user["id"], session["id"], payload.code):
        raise HTTPException(status_code=400, detail="Invalid or expired verification code")

    await sessions.mark_device_verified(session["id"])
    await events.log_event(
        user["id"], AccountEventType.DEVICE_VERIFIED,
        device_session_id=session["id"], device=session.get("device"),
    )
    return {"status": "success"}


@router.post("/verify-device/send-code", dependencies=[auth_rate_limit])
async def resend_device_code(
    user: dict = Depends(get_current_user),
    session: Optional[dict] = Depends(get_device_session),
    config: AuthConfig = Depends(get_auth_config),
    codes=Depends(get_code_service),
):
    if not session:
        raise HTTPException(status_code=401, detail="Device session not found")
    if not session.get("needs_verification"):
        raise HTTPException(status_code=400, detail="Device is already verified")

    await send_device_code(user, session["id"], session.get("device"), codes, config)
    return {"status": "success"}


# ===========================
#            USER
# ===========================
@router.get("/user")
async def get_user(
    user: dict = Depends(get_current_user),
    verification=Depends(get_verification_service),
    provider=Depends(get_auth_provider),
):
    factors = await provider.list_factors(user["id"])
    methods = await verification.get_verification_methods(user)

    return {
        **user,
        "has_backup_codes": "backup_codes" in methods.methods,
        "auth": {
            "emailVerified": user.get("email_verified", False),
            "lastSignInAt": user.get("last_sign_in_at"),
            "twoFactorEnabled": methods.has_two_factor,
            "enabled2faMethods": [m for m in methods.methods if m in ("authenticator", "sms", "backup_codes")],
            "availableVerificationMethods": methods.methods,
            "defaultVerificationMethod": default_verification_method(methods.methods),
            "default2faMethod": default_two_factor_method(methods.methods),
            "factors": factors,
            "identities": user.get("identities", []),
        },
    }


@router.post("/user/update")
async def update_user(
    payload: UpdateProfileRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    provider=Depends(get_auth_provider),
    events=Depends(get_event_service),
):
    fields = await provider.update_profile(user["id"], name=payload.name, avatar_url=payload.avatar_url)
    if fields:
        await events.log_event(
            user["id"], AccountEventType.PROFILE_UPDATED,
            metadata={"fields": fields}, device_session_id=session["id"],
        )
    return {"status": "success", "updated": fields}
