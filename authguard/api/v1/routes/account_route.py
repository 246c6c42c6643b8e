# authguard/api/v1/routes/account_route.py

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from authguard.api.deps import (
    DEVICE_SESSION_COOKIE,
    fresh_verification,
    get_auth_config,
    get_auth_provider,
    get_code_service,
    get_current_user,
    get_data_export_service,
    get_device_session_service,
    get_event_service,
    get_verification_service,
    require_verified_session,
)
from authguard.core.config import AuthConfig, settings
from authguard.core.rate_limit import limit_by_ip
from authguard.core.security import create_link_token, decode_identity_assertion, validate_password_strength
from authguard.schemas.account_schema import (
    ChangeEmailRequest,
    ChangePasswordRequest,
    DeleteAccountRequest,
    SocialConnectRequest,
    SocialDisconnectRequest,
)
from authguard.schemas.account_event_schema import AccountEventsPage
from authguard.services import email_service
from authguard.services.account_event_service import AccountEventType
from authguard.services.auth_provider import SOCIAL_PROVIDERS, AuthProviderError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/account", tags=["Account"], dependencies=[Depends(limit_by_ip("api"))])


# ===========================
#      CHANGE PASSWORD
# ===========================
@router.post("/change-password")
async def change_password(
    payload: ChangePasswordRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    events=Depends(get_event_service),
    verification=Depends(get_verification_service),
):
    challenge = await fresh_verification(verification, user, session, "change_password", payload.verification)
    if challenge:
        return challenge

    problems = validate_password_strength(payload.new_password, config.password_requirements)
    if problems:
        raise HTTPException(status_code=400, detail=problems)

    await provider.update_password(user["id"], payload.new_password)
    await events.log_event(
        user["id"], AccountEventType.PASSWORD_CHANGED,
        device_session_id=session["id"], device=session.get("device"),
    )
    await email_service.send_security_alert(
        config.email_alerts.enabled and config.email_alerts.alert_on_password_change,
        user["email"], "Password changed", "The password for your account was changed.", session.get("device"),
    )
    return {"status": "success"}


# ===========================
#        CHANGE EMAIL
# ===========================
@router.post("/change-email")
async def change_email(
    payload: ChangeEmailRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    events=Depends(get_event_service),
    verification=Depends(get_verification_service),
):
    challenge = await fresh_verification(verification, user, session, "change_email", payload.verification)
    if challenge:
        return challenge

    old_email = user["email"]
    new_email = payload.new_email.lower()
    if new_email == old_email:
        raise HTTPException(status_code=400, detail="That is already your email address")

    try:
        await provider.update_email(user["id"], new_email)
    except AuthProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))

    token = create_link_token(user["id"], "email_confirmation")
    await email_service.send_link(
        new_email, "Confirm your new email", "Confirm your new email address:",
        f"{settings.SITE_URL}/auth/confirm?token={token}",
    )

    await events.log_event(
        user["id"], AccountEventType.EMAIL_CHANGED,
        metadata={"oldEmail": old_email, "newEmail": new_email},
        device_session_id=session["id"], device=session.get("device"),
    )
    await email_service.send_security_alert(
        config.email_alerts.enabled and config.email_alerts.alert_on_email_change,
        old_email, "Email changed", f"Your account email was changed to {new_email}.", session.get("device"),
    )
    return {"status": "success", "email": new_email}


# ===========================
#       DELETE ACCOUNT
# ===========================
@router.post("/delete")
async def delete_account(
    payload: DeleteAccountRequest,
    response: Response,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
    exports=Depends(get_data_export_service),
    events=Depends(get_event_service),
    verification=Depends(get_verification_service),
):
    challenge = await fresh_verification(verification, user, session, "delete_account", payload.verification)
    if challenge:
        return challenge

    # Event history is kept after the account is gone
    await events.log_event(
        user["id"], AccountEventType.ACCOUNT_DELETED,
        device_session_id=session["id"], device=session.get("device"),
    )
    await email_service.send_security_alert(
        config.email_alerts.enabled and config.email_alerts.alert_on_account_delete,
        user["email"], "Account deleted", "Your account and its data were deleted.", session.get("device"),
    )

    await sessions.delete_user_sessions(user["id"])
    await codes.delete_user_codes(user["id"])
    await exports.delete_user_exports(user["id"])
    await provider.delete_user(user["id"])

    response.delete_cookie(DEVICE_SESSION_COOKIE)
    logger.info("Account %s deleted", user["id"])
    return {"status": "success"}


# ===========================
#      SOCIAL PROVIDERS
# ===========================
@router.post("/social/connect")
async def connect_social(
    payload: SocialConnectRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    events=Depends(get_event_service),
    verification=Depends(get_verification_service),
):
    challenge = await fresh_verification(verification, user, session, "connect_provider", payload.verification)
    if challenge:
        return challenge

    try:
        claims = decode_identity_assertion(payload.assertion)
        if claims["provider"] not in SOCIAL_PROVIDERS:
            raise AuthProviderError("Unsupported provider")
        await provider.link_identity(user["id"], claims)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await events.log_event(
        user["id"], AccountEventType.SOCIAL_PROVIDER_CONNECTED,
        metadata={"provider": claims["provider"]}, device_session_id=session["id"],
    )
    await email_service.send_security_alert(
        config.email_alerts.enabled and config.email_alerts.alert_on_provider_connect,
        user["email"], "Login method connected",
        f"A {claims['provider']} account was connected to your account.", session.get("device"),
    )
    return {"status": "success", "provider": claims["provider"]}


@router.post("/social/disconnect")
async def disconnect_social(
    payload: SocialDisconnectRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    events=Depends(get_event_service),
    verification=Depends(get_verification_service),
):
    challenge = await fresh_verification(verification, user, session, "disconnect_provider", payload.verification)
    if challenge:
        return challenge

    try:
        await provider.unlink_identity(user["id"], payload.provider)
    except AuthProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await events.log_event(
        user["id"], AccountEventType.SOCIAL_PROVIDER_DISCONNECTED,
        metadata={"provider": payload.provider}, device_session_id=session["id"],
    )
    await email_service.send_security_alert(
        config.email_alerts.enabled and config.email_alerts.alert_on_provider_disconnect,
        user["email"], "Login method disconnected",
        f"Your {payload.provider} account was disconnected.", session.get("device"),
    )
    return {"status": "success"}


# ===========================
#          EVENTS
# ===========================
@router.get("/events", response_model=AccountEventsPage)
async def list_events(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    events=Depends(get_event_service),
):
    items, total = await events.list_events(user["id"], page=page, limit=limit)
    return {"events": items, "total": total, "page": page, "limit": limit}
