# authguard/api/v1/routes/device_session_route.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from authguard.api.deps import (
    fresh_verification,
    get_auth_config,
    get_current_user,
    get_device_session,
    get_device_session_service,
    get_event_service,
    get_verification_service,
    require_verified_session,
)
from authguard.core.config import AuthConfig
from authguard.core.rate_limit import limit_by_ip
from authguard.schemas.device_session_schema import (
    DeviceSessionResponse,
    DeviceSessionsListResponse,
    RevokeSessionRequest,
    TrustDeviceRequest,
)
from authguard.services import email_service
from authguard.services.account_event_service import AccountEventType
from authguard.utils.ip_utils import get_client_ip, get_geolocation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/device-sessions", tags=["Device Sessions"], dependencies=[Depends(limit_by_ip("api"))])


def _response(session: dict, current_id: Optional[str]) -> DeviceSessionResponse:
    return DeviceSessionResponse(**session, is_current=session["id"] == current_id)


@router.get("", response_model=DeviceSessionsListResponse)
async def list_sessions(
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    sessions=Depends(get_device_session_service),
):
    items = await sessions.list_sessions(user["id"])
    return {"sessions": [_response(s, session["id"]) for s in items], "total": len(items)}


@router.get("/trusted", response_model=DeviceSessionsListResponse)
async def list_trusted_sessions(
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    sessions=Depends(get_device_session_service),
):
    items = await sessions.get_trusted_sessions(user["id"])
    return {"sessions": [_response(s, session["id"]) for s in items], "total": len(items)}


@router.get("/current", response_model=DeviceSessionResponse)
async def current_session(session: Optional[dict] = Depends(get_device_session)):
    """Readable before device verification so the client can see what is pending."""
    if not session:
        raise HTTPException(status_code=404, detail="Device session not found")
    return _response(session, session["id"])


@router.get("/geolocation")
async def geolocation(request: Request, user: dict = Depends(get_current_user)):
    return get_geolocation(get_client_ip(request))


@router.post("/{session_id}/trust")
async def trust_session(
    session_id: str,
    payload: TrustDeviceRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    sessions=Depends(get_device_session_service),
    events=Depends(get_event_service),
    verification=Depends(get_verification_service),
):
    challenge = await fresh_verification(verification, user, session, "trust_device", payload.verification)
    if challenge:
        return challenge

    target = await sessions.get_session(session_id, user_id=user["id"])
    if not target:
        raise HTTPException(status_code=404, detail="Device session not found")

    await sessions.trust_session(session_id, user["id"])
    await events.log_event(
        user["id"], AccountEventType.DEVICE_TRUSTED,
        device_session_id=session_id, device=target.get("device"),
    )
    return {"status": "success"}


@router.post("/revoke")
async def revoke(
    payload: RevokeSessionRequest,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    config: AuthConfig = Depends(get_auth_config),
    sessions=Depends(get_device_session_service),
    events=Depends(get_event_service),
    verification=Depends(get_verification_service),
):
    """Revoke one other session, or every session except this one."""
    challenge = await fresh_verification(verification, user, session, "device_logout", payload.verification)
    if challenge:
        return challenge

    alert_enabled = config.email_alerts.enabled and config.email_alerts.alert_on_device_revoke

    if payload.all_others:
        revoked = await sessions.revoke_other_sessions(user["id"], session["id"])
        await events.log_event(
            user["id"], AccountEventType.DEVICE_REVOKED_ALL,
            metadata={"count": len(revoked)}, device_session_id=session["id"], device=session.get("device"),
        )
        if revoked:
            await email_service.send_security_alert(
                alert_enabled, user["email"], "Devices signed out",
                f"{len(revoked)} device(s) were signed out of your account.", session.get("device"),
            )
        return {"status": "success", "revoked": len(revoked)}

    if not payload.session_id:
        raise HTTPException(status_code=400, detail="sessionId or allOthers is required")
    if payload.session_id == session["id"]:
        raise HTTPException(status_code=400, detail="Use logout to end the current session")

    revoked = await sessions.revoke_session(payload.session_id, user["id"])
    if not revoked:
        raise HTTPException(status_code=404, detail="Device session not found")

    await events.log_event(
        user["id"], AccountEventType.DEVICE_REVOKED,
        device_session_id=session["id"], device=revoked.get("device"),
    )
    await email_service.send_security_alert(
        alert_enabled, user["email"], "Device signed out",
        "A device was signed out of your account.", revoked.get("device"),
    )
    return {"status": "success", "revoked": 1}
