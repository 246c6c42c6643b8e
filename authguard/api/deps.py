# authguard/api/deps.py

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from authguard.core.config import AuthConfig
from authguard.core.rate_limit import enforce
from authguard.core.security import decode_access_token, oauth2_scheme
from authguard.core.step_up import StepUpGate, VerificationRequired
from authguard.db.mongodb import get_database
from authguard.schemas.auth_schema import VerificationProof
from authguard.services.account_event_service import AccountEventService
from authguard.services.auth_provider import AuthProvider
from authguard.services.data_export_service import DataExportService
from authguard.services.device_session_service import DeviceSessionService
from authguard.services.verification_code_service import VerificationCodeService
from authguard.services.verification_service import VerificationError, VerificationService

logger = logging.getLogger(__name__)

DEVICE_SESSION_COOKIE = "device_session_id"


# -----------------------------
# CONFIG + SERVICES
# -----------------------------
def get_auth_config(request: Request) -> AuthConfig:
    return request.app.state.auth_config


async def get_auth_provider(db=Depends(get_database), config: AuthConfig = Depends(get_auth_config)):
    return AuthProvider(db, config)


async def get_event_service(db=Depends(get_database)):
    return AccountEventService(db)


async def get_device_session_service(
    db=Depends(get_database),
    config: AuthConfig = Depends(get_auth_config),
    events=Depends(get_event_service),
):
    return DeviceSessionService(db, config, events)


async def get_code_service(db=Depends(get_database), config: AuthConfig = Depends(get_auth_config)):
    return VerificationCodeService(db, config)


async def get_data_export_service(db=Depends(get_database), config: AuthConfig = Depends(get_auth_config)):
    return DataExportService(db, config)


async def get_verification_service(
    config: AuthConfig = Depends(get_auth_config),
    provider=Depends(get_auth_provider),
    sessions=Depends(get_device_session_service),
    codes=Depends(get_code_service),
    events=Depends(get_event_service),
) -> VerificationService:
    return VerificationService(config, provider, sessions, codes, events)


# -----------------------------
# AUTHENTICATION
# -----------------------------
def get_token_claims(token: Optional[str] = Depends(oauth2_scheme)) -> dict:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing"
        )

    decoded = decode_access_token(token)
    if "id" not in decoded:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )
    return decoded


async def get_current_user(claims: dict = Depends(get_token_claims), provider=Depends(get_auth_provider)) -> dict:
    user = await provider.get_user(claims["id"])
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


async def get_device_session(
    request: Request,
    claims: dict = Depends(get_token_claims),
    user: dict = Depends(get_current_user),
    sessions=Depends(get_device_session_service),
) -> Optional[dict]:
    """Current device session (cookie first, then the token's `sid`), or None."""
    session_id = request.cookies.get(DEVICE_SESSION_COOKIE) or claims.get("sid")
    if not session_id:
        return None
    return await sessions.get_session(session_id, user_id=user["id"])


async def require_verified_session(
    user: dict = Depends(get_current_user),
    session: Optional[dict] = Depends(get_device_session),
    sessions=Depends(get_device_session_service),
    provider=Depends(get_auth_provider),
    config: AuthConfig = Depends(get_auth_config),
) -> dict:
    """
    Gate for protected routes: a live device session that passed device
    verification and, for accounts with 2FA, a second factor (aal2).
    """
    if not session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Device session not found")

    if session.get("needs_verification"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Device verification required")

    factors = await provider.list_factors(user["id"])
    if StepUpGate(config).check_two_factor_requirements(factors).requires_two_factor:
        if await sessions.get_authenticator_assurance_level(session["id"]) != "aal2":
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Two-factor verification required")

    await sessions.touch(session["id"])
    return session


def limit_by_user(tier_name: str):
    """Rate limit dependency keyed by the authenticated user."""

    async def dependency(request: Request, user: dict = Depends(get_current_user)):
        enforce(request, tier_name, f"user:{user['id']}")

    return dependency


# -----------------------------
# STEP-UP
# -----------------------------
async def fresh_verification(
    verification: VerificationService,
    user: dict,
    session: Optional[dict],
    action: str,
    proof: Optional[VerificationProof] = None,
) -> Optional[dict]:
    """
    None when the action may proceed; otherwise the
    {requiresVerification, availableMethods} payload to return.
    """
    try:
        pending: Optional[VerificationRequired] = await verification.ensure_fresh_verification(
            user, session, action, proof
        )
    except VerificationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if pending is None:
        return None
    return pending.model_dump(by_alias=True, exclude_none=True)
