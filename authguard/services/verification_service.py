# authguard/services/verification_service.py
"""
Step-up verification orchestration.

Every sensitive action runs `ensure_fresh_verification` first:
  a) the action does not require fresh verification -> proceed
  b) the session verified within the grace period   -> proceed
  c) the request carries a proof and it checks out  -> stamp, proceed
  d) otherwise                                      -> return the challenge
"""

import logging
from typing import Optional

from authguard.core.config import AuthConfig
from authguard.core.step_up import StepUpGate, VerificationMethods, VerificationRequired
from authguard.schemas.auth_schema import VerificationProof
from authguard.services import email_service
from authguard.services.account_event_service import AccountEventService, AccountEventType
from authguard.services.auth_provider import AuthProvider, AuthProviderError
from authguard.services.device_session_service import DeviceSessionService
from authguard.services.verification_code_service import VerificationCodeService

logger = logging.getLogger(__name__)


class VerificationError(ValueError):
    pass


class VerificationService:
    def __init__(
        self,
        config: AuthConfig,
        provider: AuthProvider,
        sessions: DeviceSessionService,
        codes: VerificationCodeService,
        events: AccountEventService,
    ):
        self.config = config
        self.gate = StepUpGate(config)
        self.provider = provider
        self.sessions = sessions
        self.codes = codes
        self.events = events

    async def get_verification_methods(self, user: dict) -> VerificationMethods:
        factors = await self.provider.list_factors(user["id"])
        has_backup_codes = await self.codes.has_backup_codes(user["id"])
        return self.gate.get_user_verification_methods(user, factors, has_backup_codes)

    async def require_fresh_verification(
        self,
        user: dict,
        session: Optional[dict],
        action: str,
    ) -> Optional[VerificationRequired]:
        """The challenge to answer, or None when the action may proceed."""
        if not self.gate.requires_fresh_verification(action):
            return None

        if not self.gate.grace_period_expired(session):
            return None

        methods = await self.get_verification_methods(user)
        logger.info("Fresh verification required for %s (user %s)", action, user["id"])
        return self.gate.verification_challenge(methods)

    async def verify(
        self,
        user: dict,
        session: dict,
        method: str,
        code: str,
        factor_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> bool:
        """
        Check a proof. On success the session is stamped (and raised to
        aal2 for second factors); on a wrong code returns False.
        """
        methods = await self.get_verification_methods(user)
        if method not in methods.methods:
            raise VerificationError("Verification method not available")

        user_id = user["id"]

        if method in ("authenticator", "sms"):
            factor = next(
                (f for f in methods.factors if f.type == method and (not factor_id or f.factor_id == factor_id)),
                None,
            )
            if factor is None:
                raise VerificationError("Unknown factor")
            try:
                valid = await self.provider.challenge_and_verify(user_id, factor.factor_id, code)
            except AuthProviderError as e:
                raise VerificationError(str(e))

        elif method == "backup_codes":
            valid = await self.codes.consume_backup_code(user_id, code)
            if valid:
                await self.events.log_event(
                    user_id, AccountEventType.BACKUP_CODE_USED,
                    device_session_id=session["id"], device=session.get("device"),
                )

        elif method == "password":
            valid = await self.provider.verify_password(user_id, code)

        elif method == "email":
            valid = await self.codes.consume_email_code(user_id, session["id"], code)

        else:
            raise VerificationError("Verification method not available")

        if not valid:
            logger.info("Failed %s verification for user %s", method, user_id)
            return False

        await self.sessions.stamp_sensitive_verification(session["id"], aal=self.gate.assurance_level_for(method))
        await self.events.log_event(
            user_id,
            AccountEventType.SENSITIVE_ACTION_VERIFIED,
            metadata={"action": action or "verification", "method": method},
            device_session_id=session["id"],
            device=session.get("device"),
        )
        return True

    async def ensure_fresh_verification(
        self,
        user: dict,
        session: Optional[dict],
        action: str,
        proof: Optional[VerificationProof] = None,
    ) -> Optional[VerificationRequired]:
        """
        None means go ahead. A proof sent alongside the action is checked
        in place; a wrong one raises VerificationError.
        """
        pending = await self.require_fresh_verification(user, session, action)
        if pending is None:
            return None

        if proof is None or not session:
            return pending

        if not await self.verify(user, session, proof.method, proof.code, proof.factor_id, action=action):
            raise VerificationError("Invalid verification code")
        return None

    async def send_email_code(self, user: dict, session: Optional[dict]) -> None:
        if not self.config.verification_methods.email:
            raise VerificationError("Email verification is disabled")
        if not user.get("email_verified"):
            raise VerificationError("Email address is not verified")

        code = await self.codes.issue_email_code(user["id"], session["id"] if session else None)
        await email_service.send_verification_code(
            user["email"], code, self.config.device_verification.code_expiration_minutes,
        )
        logger.info("Email verification code sent to user %s", user["id"])
