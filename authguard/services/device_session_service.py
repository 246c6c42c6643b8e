# authguard/services/device_session_service.py

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from authguard.core.config import AuthConfig
from authguard.core.device_trust import DeviceFingerprint, DeviceTrust, DeviceTrustScorer, TrustLevel
from authguard.core.step_up import AAL1, AAL2
from authguard.db.models.device_model import Device
from authguard.db.models.device_session_model import DeviceSession
from authguard.services.account_event_service import AccountEventService, AccountEventType

logger = logging.getLogger(__name__)

# Recorded on DEVICE_TRUSTED_AUTO events
TRUST_REASONS = {
    TrustLevel.HIGH: "email_link",
    TrustLevel.OAUTH: "oauth",
    TrustLevel.NORMAL: "device_match",
}


def _object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class DeviceSessionService:
    """
    Device sessions: one row per login on one device, pointing at a
    `devices` row by id. Holds the trust decision, device verification state,
    the step-up timestamp and the session's assurance level.
    """

    def __init__(self, db: AsyncIOMotorDatabase, config: AuthConfig, events: Optional[AccountEventService] = None):
        self.db = db
        self.config = config
        self.events = events or AccountEventService(db)
        self.scorer = DeviceTrustScorer(config.device_trust)

    # -----------------------------
    # HELPERS
    # -----------------------------
    async def _attach_device(self, session: dict) -> dict:
        device = None
        device_oid = _object_id(session.get("device_id"))
        if device_oid:
            device = await self.db.devices.find_one({"_id": device_oid})
        if device:
            device["id"] = str(device.pop("_id"))
        session["device"] = device
        session["id"] = str(session.pop("_id"))
        return session

    async def _find_or_create_device(self, user_id: str, fingerprint: DeviceFingerprint) -> str:
        """Device rows are snapshots: an exact match is reused, anything else is a new row."""
        existing = await self.db.devices.find_one({
            "user_id": user_id,
            "device_name": fingerprint.device_name,
            "browser": fingerprint.browser,
            "os": fingerprint.os,
            "ip_address": fingerprint.ip_address,
        })

        if existing:
            return str(existing["_id"])

        device = Device(user_id=user_id, created_at=datetime.utcnow(), **fingerprint.model_dump())
        result = await self.db.devices.insert_one(device.model_dump())
        return str(result.inserted_id)

    # -----------------------------
    # CREATE
    # -----------------------------
    async def get_trusted_sessions(self, user_id: str) -> List[dict]:
        cursor = self.db.device_sessions.find({
            "user_id": user_id,
            "is_trusted": True,
            "expires_at": {"$gt": datetime.utcnow()},
        }).sort("created_at", -1)

        sessions = await cursor.to_list(length=None)
        return [await self._attach_device(s) for s in sessions]

    async def setup_device_session(
        self,
        user_id: str,
        fingerprint: DeviceFingerprint,
        trust_level: TrustLevel = TrustLevel.NORMAL,
        is_new_user: bool = False,
        has_two_factor: bool = False,
        provider: str = "email",
    ) -> Tuple[str, DeviceTrust]:
        """
        Score the device against the user's trusted history and persist the
        resulting session. Returns (session_id, trust).
        """
        trusted_sessions = []
        if not is_new_user and trust_level == TrustLevel.NORMAL:
            trusted_sessions = await self.get_trusted_sessions(user_id)

        trust = self.scorer.evaluate(
            trust_level,
            trusted_sessions,
            fingerprint,
            is_new_user=is_new_user,
            has_two_factor=has_two_factor,
        )

        logger.info(
            "Device trust for user %s: score=%s level=%s needs_verification=%s",
            user_id, trust.score, trust.level, trust.needs_verification,
        )

        session_id = await self.create_device_session(
            user_id, fingerprint, trust, provider=provider,
            reason="new_account" if is_new_user else TRUST_REASONS[trust_level],
        )
        return session_id, trust

    async def create_device_session(
        self,
        user_id: str,
        fingerprint: DeviceFingerprint,
        trust: DeviceTrust,
        provider: str = "email",
        reason: str = "device_match",
    ) -> str:
        device_id = await self._find_or_create_device(user_id, fingerprint)

        await self.events.log_event(user_id, AccountEventType.NEW_DEVICE_LOGIN, device=fingerprint)

        now = datetime.utcnow()
        session = DeviceSession(
            user_id=user_id,
            device_id=device_id,
            confidence_score=trust.score,
            is_trusted=trust.is_trusted,
            needs_verification=trust.needs_verification,
            provider=provider,
            aal=AAL1,
            last_active=now,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=self.config.device_sessions.max_age_days),
        )
        result = await self.db.device_sessions.insert_one(session.model_dump())
        session_id = str(result.inserted_id)

        if trust.is_trusted:
            await self.events.log_event(
                user_id,
                AccountEventType.DEVICE_TRUSTED_AUTO,
                metadata={"reason": reason},
                device_session_id=session_id,
                device=fingerprint,
            )

        logger.info("Device session %s created for user %s", session_id, user_id)
        return session_id

    # -----------------------------
    # READ
    # -----------------------------
    async def get_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[dict]:
        """Non-expired session with its device, optionally scoped to an owner."""
        oid = _object_id(session_id)
        if oid is None:
            return None

        query = {"_id": oid, "expires_at": {"$gt": datetime.utcnow()}}
        if user_id:
            query["user_id"] = user_id

        session = await self.db.device_sessions.find_one(query)
        if not session:
            return None
        return await self._attach_device(session)

    async def list_sessions(self, user_id: str) -> List[dict]:
        cursor = self.db.device_sessions.find({
            "user_id": user_id,
            "expires_at": {"$gt": datetime.utcnow()},
        }).sort("last_active", -1)

        sessions = await cursor.to_list(length=None)
        return [await self._attach_device(s) for s in sessions]

    async def get_authenticator_assurance_level(self, session_id: Optional[str]) -> str:
        oid = _object_id(session_id)
        if oid is None:
            return AAL1

        session = await self.db.device_sessions.find_one(
            {"_id": oid, "expires_at": {"$gt": datetime.utcnow()}},
            {"aal": 1},
        )
        return (session or {}).get("aal") or AAL1

    # -----------------------------
    # UPDATE
    # -----------------------------
    async def mark_device_verified(self, session_id: str) -> bool:
        now = datetime.utcnow()
        result = await self.db.device_sessions.update_one(
            {"_id": _object_id(session_id)},
            {"$set": {"needs_verification": False, "device_verified_at": now, "updated_at": now}},
        )
        return result.modified_count > 0

    async def trust_session(self, session_id: str, user_id: str) -> bool:
        now = datetime.utcnow()
        result = await self.db.device_sessions.update_one(
            {"_id": _object_id(session_id), "user_id": user_id},
            {"$set": {"is_trusted": True, "needs_verification": False, "updated_at": now}},
        )
        return result.matched_count > 0

    async def stamp_sensitive_verification(self, session_id: str, aal: Optional[str] = None) -> bool:
        """
        Record a successful step-up. Never moves the timestamp backwards and
        never downgrades aal2 to aal1, so two concurrent verifications on
        one session cannot undo each other.
        """
        oid = _object_id(session_id)
        if oid is None:
            return False

        now = datetime.utcnow()
        update = {"last_sensitive_verification_at": now, "updated_at": now, "last_active": now}
        if aal == AAL2:
            update["aal"] = AAL2

        result = await self.db.device_sessions.update_one(
            {
                "_id": oid,
                "$or": [
                    {"last_sensitive_verification_at": None},
                    {"last_sensitive_verification_at": {"$lt": now}},
                ],
            },
            {"$set": update},
        )
        return result.matched_count > 0

    async def touch(self, session_id: str) -> None:
        oid = _object_id(session_id)
        if oid is not None:
            await self.db.device_sessions.update_one({"_id": oid}, {"$set": {"last_active": datetime.utcnow()}})

    # -----------------------------
    # DELETE
    # -----------------------------
    async def revoke_session(self, session_id: str, user_id: str) -> Optional[dict]:
        """Delete one of the user's sessions; returns it (with device) or None."""
        session = await self.get_session(session_id, user_id=user_id)
        if not session:
            return None

        await self.db.device_sessions.delete_one({"_id": ObjectId(session["id"]), "user_id": user_id})
        return session

    async def revoke_other_sessions(self, user_id: str, keep_session_id: str) -> List[dict]:
        sessions = await self.list_sessions(user_id)
        others = [s for s in sessions if s["id"] != keep_session_id]

        if others:
            await self.db.device_sessions.delete_many({
                "_id": {"$in": [ObjectId(s["id"]) for s in others]},
                "user_id": user_id,
            })
        return others

    async def delete_session(self, session_id: str) -> bool:
        oid = _object_id(session_id)
        if oid is None:
            return False
        result = await self.db.device_sessions.delete_one({"_id": oid})
        return result.deleted_count > 0

    async def delete_user_sessions(self, user_id: str) -> int:
        result = await self.db.device_sessions.delete_many({"user_id": user_id})
        await self.db.devices.delete_many({"user_id": user_id})
        return result.deleted_count
