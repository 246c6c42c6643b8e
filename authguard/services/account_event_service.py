# authguard/services/account_event_service.py
"""
Account event log.

Append-only security history shown to the user (new device logins, 2FA
changes, password changes, ...). Events outlive the sessions they mention.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase

from authguard.db.models.account_event_model import AccountEvent

logger = logging.getLogger(__name__)


class AccountEventType(str, Enum):
    # Security
    TWO_FACTOR_ENABLED = "2FA_ENABLED"
    TWO_FACTOR_DISABLED = "2FA_DISABLED"
    BACKUP_CODES_GENERATED = "BACKUP_CODES_GENERATED"
    BACKUP_CODE_USED = "BACKUP_CODE_USED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    EMAIL_CHANGED = "EMAIL_CHANGED"

    # Social providers
    SOCIAL_PROVIDER_CONNECTED = "SOCIAL_PROVIDER_CONNECTED"
    SOCIAL_PROVIDER_DISCONNECTED = "SOCIAL_PROVIDER_DISCONNECTED"

    # Devices
    NEW_DEVICE_LOGIN = "NEW_DEVICE_LOGIN"
    DEVICE_VERIFIED = "DEVICE_VERIFIED"
    DEVICE_TRUSTED = "DEVICE_TRUSTED"
    DEVICE_TRUSTED_AUTO = "DEVICE_TRUSTED_AUTO"
    DEVICE_REVOKED = "DEVICE_REVOKED"
    DEVICE_REVOKED_ALL = "DEVICE_REVOKED_ALL"
    SENSITIVE_ACTION_VERIFIED = "SENSITIVE_ACTION_VERIFIED"

    # Account
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    ACCOUNT_DELETED = "ACCOUNT_DELETED"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    DATA_EXPORT_REQUESTED = "DATA_EXPORT_REQUESTED"


# Default (category, description) per event type
EVENT_DEFAULTS: Dict[AccountEventType, Tuple[str, str]] = {
    AccountEventType.TWO_FACTOR_ENABLED: ("success", "Two-factor authentication enabled"),
    AccountEventType.TWO_FACTOR_DISABLED: ("warning", "Two-factor authentication disabled"),
    AccountEventType.BACKUP_CODES_GENERATED: ("success", "Backup codes generated"),
    AccountEventType.BACKUP_CODE_USED: ("warning", "Backup code used"),
    AccountEventType.PASSWORD_CHANGED: ("warning", "Password changed"),
    AccountEventType.EMAIL_CHANGED: ("warning", "Email address changed"),
    AccountEventType.SOCIAL_PROVIDER_CONNECTED: ("success", "Login method connected"),
    AccountEventType.SOCIAL_PROVIDER_DISCONNECTED: ("warning", "Login method disconnected"),
    AccountEventType.NEW_DEVICE_LOGIN: ("info", "New device login"),
    AccountEventType.DEVICE_VERIFIED: ("success", "Device verified"),
    AccountEventType.DEVICE_TRUSTED: ("success", "Device trusted"),
    AccountEventType.DEVICE_TRUSTED_AUTO: ("info", "Device trusted automatically"),
    AccountEventType.DEVICE_REVOKED: ("warning", "Device revoked"),
    AccountEventType.DEVICE_REVOKED_ALL: ("warning", "All other devices revoked"),
    AccountEventType.SENSITIVE_ACTION_VERIFIED: ("info", "Identity verified for a sensitive action"),
    AccountEventType.ACCOUNT_CREATED: ("success", "Account created"),
    AccountEventType.ACCOUNT_DELETED: ("warning", "Account deleted"),
    AccountEventType.PROFILE_UPDATED: ("info", "Profile updated"),
    AccountEventType.DATA_EXPORT_REQUESTED: ("info", "Data export requested"),
}


def device_snapshot(device: Optional[Any]) -> Optional[Dict[str, Any]]:
    """Event-safe copy of a device (no user_id)."""
    if not device:
        return None
    if hasattr(device, "model_dump"):
        device = device.model_dump()
    return {
        "device_name": device.get("device_name"),
        "browser": device.get("browser"),
        "os": device.get("os"),
        "ip_address": device.get("ip_address"),
    }


class AccountEventService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def log_event(
        self,
        user_id: str,
        event_type: AccountEventType,
        metadata: Optional[Dict[str, Any]] = None,
        device_session_id: Optional[str] = None,
        device: Optional[Any] = None,
    ) -> str:
        """
        Append an event. `metadata` is merged over the type's default
        category and description.
        """
        event_type = AccountEventType(event_type)
        category, description = EVENT_DEFAULTS[event_type]

        meta = {"category": category, "description": description}
        snapshot = device_snapshot(device)
        if snapshot:
            meta["device"] = snapshot
        meta.update(metadata or {})

        event = AccountEvent(
            user_id=user_id,
            event_type=event_type.value,
            device_session_id=device_session_id,
            metadata=meta,
            created_at=datetime.utcnow(),
        )

        result = await self.db.account_events.insert_one(event.model_dump())
        logger.info("Account event %s for user %s", event_type.value, user_id)
        return str(result.inserted_id)

    async def list_events(self, user_id: str, page: int = 1, limit: int = 20) -> Tuple[List[dict], int]:
        """Newest first. Returns (events, total)."""
        page = max(page, 1)
        query = {"user_id": user_id}

        total = await self.db.account_events.count_documents(query)

        skip = (page - 1) * limit
        cursor = self.db.account_events.find(query).sort("created_at", -1).skip(skip).limit(limit)
        events = await cursor.to_list(length=limit)

        for event in events:
            event["id"] = str(event.pop("_id"))

        return events, total
