# authguard/services/verification_code_service.py

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from authguard.core.config import AuthConfig
from authguard.core.verification_codes import (
    generate_backup_codes,
    generate_numeric_code,
    hash_code,
    is_valid_backup_code_format,
    normalize_backup_code,
    verify_code,
)
from authguard.db.models.verification_code_model import BackupCode, VerificationCode

logger = logging.getLogger(__name__)


class VerificationCodeService:
    """
    Short-lived emailed codes (device verification, email step-up) and
    single-use backup codes. Only hashes are stored.
    """

    def __init__(self, db: AsyncIOMotorDatabase, config: AuthConfig):
        self.db = db
        self.config = config

    # -----------------------------
    # EMAILED CODES
    # -----------------------------
    async def _issue(self, collection, user_id: str, device_session_id: Optional[str]) -> str:
        settings = self.config.device_verification
        code = generate_numeric_code(settings.code_length)
        now = datetime.utcnow()

        # One live code per session
        await collection.delete_many({"user_id": user_id, "device_session_id": device_session_id})

        record = VerificationCode(
            user_id=user_id,
            device_session_id=device_session_id,
            code_hash=hash_code(code),
            created_at=now,
            expires_at=now + timedelta(minutes=settings.code_expiration_minutes),
        )
        await collection.insert_one(record.model_dump())
        return code

    async def _consume(self, collection, user_id: str, device_session_id: Optional[str], code: str) -> bool:
        record = await collection.find_one({
            "user_id": user_id,
            "device_session_id": device_session_id,
            "expires_at": {"$gt": datetime.utcnow()},
        })
        if not record or not verify_code(code.strip(), record["code_hash"]):
            return False

        await collection.delete_one({"_id": record["_id"]})
        return True

    async def issue_device_code(self, user_id: str, device_session_id: str) -> str:
        return await self._issue(self.db.device_verification_codes, user_id, device_session_id)

    async def consume_device_code(self, user_id: str, device_session_id: str, code: str) -> bool:
        return await self._consume(self.db.device_verification_codes, user_id, device_session_id, code)

    async def issue_email_code(self, user_id: str, device_session_id: Optional[str]) -> str:
        return await self._issue(self.db.email_verification_codes, user_id, device_session_id)

    async def consume_email_code(self, user_id: str, device_session_id: Optional[str], code: str) -> bool:
        return await self._consume(self.db.email_verification_codes, user_id, device_session_id, code)

    # -----------------------------
    # BACKUP CODES
    # -----------------------------
    async def generate_backup_codes(self, user_id: str) -> List[str]:
        """Replace any existing set; the plain codes are returned once."""
        codes = generate_backup_codes(self.config.backup_codes)
        now = datetime.utcnow()

        await self.db.backup_codes.delete_many({"user_id": user_id})
        await self.db.backup_codes.insert_many([
            BackupCode(
                user_id=user_id,
                code_hash=hash_code(normalize_backup_code(code, self.config.backup_codes)),
                created_at=now,
            ).model_dump()
            for code in codes
        ])

        logger.info("Generated %s backup codes for user %s", len(codes), user_id)
        return codes

    async def has_backup_codes(self, user_id: str) -> bool:
        return await self.db.backup_codes.count_documents({"user_id": user_id, "used": False}) > 0

    async def consume_backup_code(self, user_id: str, code: str) -> bool:
        config = self.config.backup_codes
        if not is_valid_backup_code_format(code, config):
            return False

        code = normalize_backup_code(code, config)
        cursor = self.db.backup_codes.find({"user_id": user_id, "used": False})
        async for record in cursor:
            if verify_code(code, record["code_hash"]):
                # Conditional so a code can only be spent once
                result = await self.db.backup_codes.update_one(
                    {"_id": record["_id"], "used": False},
                    {"$set": {"used": True, "used_at": datetime.utcnow()}},
                )
                return result.modified_count > 0
        return False

    async def delete_backup_codes(self, user_id: str) -> None:
        await self.db.backup_codes.delete_many({"user_id": user_id})

    async def delete_user_codes(self, user_id: str) -> None:
        await self.db.device_verification_codes.delete_many({"user_id": user_id})
        await self.db.email_verification_codes.delete_many({"user_id": user_id})
        await self.delete_backup_codes(user_id)
