"""
Verification code generation and checking.

Device/email codes are short numeric strings. Backup codes come in two
formats:
- numeric:      XXXX-XXXX-XXXX-XXXX-CCC, CCC = digit sum mod 1000
- alphanumeric: upper-case A-Z0-9 of a configured length
"""

import re
import secrets
import string
from typing import List

from passlib.context import CryptContext

from authguard.core.config import BackupCodesConfig

code_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALPHANUMERIC = string.ascii_uppercase + string.digits

NUMERIC_BACKUP_RE = re.compile(r"^\d{4}-\d{4}-\d{4}-\d{4}-\d{3}$")


def generate_numeric_code(length: int = 6) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def _checksum(digits: str) -> str:
    return str(sum(int(d) for d in digits) % 1000).zfill(3)


def generate_numeric_backup_code() -> str:
    digits = generate_numeric_code(16)
    groups = [digits[i:i + 4] for i in range(0, 16, 4)]
    return "-".join(groups + [_checksum(digits)])


def generate_alphanumeric_backup_code(length: int = 10) -> str:
    return "".join(secrets.choice(ALPHANUMERIC) for _ in range(length))


def generate_backup_codes(config: BackupCodesConfig) -> List[str]:
    if config.format == "alphanumeric":
        return [generate_alphanumeric_backup_code(config.alphanumeric_length) for _ in range(config.count)]
    return [generate_numeric_backup_code() for _ in range(config.count)]


def normalize_backup_code(code: str, config: BackupCodesConfig) -> str:
    code = code.strip().upper()
    if config.format == "alphanumeric":
        return code.replace("-", "").replace(" ", "")
    return code.replace(" ", "")


def is_valid_backup_code_format(code: str, config: BackupCodesConfig) -> bool:
    """Format check before touching the database (checksum included)."""
    code = normalize_backup_code(code, config)

    if config.format == "alphanumeric":
        return len(code) == config.alphanumeric_length and all(c in ALPHANUMERIC for c in code)

    if not NUMERIC_BACKUP_RE.match(code):
        return False
    digits = code[:19].replace("-", "")
    return code[-3:] == _checksum(digits)


def hash_code(code: str) -> str:
    return code_context.hash(code)


def verify_code(code: str, hashed: str) -> bool:
    return code_context.verify(code, hashed)
