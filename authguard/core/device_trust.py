"""
Device Confidence Scorer
------------------------
Decides how much a login from a given device can be trusted by comparing
its fingerprint against the user's previously trusted device sessions.

Location:
authguard/core/device_trust.py

Scoring:
- Dictionary-based signal table (weight per signal)
- Best matching historical device wins (max, not average)
- A perfect match across all signals is 85; 100 is only granted by the
  explicit overrides (new account, email-link flows)
"""

from enum import Enum
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel

from authguard.core.config import DeviceTrustConfig


class DeviceFingerprint(BaseModel):
    """
    Immutable snapshot of the device a request came from.
    Compared by field equality / prefix equality, never updated.
    """
    device_name: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    ip_address: Optional[str] = None

    class Config:
        frozen = True


class TrustLevel(str, Enum):
    """How the user authenticated, which decides the trust override."""
    HIGH = "high"        # email-link flows (password recovery, email confirmation)
    OAUTH = "oauth"      # OAuth provider already proved email ownership
    NORMAL = "normal"    # email + password


class DeviceTrust(BaseModel):
    score: int
    level: str
    needs_verification: bool
    is_trusted: bool

    class Config:
        frozen = True


# ------------------------------------------
# SIGNAL WEIGHTS
# ------------------------------------------
SIGNAL_WEIGHTS = {
    "device_name": 30,
    "browser": 20,
    "os_family": 20,
    "ip_network": 15,
}

NEW_ACCOUNT_SCORE = 100

# Overrides that bypass scoring entirely
TRUST_OVERRIDES = {
    TrustLevel.HIGH: {"score": 100, "needs_verification": False, "is_trusted": True},
    TrustLevel.OAUTH: {"score": 85, "needs_verification": False, "is_trusted": True},
}


def _os_family(os_name: str) -> str:
    return os_name.split(" ")[0]


def _ip_network(ip_address: str) -> str:
    return ".".join(ip_address.split(".")[:3])


def _field(source: Any, name: str) -> Optional[str]:
    if isinstance(source, Mapping):
        value = source.get(name)
    else:
        value = getattr(source, name, None)
    return value if isinstance(value, str) and value else None


def _session_device(session: Any) -> Any:
    """Stored sessions carry their fingerprint under `device`."""
    if isinstance(session, DeviceFingerprint):
        return session
    if isinstance(session, Mapping):
        return session.get("device")
    return getattr(session, "device", None)


def match_score(stored: Any, candidate: DeviceFingerprint) -> int:
    """
    Weighted sum of the signals shared by a stored device and the candidate.
    A signal missing on either side is skipped.
    """
    if stored is None:
        return 0

    total = 0

    stored_name = _field(stored, "device_name")
    if stored_name and stored_name == candidate.device_name:
        total += SIGNAL_WEIGHTS["device_name"]

    stored_browser = _field(stored, "browser")
    if stored_browser and stored_browser == candidate.browser:
        total += SIGNAL_WEIGHTS["browser"]

    stored_os = _field(stored, "os")
    if stored_os and candidate.os and _os_family(stored_os) == _os_family(candidate.os):
        total += SIGNAL_WEIGHTS["os_family"]

    stored_ip = _field(stored, "ip_address")
    if stored_ip and candidate.ip_address and _ip_network(stored_ip) == _ip_network(candidate.ip_address):
        total += SIGNAL_WEIGHTS["ip_network"]

    return total


class DeviceTrustScorer:
    """
    Scores a candidate device against previously trusted sessions and
    turns the score into a trust decision.
    """

    def __init__(self, config: DeviceTrustConfig):
        self.config = config

    def score(
        self,
        trusted_sessions: Optional[Iterable[Any]],
        candidate: DeviceFingerprint,
    ) -> int:
        """
        Parameters
        ----------
        trusted_sessions : iterable or None
            Previously trusted device sessions (documents or models with a
            `device` field). None or empty means no history.
        candidate : DeviceFingerprint
            Fingerprint of the device logging in.

        Returns
        -------
        int
            0-100 confidence; 0 when there is no history.
        """
        if not trusted_sessions:
            return 0

        best = 0
        for session in trusted_sessions:
            best = max(best, match_score(_session_device(session), candidate))
        return best

    def level(self, score: int) -> str:
        if score >= self.config.trust_threshold:
            return "high"
        if score >= self.config.medium_threshold:
            return "medium"
        return "low"

    def evaluate(
        self,
        trust_level: TrustLevel,
        trusted_sessions: Optional[Iterable[Any]],
        candidate: DeviceFingerprint,
        is_new_user: bool = False,
        has_two_factor: bool = False,
    ) -> DeviceTrust:
        """
        Trust decision for a new device session.

        The first device of a brand-new account is trusted outright; HIGH and
        OAUTH logins map through TRUST_OVERRIDES; NORMAL logins are scored and
        flagged for device verification below the trust threshold unless the
        account has 2FA (2FA supersedes email device verification).
        """
        if is_new_user:
            return DeviceTrust(
                score=NEW_ACCOUNT_SCORE,
                level=self.level(NEW_ACCOUNT_SCORE),
                needs_verification=False,
                is_trusted=True,
            )

        override = TRUST_OVERRIDES.get(trust_level)
        if override is not None:
            return DeviceTrust(level=self.level(override["score"]), **override)

        score = self.score(trusted_sessions, candidate)
        is_trusted = score >= self.config.trust_threshold
        return DeviceTrust(
            score=score,
            level=self.level(score),
            needs_verification=not is_trusted and not has_two_factor,
            is_trusted=is_trusted,
        )
