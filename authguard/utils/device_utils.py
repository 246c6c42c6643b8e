# authguard/utils/device_utils.py

from fastapi import Request
from user_agents import parse

from authguard.core.device_trust import DeviceFingerprint
from authguard.utils.ip_utils import get_client_ip


def fingerprint_from_user_agent(user_agent: str, ip_address: str) -> DeviceFingerprint:
    """
    Device name is the hardware model when the UA names one; browser and OS
    are the parsed family names ("Chrome", "Mac OS X").
    """
    ua = parse(user_agent or "")

    return DeviceFingerprint(
        device_name=_known(ua.device.model, "Unknown Device"),
        browser=_known(ua.browser.family, "Unknown Browser"),
        os=_known(ua.os.family, "Unknown OS"),
        ip_address=ip_address,
    )


def _known(value, fallback: str) -> str:
    # user_agents reports unparseable parts as "Other"
    return value if value and value != "Other" else fallback


def fingerprint_from_request(request: Request) -> DeviceFingerprint:
    return fingerprint_from_user_agent(
        request.headers.get("User-Agent", ""),
        get_client_ip(request),
    )

