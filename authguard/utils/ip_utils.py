# authguard/utils/ip_utils.py

import logging
from typing import Any, Dict

import requests
from fastapi import Request

logger = logging.getLogger(__name__)

LOCAL_ADDRESSES = ("127.0.0.1", "::1", "localhost", "unknown", "testclient")


def get_client_ip(request: Request) -> str:
    """
    Extract real client IP (handles proxies/load balancers)
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    return request.client.host if request.client else "unknown"


def get_geolocation(ip_address: str) -> Dict[str, Any]:
    """
    Geolocation for an IP address using the free ip-api service.
    Lookup failures degrade to "Unknown" fields.
    """
    unknown = {
        "ip": ip_address,
        "country": "Unknown",
        "city": "Unknown",
        "region": None,
        "latitude": None,
        "longitude": None,
        "timezone": None,
    }

    if ip_address in LOCAL_ADDRESSES:
        return {**unknown, "country": "Local", "city": "Local"}

    try:
        response = requests.get(f"http://ip-api.com/json/{ip_address}", timeout=3)
        data = response.json() if response.status_code == 200 else {}
    except (requests.RequestException, ValueError) as e:
        logger.warning("Geolocation error for %s: %s", ip_address, e)
        return unknown

    if data.get("status") != "success":
        return unknown

    return {
        "ip": ip_address,
        "country": data.get("country"),
        "city": data.get("city"),
        "region": data.get("regionName"),
        "latitude": data.get("lat"),
        "longitude": data.get("lon"),
        "timezone": data.get("timezone"),
    }
