# authguard/services/email_service.py

import logging
from typing import Optional

import resend

from authguard.core.config import settings

logger = logging.getLogger(__name__)

# Initialize Resend once
resend.api_key = settings.RESEND_API_KEY


async def send_email(to_email: str, subject: str, body: str) -> bool:
    """
    Sends a plain-text email using Resend.
    Returns False (after logging) when no API key is configured.
    """
    if not settings.RESEND_API_KEY:
        logger.info("RESEND_API_KEY not set, skipping email '%s' to %s", subject, to_email)
        return False

    try:
        resend.Emails.send({
            "from": settings.EMAIL_FROM,
            "to": to_email,
            "subject": subject,
            "text": body,
        })
    except Exception as e:
        logger.error("Email sending failed: %s", e)
        raise

    return True


# -----------------------------
# MESSAGES
# -----------------------------
def _device_line(device: Optional[dict]) -> str:
    if not device:
        return "Unknown device"
    return (
        f"{device.get('browser') or 'Unknown browser'} on {device.get('os') or 'Unknown OS'}"
        f" ({device.get('ip_address') or 'unknown IP'})"
    )


async def send_device_verification_code(to_email: str, code: str, device: Optional[dict], expires_minutes: int):
    body = (
        f"Someone signed in to your account from a device we don't recognize:\n\n"
        f"  {_device_line(device)}\n\n"
        f"If this was you, enter this code to verify the device:\n\n"
        f"  {code}\n\n"
        f"The code expires in {expires_minutes} minutes. If this wasn't you, "
        f"change your password immediately."
    )
    return await send_email(to_email, "Verify your device", body)


async def send_verification_code(to_email: str, code: str, expires_minutes: int):
    body = (
        f"Your verification code is:\n\n  {code}\n\n"
        f"It expires in {expires_minutes} minutes."
    )
    return await send_email(to_email, "Your verification code", body)


async def send_email_alert(to_email: str, title: str, message: str, device: Optional[dict] = None):
    body = f"{message}\n\nDevice: {_device_line(device)}\n\nIf this wasn't you, secure your account now."
    return await send_email(to_email, f"Security alert: {title}", body)


async def send_link(to_email: str, subject: str, intro: str, url: str):
    return await send_email(to_email, subject, f"{intro}\n\n{url}\n")


async def send_data_export_requested(to_email: str, device: Optional[dict] = None):
    body = (
        f"We received a request to export your account data from:\n\n"
        f"  {_device_line(device)}\n\n"
        f"You'll get another email with a download link once the export is ready. "
        f"If you didn't request this, secure your account now."
    )
    return await send_email(to_email, "Data export request received", body)


async def send_data_export_ready(to_email: str, url: str, expires_hours: int):
    body = (
        f"Your data export is ready. Download it here:\n\n{url}\n\n"
        f"The link works once and expires in {expires_hours} hours."
    )
    return await send_email(to_email, "Your data export is ready", body)


async def send_security_alert(
    enabled: bool,
    to_email: str,
    title: str,
    message: str,
    device: Optional[dict] = None,
) -> None:
    """Alerts never block the action that triggered them."""
    if not enabled:
        return
    try:
        await send_email_alert(to_email, title, message, device)
    except Exception as e:
        logger.warning("Security alert '%s' to %s failed: %s", title, to_email, e)
