"""
Notification dispatcher.

Best-effort welcome email through a SendGrid dynamic template. Delivery is
fire-and-forget: every failure is logged and reported as False, never raised.
"""

import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from anygym.core.config import settings
from anygym.core.errors import DegradedResult
from anygym.models.gym import Gym

logger = logging.getLogger("anygym.notifications")

WELCOME_GYM_SLOTS = 3


def build_welcome_template_data(
    name: Optional[str],
    tier: str,
    gyms: Sequence[Gym],
    distances_km: Optional[Sequence[Optional[float]]] = None,
) -> Dict[str, Any]:
    """Fixed-shape template payload: three gym slots, empty strings when unfilled."""
    data: Dict[str, Any] = {
        "first_name": (name or "").split(" ")[0] if name else "",
        "tier": tier,
        "dashboard_url": f"{settings.BASE_URL.rstrip('/')}/dashboard",
    }
    for index in range(WELCOME_GYM_SLOTS):
        slot = f"gym{index + 1}"
        gym = gyms[index] if index < len(gyms) else None
        distance = None
        if gym is not None and distances_km is not None and index < len(distances_km):
            distance = distances_km[index]
        data[f"{slot}_name"] = gym.name if gym else ""
        data[f"{slot}_address"] = (gym.address or "") if gym else ""
        data[f"{slot}_city"] = (gym.city or "") if gym else ""
        data[f"{slot}_distance"] = f"{distance:.1f} km" if distance is not None else ""
    return data


class WelcomeNotifier:
    def __init__(
        self,
        api_key: Optional[str] = None,
        template_id: Optional[str] = None,
        sender: Optional[str] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.template_id = template_id if template_id is not None else settings.WELCOME_TEMPLATE_ID
        self.sender = sender or settings.MAIL_FROM
        self.url = url or settings.SENDGRID_URL
        self.timeout = timeout if timeout is not None else settings.NOTIFY_TIMEOUT_SECONDS
        self._transport = transport

    def send_welcome(self, email_address: Optional[str], template_data: Dict[str, Any]) -> bool:
        """Returns True if the provider accepted the message. Never raises."""
        if not email_address:
            logger.info("notify.welcome_skipped: no recipient")
            return False
        if not self.api_key or not self.template_id:
            logger.info("notify.welcome_skipped: mail provider not configured")
            return False

        body = {
            "from": {"email": self.sender},
            "personalizations": [
                {"to": [{"email": email_address}], "dynamic_template_data": template_data}
            ],
            "template_id": self.template_id,
        }
        try:
            status = self._post(body)
        except DegradedResult as e:
            logger.warning(f"notify.welcome_failed: {e}", extra={"error_code": "degraded_result"})
            return False
        logger.info("notify.welcome_sent", extra={"status": status})
        return True

    def _post(self, body: Dict[str, Any]) -> int:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.url, json=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise DegradedResult(str(e)) from e
        return response.status_code
