import logging
from dataclasses import dataclass
from typing import Optional

import requests

from ..config import EXPO_PUSH_URL, PUSH_ENABLED

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    success: bool
    error: Optional[str] = None


def send_expo_push(token: str, title: str, body: str, data: dict = None, timeout: float = 10) -> PushResult:
    """
    Send one push message through the Expo push service.

    Args:
        token: Expo device push token
        title: Notification title
        body: Notification body text
        data: Structured payload delivered with the push
        timeout: Request timeout in seconds

    Returns:
        PushResult; never raises for transport or service errors
    """
    payload = {
        "to": token,
        "title": title,
        "body": body,
        "data": data or {},
        "sound": "default",
    }
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    try:
        resp = requests.post(EXPO_PUSH_URL, json=payload, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        return PushResult(False, f"transport error: {e}")

    if resp.status_code != 200:
        return PushResult(False, f"HTTP {resp.status_code}")

    try:
        ticket = resp.json().get("data") or {}
    except ValueError:
        return PushResult(False, "invalid JSON from push service")

    # Expo answers with a single ticket for a single message
    if isinstance(ticket, list):
        ticket = ticket[0] if ticket else {}
    if ticket.get("status") == "error":
        return PushResult(False, ticket.get("message") or "push rejected")
    return PushResult(True)


class ExpoPushGateway:
    def __init__(self, enabled: bool = PUSH_ENABLED):
        self.enabled = enabled

    def send(self, token: str, title: str, body: str, data: dict = None) -> PushResult:
        if not self.enabled:
            logger.debug("Push disabled; skipping send to %s", token[:12])
            return PushResult(False, "push disabled")
        return send_expo_push(token, title, body, data)
