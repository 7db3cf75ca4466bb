"""
Web Push delivery for the Marketplace Worker.

Sends browser push messages with VAPID credentials via pywebpush.
Delivery is best-effort: send() never raises, it returns a PushResult
describing what happened so the caller can log it and prune dead endpoints.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests
from pywebpush import webpush, WebPushException

from .config import PushConfig, get_push_config
from .models import PushSubscription

logger = logging.getLogger(__name__)

# Status codes meaning the endpoint will never accept messages again
GONE_STATUS_CODES = (404, 410)

PUSH_ICON = "/icons/icon-192x192.png"
PUSH_BADGE = "/icons/badge-72x72.png"


class PushStatus(str, Enum):
    DELIVERED = "delivered"
    GONE = "gone"          # Permanent: subscription should be deleted
    ERROR = "error"        # Transient or unknown; ignored


@dataclass
class PushResult:
    """Outcome of one delivery attempt."""
    endpoint: str
    status: PushStatus
    status_code: Optional[int] = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status == PushStatus.DELIVERED

    @property
    def gone(self) -> bool:
        return self.status == PushStatus.GONE


def build_payload(title: str, body: str, url: Optional[str] = None) -> dict:
    """Notification payload understood by the service worker."""
    return {
        "title": title,
        "body": body,
        "icon": PUSH_ICON,
        "badge": PUSH_BADGE,
        "data": {"url": url or "/"},
    }


class PushSender:
    """
    Delivers push messages to subscriptions.

    Usage:
        sender = PushSender()
        if sender.enabled:
            result = sender.send(subscription, build_payload("Hi", "There"))
    """

    def __init__(self, config: Optional[PushConfig] = None):
        self.config = config or get_push_config()
        self.session = requests.Session()

    @property
    def enabled(self) -> bool:
        """Push is attempted only when a VAPID key pair is configured."""
        return self.config.is_configured

    def send(self, subscription: PushSubscription, payload: dict) -> PushResult:
        """
        Deliver one message. Never raises.

        Args:
            subscription: Target endpoint and keys
            payload: JSON-serializable message

        Returns:
            PushResult (delivered, gone or error)
        """
        try:
            webpush(
                subscription_info=subscription.subscription_info(),
                data=json.dumps(payload),
                vapid_private_key=self.config.vapid_private_key,
                vapid_claims={"sub": self.config.vapid_email},
                timeout=self.config.timeout_seconds,
                requests_session=self.session,
            )
            return PushResult(endpoint=subscription.endpoint, status=PushStatus.DELIVERED)
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            status = PushStatus.GONE if status_code in GONE_STATUS_CODES else PushStatus.ERROR
            return PushResult(
                endpoint=subscription.endpoint,
                status=status,
                status_code=status_code,
                error=str(e),
            )
        except Exception as e:
            return PushResult(endpoint=subscription.endpoint, status=PushStatus.ERROR, error=str(e))
