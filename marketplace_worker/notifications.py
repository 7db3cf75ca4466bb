"""
Notification Sink for the Marketplace Worker.

Every job sends user-facing messages through NotificationSink.notify():
1. The in-app notification row is inserted (errors propagate)
2. Push delivery is attempted to each of the recipient's subscriptions

Step 2 is best-effort. Its failures are logged and dropped; subscriptions
whose endpoint is gone are deleted.
"""

import logging
from datetime import datetime
from typing import Optional

from .db import Database, get_db
from .models import NotificationRecord, NotificationType
from .push import PushResult, PushSender, PushStatus, build_payload

logger = logging.getLogger(__name__)


class NotificationSink:
    """
    Persists notifications and fans them out to push.

    Usage:
        sink = NotificationSink()
        sink.notify(user_id, NotificationType.SYSTEM, "Title", "Body", listing_id="ad-1")
    """

    def __init__(self, db: Optional[Database] = None, push_sender: Optional[PushSender] = None):
        self.db = db or get_db()
        self.push_sender = push_sender or PushSender()

    def notify(
        self,
        recipient_id: str,
        notification_type: NotificationType,
        title: str,
        body: str,
        listing_id: Optional[str] = None,
        payload: Optional[dict] = None,
        push: bool = True,
    ) -> NotificationRecord:
        """
        Record a notification and try to push it.

        Args:
            recipient_id: User to notify
            notification_type: Type tag used for dedup and rendering
            title: Short headline
            body: Message text
            listing_id: Listing the notification is about, if any
            payload: Extra data stored with the notification
            push: Set False to skip push delivery for this recipient

        Returns:
            The stored NotificationRecord
        """
        data = dict(payload or {})
        if listing_id:
            data.setdefault("ad_id", listing_id)

        record = NotificationRecord(
            user_id=recipient_id,
            type=notification_type,
            title=title,
            body=body,
            ad_id=listing_id,
            data=data,
        )
        self.db.insert_notification(record)

        if push:
            url = f"/ad/{listing_id}" if listing_id else None
            for result in self._push_to_user(recipient_id, title, body, url):
                if not result.ok:
                    logger.debug(
                        f"Push to {recipient_id} failed ({result.status.value}, "
                        f"{result.status_code}): {result.error}"
                    )

        return record

    def _push_to_user(
        self,
        user_id: str,
        title: str,
        body: str,
        url: Optional[str] = None,
    ) -> list[PushResult]:
        """Best-effort push to every subscription of a user. Never raises."""
        if not self.push_sender.enabled:
            return []

        try:
            subscriptions = self.db.get_push_subscriptions(user_id)
        except Exception as e:
            logger.warning(f"Could not load push subscriptions for {user_id}: {e}")
            return []

        payload = build_payload(title, body, url)
        results = []
        for subscription in subscriptions:
            try:
                result = self.push_sender.send(subscription, payload)
            except Exception as e:
                result = PushResult(endpoint=subscription.endpoint, status=PushStatus.ERROR, error=str(e))
            results.append(result)
            if result.gone:
                try:
                    self.db.delete_push_subscription(subscription.endpoint)
                except Exception as e:
                    logger.warning(f"Could not prune push subscription for {user_id}: {e}")
        return results

    # =========================================================================
    # DEDUP HELPERS
    # =========================================================================

    def notified_user_ids(
        self,
        notification_type: NotificationType,
        listing_id: str,
        user_ids: Optional[list[str]] = None,
        since: Optional[datetime] = None,
    ) -> set[str]:
        """Users already notified with this type for a listing (optionally since a time)."""
        return self.db.get_notified_user_ids(notification_type, listing_id, user_ids=user_ids, since=since)

    def was_notified(
        self,
        notification_type: NotificationType,
        listing_id: str,
        since: Optional[datetime] = None,
    ) -> bool:
        """Whether anyone was notified with this type for a listing."""
        return self.db.has_notification(notification_type, listing_id, since=since)
