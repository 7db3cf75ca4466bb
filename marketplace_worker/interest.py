"""
Seller Interest aggregation for the Marketplace Worker.

Counts distinct users who viewed, favorited or started a chat on each
listing in the last day and tells the seller when at least three people
are interested. One notification per listing per 24 hours.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .db import Database, get_db
from .models import NotificationType, SignalType, utcnow
from .notifications import NotificationSink

logger = logging.getLogger(__name__)


class InterestAggregator:
    """
    Aggregates buyer interest per listing.

    Usage:
        aggregator = InterestAggregator()
        summary = aggregator.run()
    """

    WINDOW = timedelta(hours=24)
    MIN_INTERESTED_USERS = 3
    SIGNAL_LIMIT = 500
    INTEREST_SIGNALS = [
        SignalType.VIEW.value,
        SignalType.FAVORITE.value,
        SignalType.CHAT_INITIATED.value,
    ]

    def __init__(self, db: Optional[Database] = None, sink: Optional[NotificationSink] = None):
        self.db = db or get_db()
        self.sink = sink or NotificationSink(self.db)

    def count_interest(self, since: datetime) -> dict[str, set[str]]:
        """Map listing id -> distinct interested user ids."""
        signals = self.db.get_interest_signals(self.INTEREST_SIGNALS, since, limit=self.SIGNAL_LIMIT)
        interest: dict[str, set[str]] = {}
        for signal in signals:
            if not signal.ad_id:
                continue
            interest.setdefault(signal.ad_id, set()).add(signal.user_id)
        return interest

    def run(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        since = now - self.WINDOW
        summary = {"qualified": 0, "notifications": 0, "failed": 0}

        interest = self.count_interest(since)
        qualified = {
            ad_id: users for ad_id, users in interest.items()
            if len(users) >= self.MIN_INTERESTED_USERS
        }
        summary["qualified"] = len(qualified)
        if not qualified:
            return summary

        for listing in self.db.get_active_listings(list(qualified)):
            try:
                if self.sink.was_notified(NotificationType.SELLER_INTEREST, listing.id, since=since):
                    continue

                count = len(qualified[listing.id])
                self.sink.notify(
                    listing.user_id,
                    NotificationType.SELLER_INTEREST,
                    f"{count} أشخاص مهتمين بإعلانك 👥",
                    f'"{listing.title}" عليه اهتمام! {count} شخص شافوا أو حفظوا إعلانك النهارده',
                    listing_id=listing.id,
                    payload={"interested_count": count},
                )
                summary["notifications"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Seller interest notification failed for listing {listing.id}: {e}")

        logger.info(
            f"Seller interest: {summary['qualified']} listings qualified, "
            f"{summary['notifications']} sellers notified"
        )
        return summary


def notify_seller_interest(db: Optional[Database] = None, now: Optional[datetime] = None) -> dict:
    """Run interest aggregation and return the summary."""
    return InterestAggregator(db=db).run(now=now)
