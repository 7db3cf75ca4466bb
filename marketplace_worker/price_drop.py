"""
Price-Drop alerts for the Marketplace Worker.

A listing qualifies when its current price is at most 95% of the price a
buyer last saw on it (recorded in a view signal before the listing was
updated). Users who favorited the listing are told, once per day per listing.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .db import Database, get_db
from .models import Listing, NotificationType, utcnow
from .notifications import NotificationSink

logger = logging.getLogger(__name__)


def is_price_drop(observed_price: Optional[float], new_price: Optional[float], ratio: float = 0.95) -> bool:
    """True when new_price <= ratio * observed_price."""
    if not observed_price or new_price is None or observed_price <= 0:
        return False
    return round(new_price, 2) <= round(observed_price * ratio, 2)


def drop_percent(old_price: float, new_price: float) -> int:
    return round((old_price - new_price) / old_price * 100)


class PriceDropNotifier:
    """
    Detects meaningful price reductions and notifies favoriting users.

    Usage:
        notifier = PriceDropNotifier()
        summary = notifier.run()
    """

    LOOKBACK = timedelta(minutes=30)
    DEDUP_WINDOW = timedelta(hours=24)
    DROP_RATIO = 0.95
    PUSH_LIMIT = 20

    def __init__(self, db: Optional[Database] = None, sink: Optional[NotificationSink] = None):
        self.db = db or get_db()
        self.sink = sink or NotificationSink(self.db)

    def run(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        summary = {"checked": 0, "dropped": 0, "notifications": 0, "failed": 0}

        listings = self.db.get_listings_updated_since(now - self.LOOKBACK)
        summary["checked"] = len(listings)

        for listing in listings:
            try:
                outcome = self.check_listing(listing, now)
                if outcome is not None:
                    summary["dropped"] += 1
                    summary["notifications"] += outcome[0]
                    summary["failed"] += outcome[1]
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Price-drop check failed for listing {listing.id}: {e}")

        if summary["dropped"]:
            logger.info(
                f"Price drops: {summary['dropped']} listings, "
                f"{summary['notifications']} favoriting users notified"
            )
        return summary

    def observed_price(self, listing: Listing) -> Optional[float]:
        """Price recorded by the latest view before the listing's last update."""
        before = listing.updated_at or utcnow()
        signal = self.db.get_latest_priced_view(listing.id, before)
        return signal.observed_price if signal else None

    def check_listing(self, listing: Listing, now: datetime) -> Optional[tuple[int, int]]:
        """
        Notify favoriting users if this listing's price dropped.

        Returns:
            (sent, failed), or None if the listing did not qualify
        """
        old_price = self.observed_price(listing)
        if not is_price_drop(old_price, listing.price, self.DROP_RATIO):
            return None

        favoriting = self.db.get_favoriting_user_ids(listing.id, exclude_user_id=listing.user_id)
        if not favoriting:
            return 0, 0

        already = self.sink.notified_user_ids(
            NotificationType.FAVORITE_PRICE_DROP,
            listing.id,
            user_ids=favoriting,
            since=now - self.DEDUP_WINDOW,
        )
        recipients = [u for u in favoriting if u not in already]

        percent = drop_percent(old_price, listing.price)
        new_price = f"{listing.price:,.0f}"
        sent = failed = 0
        for index, user_id in enumerate(recipients):
            try:
                self.sink.notify(
                    user_id,
                    NotificationType.FAVORITE_PRICE_DROP,
                    "السعر نزل! 💰",
                    f'"{listing.title}" نزل {percent}% - دلوقتي {new_price} جنيه',
                    listing_id=listing.id,
                    payload={
                        "old_price": old_price,
                        "new_price": listing.price,
                        "drop_percent": percent,
                    },
                    push=index < self.PUSH_LIMIT,
                )
                sent += 1
            except Exception as e:
                failed += 1
                logger.error(f"Failed to notify {user_id} of price drop on {listing.id}: {e}")
        return sent, failed


def notify_price_drops(db: Optional[Database] = None, now: Optional[datetime] = None) -> dict:
    """Run the price-drop check and return the summary."""
    return PriceDropNotifier(db=db).run(now=now)
