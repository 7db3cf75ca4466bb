"""
Ending-soon reminders and listing expiry for the Marketplace Worker.

- EndingSoonReminder: warns every bidder once per auction when the
  auction closes within the next hour
- ExpirySweep: closes non-auction listings past expires_at and tells the owner
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .db import Database, get_db
from .models import NotificationType, utcnow
from .notifications import NotificationSink

logger = logging.getLogger(__name__)


class EndingSoonReminder:
    """
    Reminds bidders that an auction is about to close.

    Dedup scope is the auction: a bidder gets at most one
    auction_ending notification per listing, ever.
    """

    HORIZON = timedelta(hours=1)

    def __init__(self, db: Optional[Database] = None, sink: Optional[NotificationSink] = None):
        self.db = db or get_db()
        self.sink = sink or NotificationSink(self.db)

    def run(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        summary = {"auctions": 0, "notifications": 0, "failed": 0}

        auctions = self.db.get_auctions_ending_between(now, now + self.HORIZON)
        summary["auctions"] = len(auctions)

        for auction in auctions:
            try:
                bidder_ids = self.db.get_bidder_ids(auction.id)
                if not bidder_ids:
                    continue

                already = self.sink.notified_user_ids(
                    NotificationType.AUCTION_ENDING, auction.id, user_ids=bidder_ids
                )
                to_notify = [b for b in bidder_ids if b not in already]

                for bidder_id in to_notify:
                    self.sink.notify(
                        bidder_id,
                        NotificationType.AUCTION_ENDING,
                        "المزاد بينتهي قريب! ⏰",
                        f'مزاد "{auction.title}" بينتهي خلال أقل من ساعة',
                        listing_id=auction.id,
                    )
                    summary["notifications"] += 1

                if to_notify:
                    logger.info(f"Notified {len(to_notify)} bidders about ending auction: {auction.id}")
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Ending-soon reminder failed for auction {auction.id}: {e}")

        return summary


class ExpirySweep:
    """
    Expires stale non-auction listings.

    The bulk update only touches rows still active, so a listing is
    expired (and its owner notified) once even across workers.
    """

    def __init__(self, db: Optional[Database] = None, sink: Optional[NotificationSink] = None):
        self.db = db or get_db()
        self.sink = sink or NotificationSink(self.db)

    def run(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        summary = {"expired": 0, "notifications": 0, "failed": 0}

        expired = self.db.expire_listings(now)
        summary["expired"] = len(expired)

        for listing in expired:
            try:
                self.sink.notify(
                    listing.user_id,
                    NotificationType.SYSTEM,
                    "إعلانك انتهى",
                    f'إعلان "{listing.title}" انتهت مدته. ممكن تجدده من إعلاناتي.',
                    listing_id=listing.id,
                )
                summary["notifications"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Failed to notify owner of expired listing {listing.id}: {e}")

        if expired:
            logger.info(f"Expired {len(expired)} listings")
        return summary


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def remind_ending_soon(db: Optional[Database] = None, now: Optional[datetime] = None) -> dict:
    """Send ending-soon reminders and return the summary."""
    return EndingSoonReminder(db=db).run(now=now)


def expire_listings(db: Optional[Database] = None, now: Optional[datetime] = None) -> dict:
    """Expire stale listings and return the summary."""
    return ExpirySweep(db=db).run(now=now)
