"""
Auction Settlement module for the Marketplace Worker.

Closes auctions whose deadline has passed:
1. Find open auctions with auction_ends_at <= now
2. Pick the highest bid (earliest bid wins a tie)
3. Conditionally move the auction to ended_winner / ended_no_bids
4. Notify winner and seller, only if this worker made the transition

Step 3 is the only coordination between concurrent worker processes: the
update is filtered on auction_status = active, so exactly one worker sees
an affected row and sends the notifications.
"""

import logging
from datetime import datetime
from typing import Optional

from .db import Database, get_db
from .models import AuctionStatus, Bid, Listing, NotificationType, utcnow
from .notifications import NotificationSink

logger = logging.getLogger(__name__)


class AuctionSettlement:
    """
    Settles expired auctions.

    Usage:
        engine = AuctionSettlement()
        summary = engine.run()
    """

    def __init__(self, db: Optional[Database] = None, sink: Optional[NotificationSink] = None):
        self.db = db or get_db()
        self.sink = sink or NotificationSink(self.db)

    def run(self, now: Optional[datetime] = None) -> dict:
        """
        Settle every open auction past its deadline.

        Returns:
            Summary dict with counts
        """
        now = now or utcnow()
        summary = {
            "checked": 0,
            "ended_winner": 0,
            "ended_no_bids": 0,
            "already_handled": 0,
            "failed": 0,
            "notifications": 0,
        }

        auctions = self.db.get_expired_auctions(now)
        summary["checked"] = len(auctions)

        for auction in auctions:
            try:
                outcome, sent = self.settle(auction, now)
                summary[outcome] += 1
                summary["notifications"] += sent
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Failed to settle auction {auction.id}: {e}")

        if auctions:
            logger.info(
                f"Auctions finalized: {summary['ended_winner']} sold, "
                f"{summary['ended_no_bids']} without bids, "
                f"{summary['already_handled']} already handled, {summary['failed']} failed"
            )
        return summary

    def settle(self, auction: Listing, now: Optional[datetime] = None) -> tuple[str, int]:
        """
        Settle a single auction.

        Returns:
            (outcome, notifications sent) where outcome is one of
            "ended_winner", "ended_no_bids" or "already_handled"
        """
        top_bid = self.db.get_top_bid(auction.id)

        if top_bid is not None:
            changed = self.db.transition_auction(
                auction.id, AuctionStatus.ENDED_WINNER, winner_id=top_bid.bidder_id, now=now
            )
            if not changed:
                logger.debug(f"Auction {auction.id} already settled elsewhere")
                return "already_handled", 0
            logger.info(f"Auction {auction.id} won by {top_bid.bidder_id} at {top_bid.amount}")
            return "ended_winner", self._notify_winner_and_seller(auction, top_bid)

        changed = self.db.transition_auction(auction.id, AuctionStatus.ENDED_NO_BIDS, now=now)
        if not changed:
            logger.debug(f"Auction {auction.id} already settled elsewhere")
            return "already_handled", 0
        logger.info(f"Auction {auction.id} ended with no bids")
        return "ended_no_bids", self._notify_no_bids(auction)

    def _notify_winner_and_seller(self, auction: Listing, bid: Bid) -> int:
        amount = f"{bid.amount:,.0f}"
        sent = 0

        try:
            self.sink.notify(
                bid.bidder_id,
                NotificationType.AUCTION_WON,
                "مبروك! كسبت المزاد 🎉",
                f'كسبت مزاد "{auction.title}" بمبلغ {amount} جنيه',
                listing_id=auction.id,
                payload={"amount": bid.amount},
            )
            sent += 1
        except Exception as e:
            logger.error(f"Failed to notify winner {bid.bidder_id} of auction {auction.id}: {e}")

        try:
            self.sink.notify(
                auction.user_id,
                NotificationType.AUCTION_ENDED,
                "انتهى المزاد - تم البيع! 💰",
                f'انتهى مزاد "{auction.title}" وتم البيع بمبلغ {amount} جنيه',
                listing_id=auction.id,
                payload={"winner_id": bid.bidder_id, "amount": bid.amount},
            )
            sent += 1
        except Exception as e:
            logger.error(f"Failed to notify seller {auction.user_id} of auction {auction.id}: {e}")

        return sent

    def _notify_no_bids(self, auction: Listing) -> int:
        try:
            self.sink.notify(
                auction.user_id,
                NotificationType.AUCTION_ENDED_NO_BIDS,
                "انتهى المزاد بدون مزايدات",
                f'انتهى مزاد "{auction.title}" بدون ما حد يزايد. ممكن تنزل إعلان جديد.',
                listing_id=auction.id,
            )
            return 1
        except Exception as e:
            logger.error(f"Failed to notify seller {auction.user_id} of auction {auction.id}: {e}")
            return 0


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def finalize_expired_auctions(db: Optional[Database] = None, now: Optional[datetime] = None) -> dict:
    """Settle all expired auctions and return the summary."""
    return AuctionSettlement(db=db).run(now=now)
