"""
New-Listing Matching module for the Marketplace Worker.

Matches freshly published listings against stored buyer signals and
notifies the buyers most likely to care. Each signal in the listing's
category scores additively:

    base weight of the signal kind
    +3 subcategory match
    +5 brand match (listing brand found in the signal's brand or query)
    +2 same governorate
    +3 price inside a searched price range (widened 30% each way)
    +2 first query word (2+ chars) found in the listing title

Scores are summed per user; users at 8 or more qualify, best 50 are notified.
New exchange listings are also matched bidirectionally against existing
exchange listings.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .db import Database, get_db
from .models import Listing, NotificationType, SaleType, Signal, enum_value, utcnow
from .notifications import NotificationSink

logger = logging.getLogger(__name__)


# =============================================================================
# MATCH RESULT
# =============================================================================

@dataclass
class BuyerMatch:
    """Aggregated match of one buyer against one listing."""
    user_id: str
    score: int = 0
    reason: str = ""  # First brand or query that matched, shown in the body


# =============================================================================
# LISTING MATCHER
# =============================================================================

class ListingMatcher:
    """
    Scores buyer signals against a listing.

    Usage:
        matcher = ListingMatcher()
        buyers = matcher.rank_buyers(listing, signals)
    """

    WEIGHTS = {
        "subcategory": 3,
        "brand": 5,
        "governorate": 2,
        "price_range": 3,
        "keyword": 2,
    }
    MIN_SCORE = 8
    MAX_RECIPIENTS = 50
    MIN_KEYWORD_LENGTH = 2

    def __init__(self, weights: Optional[dict] = None):
        self.weights = weights or self.WEIGHTS.copy()

    def rank_buyers(self, listing: Listing, signals: list[Signal]) -> list[BuyerMatch]:
        """
        Aggregate signal scores per user and keep the qualifying top buyers.

        Returns:
            Up to MAX_RECIPIENTS BuyerMatch objects, highest score first
        """
        buyers: dict[str, BuyerMatch] = {}

        for signal in signals:
            if signal.user_id == listing.user_id:
                continue
            score, reason = self.score_signal(listing, signal)
            buyer = buyers.setdefault(signal.user_id, BuyerMatch(user_id=signal.user_id))
            buyer.score += score
            if reason and not buyer.reason:
                buyer.reason = reason

        qualified = [b for b in buyers.values() if b.score >= self.MIN_SCORE]
        qualified.sort(key=lambda b: b.score, reverse=True)
        return qualified[:self.MAX_RECIPIENTS]

    def score_signal(self, listing: Listing, signal: Signal) -> tuple[int, str]:
        """Score one signal against a listing; returns (score, reason)."""
        data = signal.signal_data or {}
        reasons: list[str] = []

        score = signal.base_weight
        score += self._score_subcategory(listing, data)
        score += self._score_brand(listing, data, reasons)
        score += self._score_governorate(listing, signal)
        score += self._score_price_range(listing, data)
        score += self._score_keywords(listing, data, reasons)

        return score, reasons[0] if reasons else ""

    def _score_subcategory(self, listing: Listing, data: dict) -> int:
        if listing.subcategory_id and data.get("subcategory") == listing.subcategory_id:
            return self.weights["subcategory"]
        return 0

    def _score_brand(self, listing: Listing, data: dict, reasons: list) -> int:
        brand = listing.brand
        wanted = data.get("brand") or data.get("query")
        if brand and isinstance(wanted, str) and brand.lower() in wanted.lower():
            reasons.append(brand)
            return self.weights["brand"]
        return 0

    def _score_governorate(self, listing: Listing, signal: Signal) -> int:
        if listing.governorate and signal.governorate == listing.governorate:
            return self.weights["governorate"]
        return 0

    def _score_price_range(self, listing: Listing, data: dict) -> int:
        """Price within a searched range, widened by 30% on each side."""
        if not listing.price or not data.get("price_min") or not data.get("price_max"):
            return 0
        try:
            low = float(data["price_min"]) * 0.7
            high = float(data["price_max"]) * 1.3
        except (TypeError, ValueError):
            return 0
        return self.weights["price_range"] if low <= listing.price <= high else 0

    def _score_keywords(self, listing: Listing, data: dict, reasons: list) -> int:
        """Only the first query word found in the title counts."""
        query = data.get("query")
        if not isinstance(query, str) or not listing.title:
            return 0
        title = listing.title.lower()
        for word in query.split():
            if len(word) >= self.MIN_KEYWORD_LENGTH and word.lower() in title:
                reasons.append(query)
                return self.weights["keyword"]
        return 0


# =============================================================================
# MATCHING JOB
# =============================================================================

SALE_TYPE_LABELS = {
    SaleType.AUCTION: "🔥 مزاد",
    SaleType.LIVE_AUCTION: "🔴 مزاد مباشر",
    SaleType.EXCHANGE: "🔄 للتبديل",
    SaleType.CASH: "💰 للبيع",
}


class NewListingMatcher:
    """
    Notifies buyers about listings published in the last few minutes.

    Dedup is per listing: once any new_match notification exists for a
    listing, later runs skip that listing entirely.
    """

    LOOKBACK = timedelta(minutes=5)
    SIGNAL_WINDOW = timedelta(days=30)
    MIN_SIGNAL_WEIGHT = 3
    SIGNAL_LIMIT = 200
    PUSH_LIMIT = 10

    EXCHANGE_DEDUP_WINDOW = timedelta(hours=48)
    EXCHANGE_CANDIDATE_LIMIT = 30

    def __init__(
        self,
        db: Optional[Database] = None,
        sink: Optional[NotificationSink] = None,
        matcher: Optional[ListingMatcher] = None,
    ):
        self.db = db or get_db()
        self.sink = sink or NotificationSink(self.db)
        self.matcher = matcher or ListingMatcher()

    def run(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        summary = {
            "listings": 0,
            "already_matched": 0,
            "notifications": 0,
            "exchange_notifications": 0,
            "failed": 0,
        }

        listings = self.db.get_listings_created_since(now - self.LOOKBACK)
        summary["listings"] = len(listings)

        for listing in listings:
            try:
                outcome = self.match_listing(listing, now)
                if outcome is None:
                    summary["already_matched"] += 1
                else:
                    summary["notifications"] += outcome[0]
                    summary["failed"] += outcome[1]
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Buyer matching failed for listing {listing.id}: {e}")

            if listing.sale_type == SaleType.EXCHANGE:
                try:
                    sent, failed = self.match_exchange(listing, now)
                    summary["exchange_notifications"] += sent
                    summary["failed"] += failed
                except Exception as e:
                    summary["failed"] += 1
                    logger.error(f"Exchange matching failed for listing {listing.id}: {e}")

        if listings:
            logger.info(
                f"New-listing matching: {summary['listings']} listings, "
                f"{summary['notifications']} buyers notified, "
                f"{summary['exchange_notifications']} exchange matches"
            )
        return summary

    def match_listing(self, listing: Listing, now: datetime) -> Optional[tuple[int, int]]:
        """
        Notify the best matching buyers for one listing.

        A failed insert for one buyer is logged and counted; the remaining
        buyers are still notified.

        Returns:
            (sent, failed), or None if the listing was already matched on
            an earlier run
        """
        if not listing.category_id:
            return 0, 0
        if self.sink.was_notified(NotificationType.NEW_MATCH, listing.id):
            return None

        signals = self.db.get_category_signals(
            listing.category_id,
            since=now - self.SIGNAL_WINDOW,
            exclude_user_id=listing.user_id,
            min_weight=self.MIN_SIGNAL_WEIGHT,
            limit=self.SIGNAL_LIMIT,
        )
        buyers = self.matcher.rank_buyers(listing, signals)

        label = SALE_TYPE_LABELS.get(listing.sale_type, SALE_TYPE_LABELS[SaleType.CASH])
        sent = failed = 0
        for index, buyer in enumerate(buyers):
            body = f"{listing.title} - {label}"
            if buyer.reason:
                body += f'\nعشان أنت دورت على "{buyer.reason}"'
            try:
                self.sink.notify(
                    buyer.user_id,
                    NotificationType.NEW_MATCH,
                    "فيه إعلان جديد يناسبك! 🎯",
                    body,
                    listing_id=listing.id,
                    payload={"sale_type": enum_value(listing.sale_type), "score": buyer.score},
                    push=index < self.PUSH_LIMIT,
                )
                sent += 1
            except Exception as e:
                failed += 1
                logger.error(f"Failed to notify buyer {buyer.user_id} of listing {listing.id}: {e}")

        return sent, failed

    def match_exchange(self, listing: Listing, now: datetime) -> tuple[int, int]:
        """
        Notify owners of exchange listings that want what this one offers, and vice versa.

        Returns:
            (sent, failed)
        """
        wanted = listing.category_fields.get("exchange_wanted")
        if not isinstance(wanted, dict) or not wanted.get("category_id"):
            return 0, 0

        candidates = self.db.get_exchange_listings(
            wanted["category_id"],
            exclude_user_id=listing.user_id,
            limit=self.EXCHANGE_CANDIDATE_LIMIT,
        )
        matches = [c for c in candidates if self._wants_category(c, listing.category_id)]
        if not matches:
            return 0, 0

        already = self.sink.notified_user_ids(
            NotificationType.EXCHANGE_MATCH,
            listing.id,
            user_ids=list({c.user_id for c in matches}),
            since=now - self.EXCHANGE_DEDUP_WINDOW,
        )

        sent = failed = 0
        for candidate in matches:
            if candidate.user_id in already:
                continue
            already.add(candidate.user_id)
            try:
                self.sink.notify(
                    candidate.user_id,
                    NotificationType.EXCHANGE_MATCH,
                    "فيه حد عايز يبدّل معاك! 🔄",
                    f'"{listing.title}" - ممكن يتبدل بإعلانك "{candidate.title}"',
                    listing_id=listing.id,
                    payload={"matching_ad_id": candidate.id, "sale_type": SaleType.EXCHANGE.value},
                    push=sent < self.PUSH_LIMIT,
                )
                sent += 1
            except Exception as e:
                failed += 1
                logger.error(f"Failed to notify {candidate.user_id} of exchange match {listing.id}: {e}")
        return sent, failed

    @staticmethod
    def _wants_category(candidate: Listing, category_id: Optional[str]) -> bool:
        wanted = candidate.category_fields.get("exchange_wanted")
        return isinstance(wanted, dict) and category_id is not None and wanted.get("category_id") == category_id


def match_new_listings(db: Optional[Database] = None, now: Optional[datetime] = None) -> dict:
    """Run new-listing matching and return the summary."""
    return NewListingMatcher(db=db).run(now=now)
