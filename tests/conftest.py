"""Shared fixtures: an in-memory store and a recording push sender."""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from marketplace_worker.models import (
    AuctionStatus,
    Bid,
    Listing,
    ListingStatus,
    NotificationRecord,
    NotificationType,
    PushSubscription,
    SaleType,
    Signal,
    SignalType,
)
from marketplace_worker.notifications import NotificationSink
from marketplace_worker.push import PushResult, PushStatus

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeDatabase:
    """In-memory stand-in for Database with the same query surface."""

    def __init__(self):
        self.listings: dict[str, Listing] = {}
        self.bids: list[Bid] = []
        self.notifications: list[NotificationRecord] = []
        self.subscriptions: list[PushSubscription] = []
        self.signals: list[Signal] = []
        self.ping_error: Optional[Exception] = None
        self.now = NOW  # Store clock, stamped on inserted notifications
        self.fail_notification_for: set[str] = set()
        self._lock = threading.Lock()

    # -- seeding helpers ----------------------------------------------------

    def add_listing(self, listing: Listing) -> Listing:
        self.listings[listing.id] = listing
        return listing

    def add_bid(self, ad_id: str, bidder_id: str, amount: float, created_at: Optional[datetime] = None) -> Bid:
        bid = Bid(
            ad_id=ad_id,
            bidder_id=bidder_id,
            amount=amount,
            created_at=created_at or NOW - timedelta(hours=1),
            id=str(len(self.bids) + 1),
        )
        self.bids.append(bid)
        return bid

    def add_signal(self, signal: Signal) -> Signal:
        self.signals.append(signal)
        return signal

    def notifications_of(self, notification_type: NotificationType) -> list[NotificationRecord]:
        return [n for n in self.notifications if n.type == notification_type]

    # -- Database surface ---------------------------------------------------

    def ping(self) -> bool:
        if self.ping_error:
            raise self.ping_error
        return True

    def get_expired_auctions(self, now):
        return [
            replace(l) for l in self.listings.values()
            if l.sale_type == SaleType.AUCTION
            and l.auction_status == AuctionStatus.ACTIVE
            and l.auction_ends_at is not None
            and l.auction_ends_at <= now
        ]

    def get_auctions_ending_between(self, start, end):
        return [
            replace(l) for l in self.listings.values()
            if l.sale_type == SaleType.AUCTION
            and l.auction_status == AuctionStatus.ACTIVE
            and l.auction_ends_at is not None
            and start <= l.auction_ends_at <= end
        ]

    def get_top_bid(self, listing_id):
        bids = [b for b in self.bids if b.ad_id == listing_id]
        if not bids:
            return None
        return sorted(bids, key=lambda b: (-b.amount, b.created_at))[0]

    def get_bidder_ids(self, listing_id):
        return list(dict.fromkeys(b.bidder_id for b in self.bids if b.ad_id == listing_id))

    def transition_auction(self, listing_id, new_status, winner_id=None, now=None):
        with self._lock:
            listing = self.listings.get(listing_id)
            if listing is None or listing.auction_status != AuctionStatus.ACTIVE:
                return False
            listing.auction_status = new_status
            listing.updated_at = now
            if new_status == AuctionStatus.ENDED_WINNER:
                listing.auction_winner_id = winner_id
                listing.status = ListingStatus.SOLD.value
            return True

    def expire_listings(self, now):
        changed = []
        with self._lock:
            for listing in self.listings.values():
                if (
                    listing.status == ListingStatus.ACTIVE.value
                    and listing.sale_type != SaleType.AUCTION
                    and listing.expires_at is not None
                    and listing.expires_at <= now
                ):
                    listing.status = ListingStatus.EXPIRED.value
                    changed.append(replace(listing))
        return changed

    def get_active_listings(self, listing_ids):
        return [
            replace(self.listings[i]) for i in listing_ids
            if i in self.listings and self.listings[i].status == ListingStatus.ACTIVE.value
        ]

    def get_listings_created_since(self, since):
        return [
            replace(l) for l in self.listings.values()
            if l.status == ListingStatus.ACTIVE.value and l.created_at and l.created_at >= since
        ]

    def get_listings_updated_since(self, since):
        return [
            replace(l) for l in self.listings.values()
            if l.status == ListingStatus.ACTIVE.value
            and l.sale_type != SaleType.AUCTION
            and l.price is not None
            and l.updated_at and l.updated_at >= since
        ]

    def get_exchange_listings(self, category_id, exclude_user_id, limit=30):
        found = [
            replace(l) for l in self.listings.values()
            if l.status == ListingStatus.ACTIVE.value
            and l.sale_type == SaleType.EXCHANGE
            and l.category_id == category_id
            and l.user_id != exclude_user_id
        ]
        return found[:limit]

    def insert_notification(self, record):
        if record.user_id in self.fail_notification_for:
            raise RuntimeError(f"insert failed for {record.user_id}")
        record.created_at = self.now
        self.notifications.append(record)
        return record.to_dict()

    def get_notified_user_ids(self, notification_type, listing_id, user_ids=None, since=None):
        return {
            n.user_id for n in self.notifications
            if n.type == notification_type
            and n.ad_id == listing_id
            and (user_ids is None or n.user_id in user_ids)
            and (since is None or n.created_at >= since)
        }

    def has_notification(self, notification_type, listing_id, since=None):
        return any(
            n.type == notification_type and n.ad_id == listing_id and (since is None or n.created_at >= since)
            for n in self.notifications
        )

    def get_push_subscriptions(self, user_id):
        return [s for s in self.subscriptions if s.user_id == user_id]

    def delete_push_subscription(self, endpoint):
        self.subscriptions = [s for s in self.subscriptions if s.endpoint != endpoint]

    def get_interest_signals(self, signal_types, since, limit=500):
        found = [
            s for s in self.signals
            if s.signal_type in signal_types and s.created_at >= since and s.ad_id is not None
        ]
        return found[:limit]

    def get_category_signals(self, category_id, since, exclude_user_id, min_weight=3, limit=200):
        found = [
            s for s in self.signals
            if s.category_id == category_id
            and s.base_weight >= min_weight
            and s.created_at >= since
            and s.user_id != exclude_user_id
        ]
        return found[:limit]

    def get_latest_priced_view(self, listing_id, before):
        views = [
            s for s in self.signals
            if s.ad_id == listing_id
            and s.signal_type == SignalType.VIEW.value
            and s.created_at < before
            and s.signal_data.get("price") is not None
        ]
        return max(views, key=lambda s: s.created_at) if views else None

    def get_favoriting_user_ids(self, listing_id, exclude_user_id=None):
        return list(dict.fromkeys(
            s.user_id for s in self.signals
            if s.ad_id == listing_id
            and s.signal_type == SignalType.FAVORITE.value
            and s.user_id != exclude_user_id
        ))

    def delete_signals_before(self, cutoff):
        before = len(self.signals)
        self.signals = [s for s in self.signals if s.created_at >= cutoff]
        return before - len(self.signals)


class RecordingPushSender:
    """Push sender that records deliveries and returns scripted results."""

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self.sent: list[tuple[str, dict]] = []
        self.results: dict[str, PushStatus] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    def send(self, subscription, payload):
        self.sent.append((subscription.endpoint, payload))
        status = self.results.get(subscription.endpoint, PushStatus.DELIVERED)
        code = 410 if status == PushStatus.GONE else (500 if status == PushStatus.ERROR else 201)
        return PushResult(endpoint=subscription.endpoint, status=status, status_code=code)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def push_sender() -> RecordingPushSender:
    return RecordingPushSender()


@pytest.fixture
def sink(db, push_sender) -> NotificationSink:
    return NotificationSink(db=db, push_sender=push_sender)


def make_auction(listing_id: str = "ad-1", ends_at: datetime = NOW - timedelta(minutes=1), **kwargs) -> Listing:
    defaults = dict(
        id=listing_id,
        user_id="seller",
        title="iPhone 15 Pro",
        sale_type=SaleType.AUCTION,
        auction_status=AuctionStatus.ACTIVE,
        auction_ends_at=ends_at,
        created_at=NOW - timedelta(days=3),
        category_id="phones",
    )
    defaults.update(kwargs)
    return Listing(**defaults)


def make_listing(listing_id: str = "ad-1", **kwargs) -> Listing:
    defaults = dict(
        id=listing_id,
        user_id="seller",
        title="Samsung Galaxy S24 Ultra",
        sale_type=SaleType.CASH,
        created_at=NOW - timedelta(days=1),
        updated_at=NOW - timedelta(days=1),
        category_id="phones",
        price=20000.0,
    )
    defaults.update(kwargs)
    return Listing(**defaults)
