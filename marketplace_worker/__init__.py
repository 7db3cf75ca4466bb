"""
Marketplace Worker - background jobs for a classifieds marketplace

Turns time-based marketplace events into state changes and notifications:
closing auctions, reminding bidders, expiring listings, matching new
listings to buyers, price-drop and seller-interest alerts, signal retention.

Modules:
- config: Configuration and environment variables
- models: Store row dataclasses and enums
- db: Supabase integration for storage
- push: Web Push delivery
- notifications: In-app notifications with best-effort push
- settlement: Auction settlement
- reminders: Ending-soon reminders and listing expiry
- interest: Seller interest aggregation
- matching: New-listing buyer and exchange matching
- price_drop: Price-drop alerts for favoriting users
- retention: Old signal purge
- scheduler: Tick loop and CLI
"""

__version__ = "0.1.0"

# Convenient imports
from .models import (
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
from .db import ConfigurationError, Database, get_db
from .push import PushResult, PushSender, PushStatus
from .notifications import NotificationSink
from .settlement import AuctionSettlement, finalize_expired_auctions
from .reminders import EndingSoonReminder, ExpirySweep, remind_ending_soon, expire_listings
from .interest import InterestAggregator, notify_seller_interest
from .matching import BuyerMatch, ListingMatcher, NewListingMatcher, match_new_listings
from .price_drop import PriceDropNotifier, notify_price_drops
from .retention import purge_old_signals
from .scheduler import TickScheduler, ScheduledJob, JOBS

__all__ = [
    # Models
    "AuctionStatus",
    "Bid",
    "Listing",
    "ListingStatus",
    "NotificationRecord",
    "NotificationType",
    "PushSubscription",
    "SaleType",
    "Signal",
    "SignalType",
    # Storage
    "ConfigurationError",
    "Database",
    "get_db",
    # Notifications
    "PushResult",
    "PushSender",
    "PushStatus",
    "NotificationSink",
    # Jobs
    "AuctionSettlement",
    "finalize_expired_auctions",
    "EndingSoonReminder",
    "ExpirySweep",
    "remind_ending_soon",
    "expire_listings",
    "InterestAggregator",
    "notify_seller_interest",
    "BuyerMatch",
    "ListingMatcher",
    "NewListingMatcher",
    "match_new_listings",
    "PriceDropNotifier",
    "notify_price_drops",
    "purge_old_signals",
    # Scheduler
    "TickScheduler",
    "ScheduledJob",
    "JOBS",
]
