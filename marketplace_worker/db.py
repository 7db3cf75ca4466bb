"""
Supabase database integration module.

Handles every store operation the worker performs:
- Reading expired/ending auctions and their bids
- Conditioned auction state transitions (optimistic concurrency)
- Bulk expiry of listings
- Notification inserts and dedup lookups
- Push subscription lookup and pruning
- Signal reads and the retention purge

Tables used:
- ads: Marketplace listings (cash, auction, exchange)
- auction_bids: Bids on auction listings
- notifications: In-app notifications
- push_subscriptions: Browser push endpoints per user
- user_signals: Behavioral signals (views, searches, favorites, ...)
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar
from postgrest.types import CountMethod, ReturnMethod
from supabase import create_client, Client, ClientOptions

from .config import get_supabase_config
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
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigurationError(ValueError):
    """Raised when the store endpoint or credential is missing."""


def _parse_rows(rows: Optional[list[dict]], parse: Callable[[dict], T]) -> list[T]:
    """Parse store rows one by one; a malformed row is logged and skipped."""
    parsed = []
    for row in rows or []:
        try:
            parsed.append(parse(row))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            row_id = row.get("id") if isinstance(row, dict) else None
            logger.warning(f"Skipping malformed row {row_id}: {e}")
    return parsed


class Database:
    """
    Supabase database client wrapper.

    Provides methods for all database operations needed by the worker jobs.
    State transitions are conditioned updates: they return whether a row was
    actually changed so callers can branch on the affected-row count.
    """

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client."""
        if client is None:
            config = get_supabase_config()
            if not config.is_configured:
                raise ConfigurationError(
                    "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in environment variables"
                )
            client = create_client(
                config.url,
                config.key,
                options=ClientOptions(postgrest_client_timeout=config.timeout_seconds),
            )
        self._client: Client = client

    @property
    def client(self) -> Client:
        """Get the Supabase client."""
        return self._client

    def ping(self) -> bool:
        """Connectivity health check: a one-row read of the listings table."""
        self._client.table("ads").select("id").limit(1).execute()
        return True

    # =========================================================================
    # AUCTION OPERATIONS
    # =========================================================================

    def get_expired_auctions(self, now: datetime) -> list[Listing]:
        """Open auctions whose deadline is at or before `now`."""
        result = (
            self._client.table("ads")
            .select("*")
            .eq("sale_type", SaleType.AUCTION.value)
            .eq("auction_status", AuctionStatus.ACTIVE.value)
            .lte("auction_ends_at", now.isoformat())
            .execute()
        )
        return _parse_rows(result.data, Listing.from_dict)

    def get_auctions_ending_between(self, start: datetime, end: datetime) -> list[Listing]:
        """Open auctions with a deadline inside [start, end]."""
        result = (
            self._client.table("ads")
            .select("*")
            .eq("sale_type", SaleType.AUCTION.value)
            .eq("auction_status", AuctionStatus.ACTIVE.value)
            .gte("auction_ends_at", start.isoformat())
            .lte("auction_ends_at", end.isoformat())
            .execute()
        )
        return _parse_rows(result.data, Listing.from_dict)

    def get_top_bid(self, listing_id: str) -> Optional[Bid]:
        """
        Highest bid on a listing.

        Ties on amount go to the earliest bid.
        """
        result = (
            self._client.table("auction_bids")
            .select("*")
            .eq("ad_id", listing_id)
            .order("amount", desc=True)
            .order("created_at")
            .limit(1)
            .execute()
        )
        return Bid.from_dict(result.data[0]) if result.data else None

    def get_bidder_ids(self, listing_id: str) -> list[str]:
        """Distinct bidder ids on a listing, in first-seen order."""
        result = self._client.table("auction_bids").select("bidder_id").eq("ad_id", listing_id).execute()
        return list(dict.fromkeys(str(row["bidder_id"]) for row in result.data))

    def transition_auction(
        self,
        listing_id: str,
        new_status: AuctionStatus,
        winner_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Move an auction out of `active`, only if it is still `active`.

        Returns:
            True if this call changed the row, False if another worker
            already settled it
        """
        update: dict[str, Any] = {
            "auction_status": new_status.value,
            "updated_at": (now or utcnow()).isoformat(),
        }
        if new_status == AuctionStatus.ENDED_WINNER:
            update["auction_winner_id"] = winner_id
            update["status"] = ListingStatus.SOLD.value

        result = (
            self._client.table("ads")
            .update(update)
            .eq("id", listing_id)
            .eq("auction_status", AuctionStatus.ACTIVE.value)
            .execute()
        )
        changed = len(result.data or [])
        logger.debug(f"Transition {listing_id} -> {new_status.value}: {changed} row(s)")
        return changed > 0

    # =========================================================================
    # LISTING OPERATIONS
    # =========================================================================

    def expire_listings(self, now: datetime) -> list[Listing]:
        """
        Mark active non-auction listings past expires_at as expired.

        Returns:
            The listings this call changed
        """
        result = (
            self._client.table("ads")
            .update({"status": ListingStatus.EXPIRED.value})
            .eq("status", ListingStatus.ACTIVE.value)
            .neq("sale_type", SaleType.AUCTION.value)
            .lte("expires_at", now.isoformat())
            .execute()
        )
        return _parse_rows(result.data, Listing.from_dict)

    def get_active_listings(self, listing_ids: list[str]) -> list[Listing]:
        """Active listings among the given ids."""
        if not listing_ids:
            return []
        result = (
            self._client.table("ads")
            .select("*")
            .in_("id", listing_ids)
            .eq("status", ListingStatus.ACTIVE.value)
            .execute()
        )
        return _parse_rows(result.data, Listing.from_dict)

    def get_listings_created_since(self, since: datetime) -> list[Listing]:
        """Active listings created at or after `since`."""
        result = (
            self._client.table("ads")
            .select("*")
            .eq("status", ListingStatus.ACTIVE.value)
            .gte("created_at", since.isoformat())
            .execute()
        )
        return _parse_rows(result.data, Listing.from_dict)

    def get_listings_updated_since(self, since: datetime) -> list[Listing]:
        """Active, priced, non-auction listings updated at or after `since`."""
        result = (
            self._client.table("ads")
            .select("*")
            .eq("status", ListingStatus.ACTIVE.value)
            .neq("sale_type", SaleType.AUCTION.value)
            .not_.is_("price", "null")
            .gte("updated_at", since.isoformat())
            .execute()
        )
        return _parse_rows(result.data, Listing.from_dict)

    def get_exchange_listings(
        self,
        category_id: str,
        exclude_user_id: str,
        limit: int = 30,
    ) -> list[Listing]:
        """Active exchange listings in a category, not owned by the given user."""
        result = (
            self._client.table("ads")
            .select("*")
            .eq("status", ListingStatus.ACTIVE.value)
            .eq("sale_type", SaleType.EXCHANGE.value)
            .eq("category_id", category_id)
            .neq("user_id", exclude_user_id)
            .limit(limit)
            .execute()
        )
        return _parse_rows(result.data, Listing.from_dict)

    # =========================================================================
    # NOTIFICATION OPERATIONS
    # =========================================================================

    def insert_notification(self, record: NotificationRecord) -> dict:
        """Insert a notification row and return it as stored."""
        result = self._client.table("notifications").insert(record.to_dict()).execute()
        return result.data[0] if result.data else record.to_dict()

    def get_notified_user_ids(
        self,
        notification_type: NotificationType,
        listing_id: str,
        user_ids: Optional[list[str]] = None,
        since: Optional[datetime] = None,
    ) -> set[str]:
        """Users who already received this notification type for a listing."""
        query = (
            self._client.table("notifications")
            .select("user_id")
            .eq("type", notification_type.value)
            .eq("ad_id", listing_id)
        )
        if user_ids is not None:
            if not user_ids:
                return set()
            query = query.in_("user_id", user_ids)
        if since:
            query = query.gte("created_at", since.isoformat())
        result = query.execute()
        return {str(row["user_id"]) for row in result.data}

    def has_notification(
        self,
        notification_type: NotificationType,
        listing_id: str,
        since: Optional[datetime] = None,
    ) -> bool:
        """Whether any notification of this type exists for a listing."""
        query = (
            self._client.table("notifications")
            .select("id")
            .eq("type", notification_type.value)
            .eq("ad_id", listing_id)
        )
        if since:
            query = query.gte("created_at", since.isoformat())
        result = query.limit(1).execute()
        return len(result.data) > 0

    # =========================================================================
    # PUSH SUBSCRIPTION OPERATIONS
    # =========================================================================

    def get_push_subscriptions(self, user_id: str) -> list[PushSubscription]:
        result = (
            self._client.table("push_subscriptions")
            .select("user_id, endpoint, keys_p256dh, keys_auth")
            .eq("user_id", user_id)
            .execute()
        )
        return _parse_rows(result.data, PushSubscription.from_dict)

    def delete_push_subscription(self, endpoint: str) -> None:
        self._client.table("push_subscriptions").delete().eq("endpoint", endpoint).execute()
        logger.info(f"Deleted dead push subscription: {endpoint[:60]}")

    # =========================================================================
    # SIGNAL OPERATIONS
    # =========================================================================

    def get_interest_signals(
        self,
        signal_types: list[str],
        since: datetime,
        limit: int = 500,
    ) -> list[Signal]:
        """Listing-bound signals of the given kinds created since `since`."""
        result = (
            self._client.table("user_signals")
            .select("ad_id, user_id, signal_type, created_at")
            .in_("signal_type", signal_types)
            .gte("created_at", since.isoformat())
            .not_.is_("ad_id", "null")
            .limit(limit)
            .execute()
        )
        return _parse_rows(result.data, Signal.from_dict)

    def get_category_signals(
        self,
        category_id: str,
        since: datetime,
        exclude_user_id: str,
        min_weight: int = 3,
        limit: int = 200,
    ) -> list[Signal]:
        """Recent signals in a category from anyone but the given user."""
        result = (
            self._client.table("user_signals")
            .select("*")
            .eq("category_id", category_id)
            .gte("weight", min_weight)
            .gte("created_at", since.isoformat())
            .neq("user_id", exclude_user_id)
            .limit(limit)
            .execute()
        )
        return _parse_rows(result.data, Signal.from_dict)

    def get_latest_priced_view(self, listing_id: str, before: datetime) -> Optional[Signal]:
        """Most recent view of a listing before `before` that recorded a price."""
        result = (
            self._client.table("user_signals")
            .select("*")
            .eq("ad_id", listing_id)
            .eq("signal_type", SignalType.VIEW.value)
            .lt("created_at", before.isoformat())
            .not_.is_("signal_data->>price", "null")
            .order("created_at", desc=True)
            .limit(1)
            .execute()
        )
        return Signal.from_dict(result.data[0]) if result.data else None

    def get_favoriting_user_ids(self, listing_id: str, exclude_user_id: Optional[str] = None) -> list[str]:
        """Distinct users with a favorite signal on a listing."""
        query = (
            self._client.table("user_signals")
            .select("user_id")
            .eq("ad_id", listing_id)
            .eq("signal_type", SignalType.FAVORITE.value)
        )
        if exclude_user_id:
            query = query.neq("user_id", exclude_user_id)
        result = query.execute()
        return list(dict.fromkeys(str(row["user_id"]) for row in result.data))

    def delete_signals_before(self, cutoff: datetime) -> int:
        """Delete signals created strictly before `cutoff`; returns the count."""
        result = (
            self._client.table("user_signals")
            .delete(count=CountMethod.exact, returning=ReturnMethod.minimal)
            .lt("created_at", cutoff.isoformat())
            .execute()
        )
        return result.count or 0


# Global database instance (lazy loaded)
_db: Optional[Database] = None


def get_db() -> Database:
    """Get database instance (singleton)."""
    global _db
    if _db is None:
        _db = Database()
    return _db
