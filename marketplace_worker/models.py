"""
Data models for the Marketplace Worker.

Defines dataclasses mirroring the rows the worker reads and writes in the
shared store: listings (ads), bids, notifications, push subscriptions and
behavioral signals.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union
from enum import Enum


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a store timestamp (ISO string) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_enum(enum_cls: type, value: Any) -> Any:
    """Map a stored tag onto enum_cls; unknown tags stay plain strings."""
    if value is None or value == "":
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return str(value)


def enum_value(value: Any) -> Optional[str]:
    return value.value if isinstance(value, Enum) else value


class SaleType(str, Enum):
    """How a listing is sold."""
    CASH = "cash"
    AUCTION = "auction"
    LIVE_AUCTION = "live_auction"
    EXCHANGE = "exchange"


class ListingStatus(str, Enum):
    """Overall lifecycle status of a listing."""
    ACTIVE = "active"
    SOLD = "sold"
    EXCHANGED = "exchanged"
    EXPIRED = "expired"
    DELETED = "deleted"


class AuctionStatus(str, Enum):
    """Sub-state of an auction listing. Everything but active is terminal."""
    ACTIVE = "active"
    ENDED_WINNER = "ended_winner"
    ENDED_NO_BIDS = "ended_no_bids"
    BOUGHT_NOW = "bought_now"
    CANCELLED = "cancelled"


class SignalType(str, Enum):
    """Kinds of recorded buyer behavior."""
    VIEW = "view"
    SEARCH = "search"
    FAVORITE = "favorite"
    CHAT_INITIATED = "chat_initiated"
    AD_CREATED = "ad_created"
    BID_PLACED = "bid_placed"


class NotificationType(str, Enum):
    """Type tags written to the notifications table."""
    AUCTION_WON = "auction_won"
    AUCTION_ENDED = "auction_ended"
    AUCTION_ENDED_NO_BIDS = "auction_ended_no_bids"
    AUCTION_ENDING = "auction_ending"
    SELLER_INTEREST = "seller_interest"
    NEW_MATCH = "new_match"
    EXCHANGE_MATCH = "exchange_match"
    FAVORITE_PRICE_DROP = "favorite_price_drop"
    SYSTEM = "system"


# Base weight of each signal kind when the row carries none
SIGNAL_WEIGHTS: dict[str, int] = {
    SignalType.BID_PLACED.value: 10,
    SignalType.CHAT_INITIATED.value: 8,
    SignalType.AD_CREATED.value: 8,
    SignalType.FAVORITE.value: 6,
    SignalType.SEARCH.value: 5,
    SignalType.VIEW.value: 3,
}


@dataclass
class Listing:
    """
    A marketplace listing (ad).

    The worker only ever changes status, auction fields and updated_at;
    content fields are read-only here.
    """
    id: str
    user_id: str
    title: str = ""
    sale_type: Union[SaleType, str] = SaleType.CASH
    status: str = ListingStatus.ACTIVE.value

    # Auction fields
    auction_status: Union[AuctionStatus, str, None] = None
    auction_winner_id: Optional[str] = None
    auction_ends_at: Optional[datetime] = None

    # Timestamps
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    # Matching attributes
    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None
    category_fields: dict = field(default_factory=dict)
    governorate: Optional[str] = None
    price: Optional[float] = None

    # Counters
    favorites_count: int = 0
    views_count: int = 0

    @property
    def is_auction(self) -> bool:
        return self.sale_type == SaleType.AUCTION

    @property
    def brand(self) -> Optional[str]:
        """Brand attribute, under either the English or the Arabic key."""
        value = self.category_fields.get("brand") or self.category_fields.get("الماركة")
        return value if isinstance(value, str) and value else None

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "sale_type": enum_value(self.sale_type),
            "status": self.status,
            "auction_status": enum_value(self.auction_status),
            "auction_winner_id": self.auction_winner_id,
            "auction_ends_at": format_timestamp(self.auction_ends_at),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "expires_at": format_timestamp(self.expires_at),
            "category_id": self.category_id,
            "subcategory_id": self.subcategory_id,
            "category_fields": self.category_fields,
            "governorate": self.governorate,
            "price": self.price,
            "favorites_count": self.favorites_count,
            "views_count": self.views_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Listing":
        """Create from dictionary (e.g., from database)."""
        price = data.get("price")
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            title=data.get("title") or "",
            sale_type=parse_enum(SaleType, data.get("sale_type")) or SaleType.CASH,
            status=data.get("status") or ListingStatus.ACTIVE.value,
            auction_status=parse_enum(AuctionStatus, data.get("auction_status")),
            auction_winner_id=data.get("auction_winner_id"),
            auction_ends_at=parse_timestamp(data.get("auction_ends_at")),
            created_at=parse_timestamp(data.get("created_at")),
            updated_at=parse_timestamp(data.get("updated_at")),
            expires_at=parse_timestamp(data.get("expires_at")),
            category_id=data.get("category_id"),
            subcategory_id=data.get("subcategory_id"),
            category_fields=data.get("category_fields") or {},
            governorate=data.get("governorate"),
            price=float(price) if price is not None else None,
            favorites_count=data.get("favorites_count") or 0,
            views_count=data.get("views_count") or 0,
        )


@dataclass
class Bid:
    """An auction bid. Immutable once created."""
    ad_id: str
    bidder_id: str
    amount: float
    created_at: Optional[datetime] = None
    id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ad_id": self.ad_id,
            "bidder_id": self.bidder_id,
            "amount": self.amount,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Bid":
        return cls(
            id=str(data["id"]) if data.get("id") is not None else None,
            ad_id=str(data["ad_id"]),
            bidder_id=str(data["bidder_id"]),
            amount=float(data["amount"]),
            created_at=parse_timestamp(data.get("created_at")),
        )


@dataclass
class NotificationRecord:
    """
    In-app notification row.

    Append-only from the worker's side; dedup checks read (type, ad_id)
    and created_at.
    """
    user_id: str
    type: NotificationType
    title: str
    body: str
    ad_id: Optional[str] = None
    data: dict = field(default_factory=dict)
    is_read: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "type": self.type.value,
            "title": self.title,
            "body": self.body,
            "ad_id": self.ad_id,
            "data": self.data,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationRecord":
        return cls(
            user_id=str(data["user_id"]),
            type=NotificationType(data["type"]),
            title=data.get("title") or "",
            body=data.get("body") or "",
            ad_id=data.get("ad_id"),
            data=data.get("data") or {},
            is_read=bool(data.get("is_read", False)),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
        )


@dataclass
class PushSubscription:
    """A browser push endpoint registered by a user."""
    user_id: str
    endpoint: str
    keys_p256dh: str = ""
    keys_auth: str = ""

    def subscription_info(self) -> dict:
        """Shape expected by the Web Push library."""
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.keys_p256dh, "auth": self.keys_auth},
        }

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "endpoint": self.endpoint,
            "keys_p256dh": self.keys_p256dh,
            "keys_auth": self.keys_auth,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PushSubscription":
        return cls(
            user_id=str(data.get("user_id", "")),
            endpoint=data["endpoint"],
            keys_p256dh=data.get("keys_p256dh") or "",
            keys_auth=data.get("keys_auth") or "",
        )


@dataclass
class Signal:
    """
    A recorded user behavior event (view, search, favorite, ...).

    signal_data is free-form; the jobs look at price, brand, query,
    subcategory, price_min and price_max.
    """
    user_id: str
    signal_type: str
    ad_id: Optional[str] = None
    category_id: Optional[str] = None
    subcategory_id: Optional[str] = None
    signal_data: dict = field(default_factory=dict)
    weight: Optional[int] = None
    governorate: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[str] = None

    @property
    def base_weight(self) -> int:
        if self.weight is not None:
            return int(self.weight)
        return SIGNAL_WEIGHTS.get(self.signal_type, 0)

    @property
    def observed_price(self) -> Optional[float]:
        """Price the user saw when the signal was recorded, if any."""
        value = self.signal_data.get("price")
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "signal_type": self.signal_type,
            "ad_id": self.ad_id,
            "category_id": self.category_id,
            "subcategory_id": self.subcategory_id,
            "signal_data": self.signal_data,
            "weight": self.weight,
            "governorate": self.governorate,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Signal":
        return cls(
            id=str(data["id"]) if data.get("id") is not None else None,
            user_id=str(data["user_id"]),
            signal_type=data.get("signal_type") or "",
            ad_id=data.get("ad_id"),
            category_id=data.get("category_id"),
            subcategory_id=data.get("subcategory_id"),
            signal_data=data.get("signal_data") or {},
            weight=data.get("weight"),
            governorate=data.get("governorate"),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
        )
