"""Tests for auction settlement."""

from datetime import timedelta

from conftest import NOW, make_auction

from marketplace_worker.models import AuctionStatus, ListingStatus, NotificationType
from marketplace_worker.notifications import NotificationSink
from marketplace_worker.settlement import AuctionSettlement


def test_highest_bid_wins(db, sink):
    db.add_listing(make_auction("ad-1"))
    db.add_bid("ad-1", "u1", 100)
    db.add_bid("ad-1", "u2", 150)
    db.add_bid("ad-1", "u3", 120)

    summary = AuctionSettlement(db=db, sink=sink).run(now=NOW)

    listing = db.listings["ad-1"]
    assert listing.auction_status == AuctionStatus.ENDED_WINNER
    assert listing.status == ListingStatus.SOLD.value
    assert listing.auction_winner_id == "u2"
    assert summary["ended_winner"] == 1
    assert summary["notifications"] == 2

    won = db.notifications_of(NotificationType.AUCTION_WON)
    ended = db.notifications_of(NotificationType.AUCTION_ENDED)
    assert [n.user_id for n in won] == ["u2"]
    assert [n.user_id for n in ended] == ["seller"]
    assert ended[0].data["winner_id"] == "u2"
    assert ended[0].ad_id == "ad-1"


def test_tied_bids_go_to_earliest(db, sink):
    db.add_listing(make_auction("ad-1"))
    db.add_bid("ad-1", "late", 200, created_at=NOW - timedelta(minutes=5))
    db.add_bid("ad-1", "early", 200, created_at=NOW - timedelta(minutes=30))

    AuctionSettlement(db=db, sink=sink).run(now=NOW)

    assert db.listings["ad-1"].auction_winner_id == "early"


def test_no_bids_notifies_only_seller(db, sink):
    db.add_listing(make_auction("ad-1"))

    summary = AuctionSettlement(db=db, sink=sink).run(now=NOW)

    listing = db.listings["ad-1"]
    assert listing.auction_status == AuctionStatus.ENDED_NO_BIDS
    assert listing.status == ListingStatus.ACTIVE.value
    assert listing.auction_winner_id is None
    assert summary["ended_no_bids"] == 1
    assert [(n.user_id, n.type) for n in db.notifications] == [
        ("seller", NotificationType.AUCTION_ENDED_NO_BIDS)
    ]


def test_open_auction_before_deadline_is_untouched(db, sink):
    db.add_listing(make_auction("ad-1", ends_at=NOW + timedelta(minutes=1)))
    db.add_bid("ad-1", "u1", 100)

    summary = AuctionSettlement(db=db, sink=sink).run(now=NOW)

    assert summary["checked"] == 0
    assert db.listings["ad-1"].auction_status == AuctionStatus.ACTIVE
    assert db.notifications == []


def test_settling_twice_is_idempotent(db, sink):
    db.add_listing(make_auction("ad-1"))
    db.add_bid("ad-1", "u1", 100)
    engine = AuctionSettlement(db=db, sink=sink)

    engine.run(now=NOW)
    second = engine.run(now=NOW)

    assert second["checked"] == 0
    assert len(db.notifications) == 2
    assert db.listings["ad-1"].auction_winner_id == "u1"


def test_concurrent_worker_wins_race(db, sink, push_sender):
    """Another process settles the auction between our read and our write."""
    db.add_listing(make_auction("ad-1"))
    db.add_bid("ad-1", "u1", 100)

    other = AuctionSettlement(db=db, sink=NotificationSink(db=db, push_sender=push_sender))
    ours = AuctionSettlement(db=db, sink=sink)

    stale = db.get_expired_auctions(NOW)
    other.run(now=NOW)
    outcome, sent = ours.settle(stale[0], NOW)

    assert outcome == "already_handled"
    assert sent == 0
    assert len(db.notifications_of(NotificationType.AUCTION_WON)) == 1
    assert len(db.notifications_of(NotificationType.AUCTION_ENDED)) == 1


def test_one_bad_auction_does_not_block_batch(db, sink):
    db.add_listing(make_auction("ad-bad"))
    db.add_listing(make_auction("ad-good", user_id="seller-2"))
    db.add_bid("ad-good", "u1", 50)

    original = db.get_top_bid

    def flaky_top_bid(listing_id):
        if listing_id == "ad-bad":
            raise ConnectionError("timeout")
        return original(listing_id)

    db.get_top_bid = flaky_top_bid

    summary = AuctionSettlement(db=db, sink=sink).run(now=NOW)

    assert summary["failed"] == 1
    assert summary["ended_winner"] == 1
    assert db.listings["ad-good"].auction_status == AuctionStatus.ENDED_WINNER
    assert db.listings["ad-bad"].auction_status == AuctionStatus.ACTIVE


def test_failed_winner_notification_still_notifies_seller(db, sink):
    db.add_listing(make_auction("ad-1"))
    db.add_bid("ad-1", "u1", 100)
    db.fail_notification_for.add("u1")

    summary = AuctionSettlement(db=db, sink=sink).run(now=NOW)

    assert db.listings["ad-1"].auction_status == AuctionStatus.ENDED_WINNER
    assert summary["notifications"] == 1
    assert [n.user_id for n in db.notifications] == ["seller"]
