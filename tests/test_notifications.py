"""Tests for the notification sink and push delivery."""

from unittest.mock import MagicMock, patch

import pytest
from pywebpush import WebPushException

from conftest import RecordingPushSender

from marketplace_worker.config import PushConfig
from marketplace_worker.models import NotificationType, PushSubscription
from marketplace_worker.notifications import NotificationSink
from marketplace_worker.push import PushSender, PushStatus, build_payload


def _subscribe(db, user_id, endpoint):
    db.subscriptions.append(PushSubscription(user_id=user_id, endpoint=endpoint, keys_p256dh="p", keys_auth="a"))


def test_notify_inserts_record_and_pushes(db, sink, push_sender):
    _subscribe(db, "u1", "https://push.example/1")

    record = sink.notify("u1", NotificationType.SYSTEM, "Title", "Body", listing_id="ad-1", payload={"x": 1})

    assert db.notifications == [record]
    assert record.data == {"x": 1, "ad_id": "ad-1"}
    assert len(push_sender.sent) == 1
    endpoint, payload = push_sender.sent[0]
    assert endpoint == "https://push.example/1"
    assert payload["data"]["url"] == "/ad/ad-1"
    assert payload["title"] == "Title"


def test_raising_sender_keeps_notification(db):
    _subscribe(db, "u1", "https://push.example/1")
    _subscribe(db, "u1", "https://push.example/2")
    failing = MagicMock()
    failing.enabled = True
    failing.send.side_effect = RuntimeError("boom")
    sink = NotificationSink(db=db, push_sender=failing)

    record = sink.notify("u1", NotificationType.SYSTEM, "Title", "Body")

    assert db.notifications == [record]
    assert failing.send.call_count == 2
    assert len(db.subscriptions) == 2


def test_push_errors_are_swallowed(db, sink, push_sender):
    _subscribe(db, "u1", "https://push.example/1")
    _subscribe(db, "u1", "https://push.example/2")
    push_sender.results = {
        "https://push.example/1": PushStatus.ERROR,
        "https://push.example/2": PushStatus.ERROR,
    }

    sink.notify("u1", NotificationType.SYSTEM, "Title", "Body")

    assert len(db.notifications) == 1
    assert len(db.subscriptions) == 2


def test_gone_endpoint_is_pruned(db, sink, push_sender):
    _subscribe(db, "u1", "https://push.example/dead")
    _subscribe(db, "u1", "https://push.example/live")
    push_sender.results = {"https://push.example/dead": PushStatus.GONE}

    sink.notify("u1", NotificationType.SYSTEM, "Title", "Body")

    assert [s.endpoint for s in db.subscriptions] == ["https://push.example/live"]


def test_subscription_lookup_failure_is_swallowed(db, sink):
    def broken(user_id):
        raise ConnectionError("store down")

    db.get_push_subscriptions = broken

    sink.notify("u1", NotificationType.SYSTEM, "Title", "Body")

    assert len(db.notifications) == 1


def test_push_disabled_without_vapid_keys(db):
    sender = RecordingPushSender(enabled=False)
    _subscribe(db, "u1", "https://push.example/1")
    sink = NotificationSink(db=db, push_sender=sender)

    sink.notify("u1", NotificationType.SYSTEM, "Title", "Body")

    assert sender.sent == []
    assert len(db.notifications) == 1


def test_push_can_be_skipped_per_call(db, sink, push_sender):
    _subscribe(db, "u1", "https://push.example/1")

    sink.notify("u1", NotificationType.SYSTEM, "Title", "Body", push=False)

    assert push_sender.sent == []


def test_insert_failure_propagates(db, sink):
    db.fail_notification_for.add("u1")

    with pytest.raises(RuntimeError):
        sink.notify("u1", NotificationType.SYSTEM, "Title", "Body")


# =============================================================================
# PushSender
# =============================================================================

def _sender():
    return PushSender(PushConfig(vapid_public_key="pub", vapid_private_key="priv", timeout_seconds=2))


def _web_push_error(status_code):
    response = MagicMock()
    response.status_code = status_code
    return WebPushException("push failed", response=response)


def test_sender_disabled_without_keys():
    assert not PushSender(PushConfig(vapid_public_key="", vapid_private_key="")).enabled
    assert _sender().enabled


def test_sender_delivers():
    subscription = PushSubscription(user_id="u1", endpoint="https://push.example/1", keys_p256dh="p", keys_auth="a")
    with patch("marketplace_worker.push.webpush") as webpush:
        result = _sender().send(subscription, build_payload("T", "B"))

    assert result.ok
    kwargs = webpush.call_args.kwargs
    assert kwargs["subscription_info"] == {"endpoint": "https://push.example/1", "keys": {"p256dh": "p", "auth": "a"}}
    assert kwargs["timeout"] == 2
    assert kwargs["vapid_private_key"] == "priv"


@pytest.mark.parametrize("status_code", [404, 410])
def test_sender_reports_gone(status_code):
    subscription = PushSubscription(user_id="u1", endpoint="https://push.example/1")
    with patch("marketplace_worker.push.webpush", side_effect=_web_push_error(status_code)):
        result = _sender().send(subscription, build_payload("T", "B"))

    assert result.gone
    assert result.status_code == status_code


def test_sender_transient_error_is_not_gone():
    subscription = PushSubscription(user_id="u1", endpoint="https://push.example/1")
    with patch("marketplace_worker.push.webpush", side_effect=_web_push_error(503)):
        result = _sender().send(subscription, build_payload("T", "B"))

    assert result.status == PushStatus.ERROR


def test_sender_never_raises():
    subscription = PushSubscription(user_id="u1", endpoint="https://push.example/1")
    with patch("marketplace_worker.push.webpush", side_effect=TimeoutError("slow")):
        result = _sender().send(subscription, build_payload("T", "B"))

    assert result.status == PushStatus.ERROR
    assert "slow" in result.error
