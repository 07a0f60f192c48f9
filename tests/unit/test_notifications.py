"""Tests for notification dispatch and delivery channels."""

import asyncio
import json
import smtplib
from email.mime.multipart import MIMEMultipart
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from pywebpush import WebPushException
from sqlmodel import select

from app.config import Settings
from app.models.notification import Notification, NotificationType
from app.models.push_subscription import PushSubscription
from app.models.user import Role
from app.services.email_service import EmailSender, claim_confirmation_html
from app.services.events import ClaimEmailEvent, NotificationEvent, format_distance
from app.services.notifications import NotificationDispatcher, notify_new_listing
from app.services.push_service import PushSender, build_push_payload
from app.services.sse import NotificationBroker, format_sse
from app.utils.clock import utcnow
from app.utils.errors import DeliveryError
from tests.utils.factories import make_listing, make_user, offset_point


def _event(user_id, **kwargs):
    return NotificationEvent(
        user_id=user_id,
        type=kwargs.pop("type", NotificationType.CLAIM),
        message=kwargs.pop("message", "Your listing was claimed"),
        **kwargs,
    )


def _email_event(**overrides):
    now = utcnow()
    data = dict(
        to="asha@example.edu",
        receiver_name="Asha",
        listing_title="Leftover biryani",
        quantity=60,
        unit="meals",
        available_until=now,
        address="North Canteen",
        donor_name="North Canteen",
        donor_email="canteen@example.edu",
        qr_code="A" * 24,
        claimed_at=now,
        expires_at=now,
    )
    data.update(overrides)
    return ClaimEmailEvent(**data)


@pytest.mark.unit
def test_dispatch_stores_and_delivers(session, receiver):
    push = MagicMock()
    broker = MagicMock()
    dispatcher = NotificationDispatcher(push=push, broker=broker)

    notification = dispatcher.dispatch(session, _event(receiver.id, urgent=True, metadata={"a": 1}))

    stored = session.get(Notification, notification.id)
    assert stored.message == "Your listing was claimed"
    assert stored.urgent is True
    assert stored.details == {"a": 1}
    assert stored.is_read is False
    push.send.assert_called_once()
    broker.publish.assert_called_once()
    assert broker.publish.call_args.args[0] == receiver.id


@pytest.mark.unit
def test_channel_failures_are_swallowed(session, receiver):
    push = MagicMock()
    push.send.side_effect = RuntimeError("push service down")
    broker = MagicMock()
    broker.publish.side_effect = RuntimeError("no loop")
    dispatcher = NotificationDispatcher(push=push, broker=broker)

    notification = dispatcher.dispatch(session, _event(receiver.id))

    assert session.get(Notification, notification.id) is not None


@pytest.mark.unit
def test_email_failure_returns_false():
    email = MagicMock()
    email.send_claim_confirmation.side_effect = DeliveryError("smtp refused")
    dispatcher = NotificationDispatcher(email=email)

    assert dispatcher.send_email(_email_event()) is False


@pytest.mark.unit
def test_dispatch_all_routes_emails(session, receiver):
    email = MagicMock()
    dispatcher = NotificationDispatcher(email=email)

    created = dispatcher.dispatch_all(session, [_event(receiver.id), _email_event()])

    assert len(created) == 1
    email.send_claim_confirmation.assert_called_once()


@pytest.mark.unit
def test_new_listing_fans_out_to_nearby_receivers(session, donor, dispatcher):
    close = make_user(session, Role.RECEIVER, name="Close", home=offset_point(km_north=2))
    make_user(session, Role.RECEIVER, name="Far", home=offset_point(km_north=20))
    make_user(session, Role.RECEIVER, name="Unverified", home=offset_point(km_north=1), is_verified=False)
    make_user(session, Role.RECEIVER, name="Homeless")
    listing = make_listing(session, donor)

    created = notify_new_listing(session, dispatcher, listing, donor, radius_km=5)

    assert [n.user_id for n in created] == [close.id]
    assert created[0].type == NotificationType.NEW_LISTING
    assert "2.0 km away" in created[0].message
    assert donor.display_name in created[0].message


@pytest.mark.unit
def test_format_distance():
    assert format_distance(0.25) == "250 m"
    assert format_distance(3.456) == "3.5 km"


@pytest.mark.unit
def test_push_payload_links_to_listing(session, donor, receiver):
    listing = make_listing(session, donor)
    notification = Notification(
        user_id=receiver.id, listing_id=listing.id, type=NotificationType.NEW_LISTING, message="hi"
    )

    payload = build_push_payload(notification)

    assert payload["title"] == "New Food Available"
    assert payload["data"]["url"] == f"/listings/{listing.id}"


@pytest.mark.unit
def test_push_prunes_gone_subscriptions(session, receiver):
    settings = Settings(vapid_private_key="key", vapid_claims_email="ops@example.edu")
    session.add(PushSubscription(user_id=receiver.id, endpoint="https://push.example/1", p256dh="p", auth="a"))
    session.commit()

    notification = Notification(user_id=receiver.id, type=NotificationType.CLAIM, message="claimed")
    gone = WebPushException("gone", response=SimpleNamespace(status_code=410))

    with patch("app.services.push_service.webpush", side_effect=gone):
        sent = PushSender(settings).send(session, notification)

    assert sent == 0
    assert session.exec(select(PushSubscription)).all() == []


@pytest.mark.unit
def test_push_sends_json_payload(session, receiver):
    settings = Settings(vapid_private_key="key", vapid_claims_email="ops@example.edu")
    session.add(PushSubscription(user_id=receiver.id, endpoint="https://push.example/1", p256dh="p", auth="a"))
    session.commit()

    notification = Notification(user_id=receiver.id, type=NotificationType.CLAIM, message="claimed")

    with patch("app.services.push_service.webpush") as webpush:
        assert PushSender(settings).send(session, notification) == 1

    kwargs = webpush.call_args.kwargs
    assert json.loads(kwargs["data"])["body"] == "claimed"
    assert kwargs["vapid_claims"] == {"sub": "mailto:ops@example.edu"}


@pytest.mark.unit
def test_push_disabled_without_keys(session, receiver):
    notification = Notification(user_id=receiver.id, type=NotificationType.CLAIM, message="claimed")
    with patch("app.services.push_service.webpush") as webpush:
        assert PushSender(Settings()).send(session, notification) == 0
    webpush.assert_not_called()


@pytest.mark.unit
def test_claim_email_contents():
    settings = Settings(smtp_host="smtp.example.edu", email_from="noreply@example.edu")
    msg = EmailSender(settings).build_claim_confirmation(_email_event())

    assert isinstance(msg, MIMEMultipart)
    assert msg["To"] == "asha@example.edu"
    assert "Leftover biryani" in msg["Subject"]
    html, qr = msg.get_payload()
    assert qr.get_content_type() == "image/png"
    assert "A" * 24 in html.get_payload(decode=True).decode()


@pytest.mark.unit
def test_claim_email_escapes_user_text():
    html = claim_confirmation_html(_email_event(listing_title="<script>x</script>"))
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


@pytest.mark.unit
def test_email_skipped_without_smtp():
    with patch("app.services.email_service.smtplib.SMTP") as smtp:
        assert EmailSender(Settings()).send_claim_confirmation(_email_event()) is False
    smtp.assert_not_called()


@pytest.mark.unit
def test_smtp_failure_raises_delivery_error():
    sender = EmailSender(Settings(smtp_host="smtp.example", email_from="food@example.edu"))

    with patch("app.services.email_service.smtplib.SMTP", side_effect=ConnectionRefusedError("refused")):
        with pytest.raises(DeliveryError) as exc:
            sender.send_claim_confirmation(_email_event())

    assert "refused" in exc.value.message


@pytest.mark.unit
def test_smtp_failure_is_not_fatal_for_dispatch():
    sender = EmailSender(Settings(smtp_host="smtp.example", email_from="food@example.edu"))
    dispatcher = NotificationDispatcher(email=sender)

    with patch("app.services.email_service.smtplib.SMTP") as smtp:
        smtp.return_value.__enter__.return_value.send_message.side_effect = smtplib.SMTPRecipientsRefused({})
        assert dispatcher.send_email(_email_event()) is False


@pytest.mark.unit
def test_broker_delivers_to_subscriber():
    broker = NotificationBroker()

    async def scenario():
        queue = broker.subscribe(7)
        assert broker.publish(7, {"message": "hello"}) == 1
        assert broker.publish(8, {"message": "other user"}) == 0
        payload = await asyncio.wait_for(queue.get(), timeout=1)
        broker.unsubscribe(7, queue)
        return payload

    assert asyncio.run(scenario()) == {"message": "hello"}
    assert broker.subscriber_count(7) == 0


@pytest.mark.unit
def test_format_sse():
    assert format_sse({"id": 1}) == 'event: notification\ndata: {"id": 1}\n\n'
