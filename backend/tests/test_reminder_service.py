"""Expiry and reminder sweep tests."""

from datetime import timedelta

from kasir.extensions import db
from kasir.models import Subscription
from kasir.models.billing import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_EXPIRED, SUBSCRIPTION_TRIAL
from kasir.services import reminder_service
from kasir.time_utils import utc_day_window, utcnow


def _subscription(user, package, *, end_date, status=SUBSCRIPTION_ACTIVE):
    subscription = Subscription(
        user_id=user.id,
        package_id=package.id,
        status=status,
        start_date=end_date - timedelta(days=30),
        end_date=end_date,
        paid_months=1,
        bonus_months=0,
        total_months=1,
    )
    db.session.add(subscription)
    db.session.commit()
    return subscription


def _ending_in_days(days):
    start, _ = utc_day_window(days)
    return start + timedelta(hours=12)


def test_expire_sweep_is_idempotent(make_user, packages):
    now = utcnow()
    stale_active = _subscription(make_user(), packages["STANDARD"], end_date=now - timedelta(hours=1))
    stale_trial = _subscription(make_user(), packages["STANDARD"], end_date=now - timedelta(days=3),
                                status=SUBSCRIPTION_TRIAL)
    live = _subscription(make_user(), packages["STANDARD"], end_date=now + timedelta(days=10))

    assert reminder_service.expire_subscriptions() == 2
    assert reminder_service.expire_subscriptions() == 0

    db.session.expire_all()
    assert stale_active.status == SUBSCRIPTION_EXPIRED
    assert stale_active.cancelled_at is not None
    assert stale_trial.status == SUBSCRIPTION_EXPIRED
    assert live.status == SUBSCRIPTION_ACTIVE


def test_first_reminder_sent_once(make_user, packages):
    target = _subscription(make_user(), packages["STANDARD"], end_date=_ending_in_days(7))
    _subscription(make_user(), packages["STANDARD"], end_date=_ending_in_days(8))

    notified = []

    def notifier(subscription, days_left):
        notified.append((subscription.id, days_left))

    assert reminder_service.send_first_reminders(notifier) == 1
    assert reminder_service.send_first_reminders(notifier) == 0

    assert notified == [(target.id, 7)]
    db.session.expire_all()
    assert target.first_reminder_sent is True
    assert target.second_reminder_sent is False


def test_second_reminder_targets_three_days(make_user, packages):
    target = _subscription(make_user(), packages["STANDARD"], end_date=_ending_in_days(3))

    notified = []
    sent = reminder_service.send_second_reminders(lambda s, d: notified.append(s.id))

    assert sent == 1
    assert notified == [target.id]
    assert reminder_service.send_first_reminders(lambda s, d: notified.append(s.id)) == 0


def test_failed_notification_releases_claim(make_user, packages):
    target = _subscription(make_user(), packages["STANDARD"], end_date=_ending_in_days(7))

    def broken(subscription, days_left):
        raise RuntimeError("mail server down")

    assert reminder_service.send_first_reminders(broken) == 0
    db.session.expire_all()
    assert target.first_reminder_sent is False

    delivered = []
    assert reminder_service.send_first_reminders(lambda s, d: delivered.append(s.id)) == 1
    assert delivered == [target.id]


def test_expired_subscriptions_get_no_reminder(make_user, packages):
    _subscription(make_user(), packages["STANDARD"], end_date=_ending_in_days(7), status=SUBSCRIPTION_EXPIRED)

    assert reminder_service.send_first_reminders(lambda s, d: None) == 0


def test_default_notifier_logs(make_user, packages, caplog):
    _subscription(make_user(), packages["STANDARD"], end_date=_ending_in_days(7))

    with caplog.at_level("INFO"):
        assert reminder_service.send_first_reminders() == 1

    assert "Subscription reminder" in caplog.text
