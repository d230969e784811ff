# Overview: Scheduled subscription sweeps (expiry and renewal reminders).

"""
Subscription sweeps

WHY: Subscription expiry is persisted (unlike payment expiry, which is derived
at read time), so something has to move stale rows to EXPIRED. These sweeps
are run from cron through the CLI; they never run in-process.

INVARIANTS:
- expire_subscriptions is one bulk UPDATE; a second run changes nothing.
- A reminder flag is claimed with a conditional UPDATE before the notifier is
  called. Two overlapping sweeps cannot both claim it. A notifier failure
  releases the claim so a later sweep retries; a delivered reminder is never
  resent.
"""

from __future__ import annotations

from typing import Callable

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Subscription
from ..models.billing import LIVE_SUBSCRIPTION_STATUSES, SUBSCRIPTION_EXPIRED
from kasir.time_utils import utc_day_window, utcnow


FIRST_REMINDER_DAYS = 7
SECOND_REMINDER_DAYS = 3

Notifier = Callable[[Subscription, int], None]


def log_notifier(subscription: Subscription, days_left: int) -> None:
    """Default notifier: records the reminder in the application log."""
    user = subscription.user
    current_app.logger.info(
        "Subscription reminder: user_id=%s email=%s package=%s days_left=%s end_date=%s",
        subscription.user_id,
        user.email if user else None,
        subscription.package.name if subscription.package else None,
        days_left,
        subscription.end_date.isoformat(),
    )


def expire_subscriptions() -> int:
    """Mark every live subscription past its end date EXPIRED. Returns rows changed."""
    now = utcnow()
    result = db.session.execute(
        update(Subscription)
        .where(
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            Subscription.end_date < now,
        )
        .values(status=SUBSCRIPTION_EXPIRED, cancelled_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    expired = result.rowcount or 0
    if expired:
        current_app.logger.info("Expired %s subscription(s)", expired)
    return expired


def _send_reminders(flag_name: str, days_ahead: int, notifier: Notifier | None) -> int:
    notifier = notifier or log_notifier
    flag = getattr(Subscription, flag_name)
    start, end = utc_day_window(days_ahead)

    candidate_ids = [
        row.id
        for row in db.session.query(Subscription.id)
        .filter(
            Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            Subscription.end_date >= start,
            Subscription.end_date < end,
            flag.is_(False),
        )
        .order_by(Subscription.id.asc())
        .all()
    ]

    sent = 0
    for subscription_id in candidate_ids:
        claimed = db.session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id, flag.is_(False))
            .values({flag_name: True})
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        if claimed.rowcount != 1:
            # Another sweep got there first
            continue

        subscription = db.session.get(Subscription, subscription_id)
        db.session.refresh(subscription)
        try:
            notifier(subscription, days_ahead)
        except Exception:
            current_app.logger.exception(
                "Reminder delivery failed for subscription %s; releasing %s",
                subscription_id,
                flag_name,
            )
            db.session.execute(
                update(Subscription)
                .where(Subscription.id == subscription_id)
                .values({flag_name: False})
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
            continue
        sent += 1

    return sent


def send_first_reminders(notifier: Notifier | None = None) -> int:
    """Remind subscriptions ending on the UTC day seven days from now."""
    return _send_reminders("first_reminder_sent", FIRST_REMINDER_DAYS, notifier)


def send_second_reminders(notifier: Notifier | None = None) -> int:
    """Remind subscriptions ending on the UTC day three days from now."""
    return _send_reminders("second_reminder_sent", SECOND_REMINDER_DAYS, notifier)
