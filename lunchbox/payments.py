"""
Simulated subscriptions and payments.

Amounts are stored in paise (hundredths of a rupee) as integers. No payment
gateway is contacted: subscribing records a completed card payment.
"""

import logging
from datetime import date, timedelta

from lunchbox.errors import AuthorizationError, NotFound, ValidationError
from lunchbox.models import Role, add_months
from lunchbox.sqlQueries import (commit, expire_subscriptions, get_active_subscription,
                                 insert_payment, insert_subscription,
                                 list_payments_by_user, row_to_dict, rows_to_dicts, sum_payments,
                                 update_subscription_status, fetch_one)

logger = logging.getLogger(__name__)

CURRENCY = 'INR'

PLANS = {
    'daily': {"amount_cents": 5000, "description": "Pay per delivery"},
    'weekly': {"amount_cents": 30000, "description": "7 days delivery plan"},
    'monthly': {"amount_cents": 100000, "description": "30 days delivery plan (Best Value)"},
}

PAYMENT_STATUSES = ['pending', 'completed', 'failed', 'refunded']


def _money(x: float) -> float:
    """
    Safely round a numeric value to two decimal places.
    Args:
        x (float): The numeric amount to round.
    Returns:
        float: The amount rounded to two decimals, or 0.0 on failure.
    """
    try:
        return round(float(x) + 1e-9, 2)
    except (TypeError, ValueError):
        return 0.0


def cents_to_rupees(cents) -> float:
    """Convert paise to rupees with two-decimal precision (0.0 on failure)."""
    try:
        return _money((cents or 0) / 100.0)
    except TypeError:
        return 0.0


def plan_end_date(plan_type: str, start: date) -> date:
    """
    End date of a plan started on ``start``.

    daily adds one day, weekly seven, monthly one calendar month.
    """
    if plan_type == 'daily':
        return start + timedelta(days=1)
    if plan_type == 'weekly':
        return start + timedelta(days=7)
    if plan_type == 'monthly':
        return add_months(start, 1)
    raise ValidationError(f"Unknown plan: {plan_type}")


def list_plans():
    return [
        {"type": name, "amount": cents_to_rupees(p["amount_cents"]), "description": p["description"]}
        for name, p in PLANS.items()
    ]

def current_subscription(conn, usr_id, today: date):
    """Active subscription of ``usr_id`` after lapsing the ones that ended before ``today``."""
    expired = expire_subscriptions(conn, usr_id, today.isoformat())
    if expired:
        logger.info("Expired %s subscription(s) of user %s", expired, usr_id)
    return get_active_subscription(conn, usr_id)


def subscribe(conn, actor, plan_type: str, today: date = None) -> dict:
    """
    Start a subscription for a parent and record its payment.

    A subscription whose end date has passed no longer counts as active.

    Raises:
        AuthorizationError: Actor is not a parent.
        ValidationError: Unknown plan or a subscription is already active.
    """
    if actor.role != Role.PARENT:
        raise AuthorizationError("Only parents can subscribe")
    if not isinstance(plan_type, str) or plan_type not in PLANS:
        raise ValidationError(f"Unknown plan: {plan_type}")

    today = today or date.today()
    if current_subscription(conn, actor.usr_id, today) is not None:
        raise ValidationError("You already have an active subscription; cancel it first")

    amount = PLANS[plan_type]["amount_cents"]
    try:
        sub_id = insert_subscription(conn, actor.usr_id, plan_type, amount, today.isoformat(),
                                     plan_end_date(plan_type, today).isoformat(), commit=False)
        insert_payment(conn, actor.usr_id, amount, 'completed', currency=CURRENCY,
                       payment_method='card', commit=False)
        commit(conn)
    except Exception:
        conn.rollback()
        raise

    logger.info("User %s subscribed to %s plan (subscription %s)", actor.usr_id, plan_type, sub_id)
    return row_to_dict(fetch_one(conn, 'SELECT * FROM Subscription WHERE subscription_id = ?', (sub_id,)))


def cancel_subscription(conn, actor, today: date = None) -> dict:
    sub = current_subscription(conn, actor.usr_id, today or date.today())
    if sub is None:
        raise NotFound("No active subscription")
    update_subscription_status(conn, sub["subscription_id"], 'cancelled')
    logger.info("User %s cancelled subscription %s", actor.usr_id, sub["subscription_id"])
    return row_to_dict(fetch_one(conn, 'SELECT * FROM Subscription WHERE subscription_id = ?',
                                 (sub["subscription_id"],)))


def payment_summary(conn, actor, today: date = None) -> dict:
    """Payments of the acting user with totals (in rupees) per status."""
    subscription = current_subscription(conn, actor.usr_id, today or date.today())
    payments = rows_to_dicts(list_payments_by_user(conn, actor.usr_id))
    for p in payments:
        p["amount"] = cents_to_rupees(p["amount_cents"])
    return {
        "payments": payments,
        "subscription": row_to_dict(subscription),
        "totals": {s: cents_to_rupees(sum_payments(conn, s, actor.usr_id)) for s in PAYMENT_STATUSES},
        "currency": CURRENCY,
    }
