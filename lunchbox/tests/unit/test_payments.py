from datetime import date

import pytest

from lunchbox import payments
from lunchbox.errors import AuthorizationError, NotFound, ValidationError


def test_cents_to_rupees():
    assert payments.cents_to_rupees(5000) == 50.0
    assert payments.cents_to_rupees(12345) == 123.45
    assert payments.cents_to_rupees(None) == 0.0
    assert payments.cents_to_rupees("abc") == 0.0


def test_plan_end_dates():
    start = date(2024, 1, 31)
    assert payments.plan_end_date('daily', start) == date(2024, 2, 1)
    assert payments.plan_end_date('weekly', start) == date(2024, 2, 7)
    assert payments.plan_end_date('monthly', start) == date(2024, 2, 29)
    with pytest.raises(ValidationError):
        payments.plan_end_date('yearly', start)


def test_list_plans():
    plans = {p["type"]: p["amount"] for p in payments.list_plans()}
    assert plans == {"daily": 50.0, "weekly": 300.0, "monthly": 1000.0}


def test_subscribe_records_completed_payment(db_conn, actors):
    sub = payments.subscribe(db_conn, actors["parent"], 'weekly', today=date(2024, 3, 1))
    assert sub["status"] == "active"
    assert sub["amount_cents"] == 30000
    assert sub["end_date"] == "2024-03-08"

    summary = payments.payment_summary(db_conn, actors["parent"], today=date(2024, 3, 5))
    assert summary["totals"]["completed"] == 300.0
    assert summary["payments"][0]["amount"] == 300.0
    assert summary["payments"][0]["currency"] == "INR"
    assert summary["subscription"]["subscription_id"] == sub["subscription_id"]


def test_only_one_active_subscription(db_conn, actors):
    payments.subscribe(db_conn, actors["parent"], 'daily')
    with pytest.raises(ValidationError):
        payments.subscribe(db_conn, actors["parent"], 'monthly')

    cancelled = payments.cancel_subscription(db_conn, actors["parent"])
    assert cancelled["status"] == "cancelled"
    assert payments.subscribe(db_conn, actors["parent"], 'monthly')["plan_type"] == "monthly"


def test_subscribe_rules(db_conn, actors):
    with pytest.raises(AuthorizationError):
        payments.subscribe(db_conn, actors["staff"], 'daily')
    with pytest.raises(ValidationError):
        payments.subscribe(db_conn, actors["parent"], 'yearly')
    with pytest.raises(NotFound):
        payments.cancel_subscription(db_conn, actors["parent"])


def test_lapsed_subscription_allows_a_new_one(db_conn, actors):
    first = payments.subscribe(db_conn, actors["parent"], 'daily', today=date(2024, 1, 1))
    second = payments.subscribe(db_conn, actors["parent"], 'daily', today=date(2024, 2, 1))
    assert second["status"] == "active"
    assert second["start_date"] == "2024-02-01"

    row = db_conn.execute('SELECT status FROM Subscription WHERE subscription_id = ?',
                          (first["subscription_id"],)).fetchone()
    assert row["status"] == "expired"


def test_subscription_active_through_end_date(db_conn, actors):
    sub = payments.subscribe(db_conn, actors["parent"], 'weekly', today=date(2024, 3, 1))
    on_last_day = payments.payment_summary(db_conn, actors["parent"], today=date(2024, 3, 8))
    assert on_last_day["subscription"]["subscription_id"] == sub["subscription_id"]

    after = payments.payment_summary(db_conn, actors["parent"], today=date(2024, 3, 9))
    assert after["subscription"] is None
    with pytest.raises(NotFound):
        payments.cancel_subscription(db_conn, actors["parent"], today=date(2024, 3, 9))
