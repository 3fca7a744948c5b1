"""
Tests for tracking code generation, lookup and immutability.
"""
import sqlite3

import pytest

from lunchbox import lifecycle
from lunchbox.errors import NotFound, ValidationError
from lunchbox.sqlQueries import execute_query, get_delivery, insert_delivery
from lunchbox.tracking import generate_tracking_code, normalize_scanned_code


def test_codes_are_unique_within_same_millisecond():
    codes = {generate_tracking_code(now_ms=1700000000000) for _ in range(500)}
    assert len(codes) == 500


def test_code_starts_with_base36_timestamp():
    assert generate_tracking_code(now_ms=36).startswith("10")
    assert len(generate_tracking_code(now_ms=0)) == 13


def test_normalize_strips_whitespace_but_keeps_case():
    assert normalize_scanned_code("  AbC123\n") == "AbC123"
    assert normalize_scanned_code(None) == ""


def test_lookup_is_exact_and_case_sensitive(db_conn, booked_delivery):
    code = booked_delivery["qr_code"]
    found = lifecycle.lookup_delivery(db_conn, f" {code} ")
    assert found["delivery_id"] == booked_delivery["delivery_id"]

    flipped = code.swapcase()
    if flipped != code:
        with pytest.raises(NotFound):
            lifecycle.lookup_delivery(db_conn, flipped)
    with pytest.raises(NotFound):
        lifecycle.lookup_delivery(db_conn, code[:-1])


def test_lookup_empty_code_is_validation_error(db_conn):
    with pytest.raises(ValidationError):
        lifecycle.lookup_delivery(db_conn, "   ")


def test_unknown_code_message(db_conn, seed_minimal_data):
    with pytest.raises(NotFound) as exc:
        lifecycle.lookup_delivery(db_conn, "nope")
    assert exc.value.message == "Invalid QR code"


def test_duplicate_code_rejected_by_database(db_conn, booked_delivery, seed_minimal_data, tomorrow):
    with pytest.raises(sqlite3.IntegrityError):
        insert_delivery(db_conn, booked_delivery["booking_id"], seed_minimal_data["school_id"],
                        "2099-01-01", booked_delivery["qr_code"])


def test_code_cannot_be_changed(db_conn, booked_delivery):
    with pytest.raises(sqlite3.DatabaseError):
        execute_query(db_conn, 'UPDATE Delivery SET qr_code = ? WHERE delivery_id = ?',
                      ("changed", booked_delivery["delivery_id"]))
    db_conn.rollback()
    assert get_delivery(db_conn, booked_delivery["delivery_id"])["qr_code"] == booked_delivery["qr_code"]


def test_collision_draws_a_new_code(db_conn, booked_delivery, seed_minimal_data, actors, tomorrow, monkeypatch):
    codes = iter([booked_delivery["qr_code"], "fresh-code-1"])
    monkeypatch.setattr(lifecycle, "generate_tracking_code", lambda: next(codes))

    booking = lifecycle.create_booking(db_conn, actors["parent"], {
        "child_id": seed_minimal_data["child_id"],
        "delivery_date": tomorrow.isoformat(),
    })
    assert booking["deliveries"][0]["qr_code"] == "fresh-code-1"
