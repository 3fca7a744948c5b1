"""
Shared fixtures: a throwaway SQLite database per test, the Flask test
client pointed at it, a minimal set of users, and helpers to log in as
each role.
"""
import sqlite3
from datetime import date, timedelta

import pytest
from werkzeug.security import generate_password_hash

from lunchbox import Flask_app, lifecycle
from lunchbox.migrations.create_schema import apply_schema
from lunchbox.models import Actor, Role
from lunchbox.sqlQueries import (create_connection, close_connection, create_child, create_school,
                                 create_user)

TEST_PASSWORD = "secret123"


@pytest.fixture
def temp_db_path(tmp_path):
    db_path = str(tmp_path / "lunchbox_test.db")
    conn = sqlite3.connect(db_path)
    try:
        apply_schema(conn)
    finally:
        conn.close()
    return db_path


@pytest.fixture
def db_conn(temp_db_path):
    conn = create_connection(temp_db_path)
    yield conn
    close_connection(conn)


@pytest.fixture
def app(temp_db_path, monkeypatch):
    monkeypatch.setattr(Flask_app, "db_file", temp_db_path)
    Flask_app.app.config.update(TESTING=True, SECRET_KEY="test-secret")
    return Flask_app.app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def tomorrow():
    return date.today() + timedelta(days=1)


@pytest.fixture
def seed_minimal_data(temp_db_path):
    """
    Two schools and one user per role, plus a second parent and a second
    staff member for ownership checks. Every account uses TEST_PASSWORD.
    """
    conn = create_connection(temp_db_path)
    try:
        pw = generate_password_hash(TEST_PASSWORD)
        school_id = create_school(conn, "Green Valley School", "1 School Lane", "0200000001",
                                  "office@greenvalley.test", "12:00", "13:00")
        other_school_id = create_school(conn, "Hill Top School", "2 Hill Road", "0200000002",
                                        "office@hilltop.test", "12:30", "13:30")
        parent_id = create_user(conn, "Pat Parent", "parent@test.com", "5550001", pw, Role.PARENT,
                                address="10 Home Street")
        other_parent_id = create_user(conn, "Olive Other", "other@test.com", "5550002", pw, Role.PARENT)
        staff_id = create_user(conn, "Sam Staff", "staff@test.com", "5550003", pw, Role.DELIVERY_STAFF,
                               service_area="North")
        other_staff_id = create_user(conn, "Sid Staff", "staff2@test.com", "5550004", pw, Role.DELIVERY_STAFF)
        school_admin_id = create_user(conn, "Sally School", "school@test.com", "5550005", pw,
                                      Role.SCHOOL_ADMIN, school_id=school_id)
        system_admin_id = create_user(conn, "Ada Admin", "admin@test.com", "5550006", pw, Role.SYSTEM_ADMIN)
        child_id = create_child(conn, parent_id, school_id, "Kim", class_name="2A", allergies="nuts")
    finally:
        close_connection(conn)

    return {
        "school_id": school_id,
        "other_school_id": other_school_id,
        "parent_id": parent_id,
        "other_parent_id": other_parent_id,
        "staff_id": staff_id,
        "other_staff_id": other_staff_id,
        "school_admin_id": school_admin_id,
        "system_admin_id": system_admin_id,
        "child_id": child_id,
    }


@pytest.fixture
def actors(seed_minimal_data):
    s = seed_minimal_data
    return {
        "parent": Actor(s["parent_id"], Role.PARENT),
        "other_parent": Actor(s["other_parent_id"], Role.PARENT),
        "staff": Actor(s["staff_id"], Role.DELIVERY_STAFF),
        "other_staff": Actor(s["other_staff_id"], Role.DELIVERY_STAFF),
        "school_admin": Actor(s["school_admin_id"], Role.SCHOOL_ADMIN, s["school_id"]),
        "other_school_admin": Actor(s["school_admin_id"], Role.SCHOOL_ADMIN, s["other_school_id"]),
        "system_admin": Actor(s["system_admin_id"], Role.SYSTEM_ADMIN),
    }


@pytest.fixture
def booked_delivery(db_conn, seed_minimal_data, actors, tomorrow):
    """A one-off booking for tomorrow whose delivery is assigned to the seeded staff member."""
    booking = lifecycle.create_booking(db_conn, actors["parent"], {
        "child_id": seed_minimal_data["child_id"],
        "delivery_date": tomorrow.isoformat(),
    })
    delivery = booking["deliveries"][0]
    lifecycle.assign_staff(db_conn, delivery["delivery_id"], seed_minimal_data["staff_id"], actors["system_admin"])
    return {
        "booking_id": booking["booking_id"],
        "delivery_id": delivery["delivery_id"],
        "qr_code": delivery["qr_code"],
    }


def _set_session(client, usr_id, role, school_id=None):
    with client.session_transaction() as sess:
        sess["usr_id"] = usr_id
        sess["role"] = role
        sess["school_id"] = school_id


@pytest.fixture
def login_as(client, seed_minimal_data):
    """Return a function that switches the test client's session to the given role."""
    s = seed_minimal_data
    accounts = {
        "parent": (s["parent_id"], Role.PARENT, None),
        "other_parent": (s["other_parent_id"], Role.PARENT, None),
        "staff": (s["staff_id"], Role.DELIVERY_STAFF, None),
        "other_staff": (s["other_staff_id"], Role.DELIVERY_STAFF, None),
        "school_admin": (s["school_admin_id"], Role.SCHOOL_ADMIN, s["school_id"]),
        "system_admin": (s["system_admin_id"], Role.SYSTEM_ADMIN, None),
    }

    def _login(name):
        _set_session(client, *accounts[name])
    return _login


@pytest.fixture
def parent_session(login_as):
    login_as("parent")


@pytest.fixture
def staff_session(login_as):
    login_as("staff")


@pytest.fixture
def school_admin_session(login_as):
    login_as("school_admin")


@pytest.fixture
def admin_session(login_as):
    login_as("system_admin")
