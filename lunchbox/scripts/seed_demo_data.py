"""
Script to populate a database with demo data.

Creates:
- 1 school
- 1 parent with 2 children
- 1 delivery staff member and 1 school admin for the school
- 1 one-off booking and 1 weekly recurring booking, with staff assigned

All demo accounts share the password "test123".
"""

import os
import sys
import sqlite3
from datetime import date, timedelta
from werkzeug.security import generate_password_hash

from lunchbox import lifecycle
from lunchbox.migrations.create_schema import get_db_path
from lunchbox.models import Actor, Role
from lunchbox.sqlQueries import (create_connection, close_connection, create_child, create_school,
                                 create_user, get_user_credentials)

DEMO_PASSWORD = "test123"

DEMO_USERS = [
    ("Priya Sharma", "parent@lunchbox.local", "9876500001", Role.PARENT),
    ("Ravi Kumar", "staff@lunchbox.local", "9876500002", Role.DELIVERY_STAFF),
    ("Anita Desai", "school@lunchbox.local", "9876500003", Role.SCHOOL_ADMIN),
]


def create_demo_school(conn):
    school_id = create_school(conn, "Green Valley Public School", "12 MG Road, Pune", "02012345678",
                              "office@greenvalley.example", "12:00", "13:00")
    print(f"✓ Created school #{school_id}: Green Valley Public School")
    return school_id


def create_demo_users(conn, school_id):
    """Create the demo accounts and return {role: usr_id}; existing accounts are reused."""
    ids = {}
    password_hash = generate_password_hash(DEMO_PASSWORD)
    for full_name, email, phone, role in DEMO_USERS:
        existing = get_user_credentials(conn, email)
        if existing:
            print(f"⚠ {role} already exists with ID: {existing['usr_id']}")
            ids[role] = existing["usr_id"]
            continue
        ids[role] = create_user(
            conn, full_name, email, phone, password_hash, role,
            school_id=school_id if role == Role.SCHOOL_ADMIN else None,
            address="45 Koregaon Park, Pune" if role == Role.PARENT else None,
            service_area="Pune East" if role == Role.DELIVERY_STAFF else None,
        )
        print(f"✓ Created {role} #{ids[role]}: {full_name} ({email})")
    return ids


def create_demo_bookings(conn, ids, school_id):
    parent = Actor(ids[Role.PARENT], Role.PARENT)
    admin = Actor(0, Role.SYSTEM_ADMIN)

    first = create_child(conn, parent.usr_id, school_id, "Aarav", class_name="3B", allergies="peanuts")
    second = create_child(conn, parent.usr_id, school_id, "Diya", class_name="1A")
    print(f"✓ Created children #{first} and #{second}")

    tomorrow = date.today() + timedelta(days=1)
    one_off = lifecycle.create_booking(conn, parent, {
        "child_id": first,
        "delivery_date": tomorrow.isoformat(),
        "special_instructions": "Keep upright",
    })
    weekly = lifecycle.create_booking(conn, parent, {
        "child_id": second,
        "delivery_date": tomorrow.isoformat(),
        "is_recurring": True,
        "recurring_pattern": "weekly",
        "recurring_end_date": (tomorrow + timedelta(days=28)).isoformat(),
    })

    for booking in (one_off, weekly):
        assigned = lifecycle.assign_staff_to_booking(conn, booking["booking_id"], ids[Role.DELIVERY_STAFF], admin)
        print(f"✓ Created booking #{booking['booking_id']} with {len(booking['deliveries'])} deliveries "
              f"({len(assigned)} assigned to staff)")
        for delivery in booking["deliveries"]:
            print(f"  - {delivery['scheduled_date']}: tracking code {delivery['qr_code']}")


def main():
    """Run the script to create demo data."""
    db_file = get_db_path()

    print("Creating demo school, users and bookings")
    print("=" * 60)
    print(f"Database: {db_file}\n")

    if not os.path.exists(db_file):
        print(f"Error: Database file not found at {db_file}")
        print("Run create_schema.py first.")
        sys.exit(1)

    conn = None
    try:
        conn = create_connection(db_file)
        print("✓ Connected to database\n")

        school_id = create_demo_school(conn)
        ids = create_demo_users(conn, school_id)
        print()
        create_demo_bookings(conn, ids, school_id)

        print("\n" + "=" * 60)
        print("Demo data created successfully! ✓")
        print("\nLogin credentials (password for all: test123):")
        for _, email, _, role in DEMO_USERS:
            print(f"  {role}: {email}")

    except sqlite3.Error as e:
        print(f"\n✗ Database error: {e}")
        sys.exit(1)

    except Exception as e:
        print(f"\n✗ Error: {e}")
        sys.exit(1)

    finally:
        close_connection(conn)
        print("✓ Database connection closed")


if __name__ == '__main__':
    main()
