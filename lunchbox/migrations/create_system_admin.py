"""
Migration script to create the first system administrator.

Public registration only offers the parent and delivery_staff roles, so a
fresh database has nobody who can create schools or promote school admins.

This migration:
- Creates a system_admin user when none exists yet
- Takes the credentials from LUNCHBOX_ADMIN_EMAIL / LUNCHBOX_ADMIN_PASSWORD
  when set, otherwise falls back to a default account
"""

import sqlite3
import os
import sys
from werkzeug.security import generate_password_hash

from lunchbox.migrations.create_schema import get_db_path


def create_system_admin(conn):
    """
    Create a system admin unless one already exists.
    Returns:
        int | None: The new usr_id, or None if an admin was already present.
    """
    cursor = conn.cursor()

    cursor.execute("SELECT COUNT(*) FROM User WHERE role = 'system_admin'")
    admin_count = cursor.fetchone()[0]

    if admin_count > 0:
        print(f"⚠ {admin_count} system admin(s) already exist. Skipping admin creation.")
        return None

    admin_email = os.environ.get("LUNCHBOX_ADMIN_EMAIL", "admin@lunchbox.local")
    admin_password = os.environ.get("LUNCHBOX_ADMIN_PASSWORD", "admin123")
    admin_name = "System Admin"

    cursor.execute("SELECT usr_id FROM User WHERE email = ?", (admin_email,))
    existing = cursor.fetchone()
    if existing:
        cursor.execute("UPDATE User SET role = 'system_admin', is_active = 1 WHERE usr_id = ?", (existing[0],))
        print("✓ Promoted existing user to system admin:")
        print(f"  - User ID: {existing[0]}")
        print(f"  - Email: {admin_email}")
        return existing[0]

    cursor.execute('''
        INSERT INTO User (full_name, email, phone, password_HS, role)
        VALUES (?, ?, ?, ?, 'system_admin')
    ''', (admin_name, admin_email, "0000000", generate_password_hash(admin_password)))

    print("✓ Created new system admin:")
    print(f"  - Email: {admin_email}")
    if "LUNCHBOX_ADMIN_PASSWORD" not in os.environ:
        print(f"  - Password: {admin_password}")
        print("  ⚠ IMPORTANT: Change the admin password after first login!")
    return cursor.lastrowid


def verify_migration(conn):
    """Verify that at least one active system admin exists."""
    cursor = conn.cursor()
    cursor.execute("""
        SELECT usr_id, full_name, email
        FROM User
        WHERE role = 'system_admin' AND is_active = 1
    """)
    admins = cursor.fetchall()

    if not admins:
        raise Exception("No active system admin found after migration")

    print("\n✓ Migration verification:")
    print(f"  System admins ({len(admins)}):")
    for admin in admins:
        print(f"    - ID: {admin[0]}, Name: {admin[1]}, Email: {admin[2]}")


def migrate():
    """Run the complete migration."""
    db_file = get_db_path()

    print(f"Starting system admin migration for database: {db_file}")
    print("=" * 60)

    if not os.path.exists(db_file):
        print(f"Error: Database file not found at {db_file}")
        print("Run create_schema.py first.")
        sys.exit(1)

    conn = None
    try:
        conn = sqlite3.connect(db_file)
        print("✓ Connected to database")

        create_system_admin(conn)

        conn.commit()
        print("\n✓ All changes committed")

        verify_migration(conn)

        print("\n" + "=" * 60)
        print("Migration completed successfully! ✓")

    except sqlite3.Error as e:
        print(f"\n✗ Database error: {e}")
        if conn:
            conn.rollback()
            print("✓ Changes rolled back")
        sys.exit(1)

    except Exception as e:
        print(f"\n✗ Error: {e}")
        if conn:
            conn.rollback()
            print("✓ Changes rolled back")
        sys.exit(1)

    finally:
        if conn:
            conn.close()
            print("✓ Database connection closed")


if __name__ == '__main__':
    migrate()
