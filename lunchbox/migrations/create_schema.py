"""
Migration script to create the lunchbox delivery schema.

This migration adds:
- User, School, Child, Booking, Delivery, DeliveryRoute, Payment,
  Subscription and Notification tables
- Foreign key constraints between them
- Indexes for the common lookups (tracking code, staff, school, parent)
- Triggers keeping updated_at current and refusing changes to a
  delivery's tracking code
"""

import sqlite3
import os
import sys


TABLES = {
    "School": '''
        CREATE TABLE IF NOT EXISTS School (
            school_id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            address TEXT,
            phone TEXT,
            email TEXT,
            lunch_time_start TEXT DEFAULT '12:00',
            lunch_time_end TEXT DEFAULT '13:00',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''',
    "User": '''
        CREATE TABLE IF NOT EXISTS User (
            usr_id INTEGER PRIMARY KEY AUTOINCREMENT,
            full_name TEXT NOT NULL,
            email TEXT NOT NULL UNIQUE,
            phone TEXT,
            password_HS TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'parent',
            school_id INTEGER,
            address TEXT,
            service_area TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (school_id) REFERENCES School(school_id)
        )
    ''',
    "Child": '''
        CREATE TABLE IF NOT EXISTS Child (
            child_id INTEGER PRIMARY KEY AUTOINCREMENT,
            parent_id INTEGER NOT NULL,
            school_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            class_name TEXT,
            allergies TEXT,
            special_notes TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (parent_id) REFERENCES User(usr_id),
            FOREIGN KEY (school_id) REFERENCES School(school_id)
        )
    ''',
    "Booking": '''
        CREATE TABLE IF NOT EXISTS Booking (
            booking_id INTEGER PRIMARY KEY AUTOINCREMENT,
            child_id INTEGER NOT NULL,
            parent_id INTEGER NOT NULL,
            delivery_date TEXT NOT NULL,
            pickup_time TEXT NOT NULL,
            delivery_time TEXT NOT NULL,
            special_instructions TEXT,
            is_recurring INTEGER NOT NULL DEFAULT 0,
            recurring_pattern TEXT,
            recurring_end_date TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (child_id) REFERENCES Child(child_id),
            FOREIGN KEY (parent_id) REFERENCES User(usr_id)
        )
    ''',
    "Delivery": '''
        CREATE TABLE IF NOT EXISTS Delivery (
            delivery_id INTEGER PRIMARY KEY AUTOINCREMENT,
            booking_id INTEGER NOT NULL,
            delivery_staff_id INTEGER,
            school_id INTEGER NOT NULL,
            scheduled_date TEXT NOT NULL,
            pickup_address TEXT,
            qr_code TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'assigned',
            pickup_time_actual TEXT,
            delivery_time_actual TEXT,
            pickup_proof TEXT,
            delivery_proof TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (booking_id, scheduled_date),
            FOREIGN KEY (booking_id) REFERENCES Booking(booking_id),
            FOREIGN KEY (delivery_staff_id) REFERENCES User(usr_id),
            FOREIGN KEY (school_id) REFERENCES School(school_id)
        )
    ''',
    "DeliveryRoute": '''
        CREATE TABLE IF NOT EXISTS DeliveryRoute (
            route_id INTEGER PRIMARY KEY AUTOINCREMENT,
            delivery_staff_id INTEGER NOT NULL,
            route_date TEXT NOT NULL,
            deliveries TEXT NOT NULL DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'in_progress',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (delivery_staff_id) REFERENCES User(usr_id)
        )
    ''',
    "Payment": '''
        CREATE TABLE IF NOT EXISTS Payment (
            payment_id INTEGER PRIMARY KEY AUTOINCREMENT,
            usr_id INTEGER NOT NULL,
            booking_id INTEGER,
            amount_cents INTEGER NOT NULL,
            currency TEXT NOT NULL DEFAULT 'INR',
            payment_method TEXT NOT NULL DEFAULT 'card',
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (usr_id) REFERENCES User(usr_id),
            FOREIGN KEY (booking_id) REFERENCES Booking(booking_id)
        )
    ''',
    "Subscription": '''
        CREATE TABLE IF NOT EXISTS Subscription (
            subscription_id INTEGER PRIMARY KEY AUTOINCREMENT,
            usr_id INTEGER NOT NULL,
            plan_type TEXT NOT NULL,
            amount_cents INTEGER NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (usr_id) REFERENCES User(usr_id)
        )
    ''',
    "Notification": '''
        CREATE TABLE IF NOT EXISTS Notification (
            notification_id INTEGER PRIMARY KEY AUTOINCREMENT,
            usr_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'info',
            is_read INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (usr_id) REFERENCES User(usr_id)
        )
    ''',
}

INDEXES = [
    ("idx_delivery_qr_code", "CREATE UNIQUE INDEX IF NOT EXISTS idx_delivery_qr_code ON Delivery(qr_code)"),
    ("idx_delivery_staff", "CREATE INDEX IF NOT EXISTS idx_delivery_staff ON Delivery(delivery_staff_id, scheduled_date)"),
    ("idx_delivery_school", "CREATE INDEX IF NOT EXISTS idx_delivery_school ON Delivery(school_id, scheduled_date)"),
    ("idx_delivery_booking", "CREATE INDEX IF NOT EXISTS idx_delivery_booking ON Delivery(booking_id)"),
    ("idx_booking_parent", "CREATE INDEX IF NOT EXISTS idx_booking_parent ON Booking(parent_id, created_at DESC)"),
    ("idx_child_parent", "CREATE INDEX IF NOT EXISTS idx_child_parent ON Child(parent_id)"),
    ("idx_payment_usr", "CREATE INDEX IF NOT EXISTS idx_payment_usr ON Payment(usr_id, created_at DESC)"),
    ("idx_notification_usr", "CREATE INDEX IF NOT EXISTS idx_notification_usr ON Notification(usr_id, is_read)"),
]

# Tables whose updated_at is maintained by trigger, with their key column
TIMESTAMPED = {
    "School": "school_id",
    "User": "usr_id",
    "Child": "child_id",
    "Booking": "booking_id",
    "DeliveryRoute": "route_id",
    "Payment": "payment_id",
    "Subscription": "subscription_id",
}


def get_db_path():
    """Get the path to the database file."""
    db_file = os.environ.get("LUNCHBOX_DB") or os.path.join(os.path.dirname(__file__), '..', 'lunchbox.db')
    return os.path.abspath(db_file)


def create_tables(conn):
    """Create every table that does not exist yet."""
    cursor = conn.cursor()
    for name, ddl in TABLES.items():
        cursor.execute(ddl)


def create_indexes(conn):
    """Create database indexes for the common lookups."""
    cursor = conn.cursor()
    for _, ddl in INDEXES:
        cursor.execute(ddl)


def create_triggers(conn):
    """
    Create triggers for updated_at maintenance and tracking-code immutability.

    Delivery has no updated_at trigger: lifecycle writes updated_at itself in
    the same conditional UPDATE that moves the status.
    """
    cursor = conn.cursor()

    for table, key in TIMESTAMPED.items():
        trigger = f"update_{table.lower()}_timestamp"
        cursor.execute(f'DROP TRIGGER IF EXISTS {trigger}')
        cursor.execute(f'''
            CREATE TRIGGER {trigger}
            AFTER UPDATE ON "{table}"
            FOR EACH ROW
            WHEN NEW.updated_at = OLD.updated_at
            BEGIN
                UPDATE "{table}" SET updated_at = CURRENT_TIMESTAMP
                WHERE {key} = NEW.{key};
            END
        ''')

    cursor.execute('DROP TRIGGER IF EXISTS delivery_qr_code_immutable')
    cursor.execute('''
        CREATE TRIGGER delivery_qr_code_immutable
        BEFORE UPDATE OF qr_code ON Delivery
        FOR EACH ROW
        WHEN NEW.qr_code IS NOT OLD.qr_code
        BEGIN
            SELECT RAISE(ABORT, 'tracking code is immutable');
        END
    ''')


def apply_schema(conn):
    """Create tables, indexes and triggers and commit. Safe to run repeatedly."""
    conn.execute("PRAGMA foreign_keys = ON")
    create_tables(conn)
    create_indexes(conn)
    create_triggers(conn)
    conn.commit()


def verify_table_structure(conn):
    """Verify that every table, the tracking-code index and the triggers exist."""
    cursor = conn.cursor()

    print("\n✓ Table structure verification:")
    for name in TABLES:
        cursor.execute(f'PRAGMA table_info("{name}")')
        columns = cursor.fetchall()
        if not columns:
            raise Exception(f"{name} table was not created successfully")
        print(f"  - {name}: {len(columns)} columns")

    cursor.execute("""
        SELECT name FROM sqlite_master
        WHERE type='index' AND name='idx_delivery_qr_code'
    """)
    if not cursor.fetchone():
        raise Exception("Tracking code index was not created successfully")
    print("  - Index: idx_delivery_qr_code")

    cursor.execute("SELECT name FROM sqlite_master WHERE type='trigger'")
    triggers = [row[0] for row in cursor.fetchall()]
    print("  Triggers:")
    for trigger in triggers:
        print(f"    - {trigger}")

    if 'delivery_qr_code_immutable' not in triggers:
        raise Exception("Tracking code trigger was not created successfully")


def migrate():
    """Run the complete migration."""
    db_file = get_db_path()

    print(f"Starting schema migration for database: {db_file}")
    print("=" * 60)

    conn = None
    try:
        conn = sqlite3.connect(db_file)
        print("✓ Connected to database")

        apply_schema(conn)
        print("✓ Tables, indexes and triggers created")

        verify_table_structure(conn)

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
