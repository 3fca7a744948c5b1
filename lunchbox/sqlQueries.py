import logging
import sqlite3

from lunchbox.errors import BackendTimeout

logger = logging.getLogger(__name__)

# Seconds a statement may wait on a locked database before giving up
DEFAULT_TIMEOUT = 5.0


def _reraise(e: sqlite3.Error):
    """Re-raise a sqlite3 error, turning lock/busy waits into BackendTimeout."""
    msg = str(e).lower()
    if isinstance(e, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg):
        raise BackendTimeout("Database did not respond in time, please retry") from e
    raise e


def create_connection(db_file: str, timeout: float = None):
    """
    Create and return a connection to the specified SQLite database.
    Args:
        db_file (str): Path to the SQLite database file.
        timeout (float, optional): Seconds to wait on a locked database.
    Returns:
        sqlite3.Connection: Connection with sqlite3.Row rows and foreign keys on.
    Raises:
        BackendTimeout: If the database stays locked for longer than ``timeout``.
    """
    try:
        conn = sqlite3.connect(db_file, timeout=DEFAULT_TIMEOUT if timeout is None else timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
    except sqlite3.Error as e:
        logger.error("Could not open database %s: %s", db_file, e)
        _reraise(e)
    return conn


def close_connection(conn):
    """
    Close an existing SQLite database connection.
    Args:
        conn (sqlite3.Connection): Connection object to close.
    Returns:
        None
    """
    if conn:
        conn.close()


def execute_query(conn, query: str, params=(), commit: bool = True):
    """
    Execute a single SQL query with optional parameters.
    Args:
        conn (sqlite3.Connection): Active database connection.
        query (str): SQL query string to execute.
        params (tuple, optional): Parameters to safely substitute into the query.
        commit (bool): Commit right away. Pass False when the statement is one
            step of a larger unit the caller commits or rolls back itself.
    Returns:
        sqlite3.Cursor: Cursor of the executed statement.
    Raises:
        BackendTimeout: If the database is locked past the connection timeout.
        sqlite3.Error: Any other database failure, after logging it.
    """
    try:
        cur = conn.cursor()
        cur.execute(query, params)
        if commit:
            conn.commit()
        return cur
    except sqlite3.Error as e:
        logger.warning("Query failed: %s", e)
        _reraise(e)


def commit(conn):
    """
    Commit the open transaction of a connection.
    Args:
        conn (sqlite3.Connection): Active database connection.
    Raises:
        BackendTimeout: If readers keep the database locked past the connection timeout.
        sqlite3.Error: Any other database failure, after logging it.
    """
    try:
        conn.commit()
    except sqlite3.Error as e:
        logger.warning("Commit failed: %s", e)
        _reraise(e)


def fetch_all(conn, query: str, params=()):
    """
    Execute a query and return all fetched rows.
    Args:
        conn (sqlite3.Connection): Active database connection.
        query (str): SQL query string to execute.
        params (tuple, optional): Parameters to safely substitute into the query.
    Returns:
        list[sqlite3.Row]: Result rows, empty list if none.
    """
    cur = execute_query(conn, query, params, commit=False)
    return cur.fetchall()


def fetch_one(conn, query: str, params=()):
    """
    Execute a query and return the first result row.
    Args:
        conn (sqlite3.Connection): Active database connection.
        query (str): SQL query string to execute.
        params (tuple, optional): Parameters to safely substitute into the query.
    Returns:
        sqlite3.Row | None: The first row, or None if no result.
    """
    cur = execute_query(conn, query, params, commit=False)
    return cur.fetchone()


def row_to_dict(row):
    """Convert a sqlite3.Row into a plain dict (None stays None)."""
    return dict(row) if row is not None else None


def rows_to_dicts(rows):
    return [dict(r) for r in rows]


def update_fields(conn, table: str, key_column: str, key, fields: dict, allowed, commit: bool = True):
    """
    Update the whitelisted columns of a single row.

    Columns not in ``allowed`` are ignored, so request payloads can be passed
    straight through.

    Args:
        conn (sqlite3.Connection): Active database connection.
        table (str): Table name (internal constant, never user input).
        key_column (str): Primary key column.
        key: Primary key value.
        fields (dict): Candidate column -> value pairs.
        allowed (Iterable[str]): Columns that may be written.
    Returns:
        bool: True if a row matched the key.
    """
    cols = [c for c in fields if c in allowed]
    if not cols:
        row = fetch_one(conn, f'SELECT 1 FROM "{table}" WHERE {key_column} = ?', (key,))
        return row is not None
    assignments = ", ".join(f"{c} = ?" for c in cols)
    params = tuple(fields[c] for c in cols) + (key,)
    cur = execute_query(conn, f'UPDATE "{table}" SET {assignments} WHERE {key_column} = ?', params, commit=commit)
    return cur.rowcount > 0


def count_rows(conn, table: str, where: str = "", params=()):
    """Count rows of an internal table, optionally filtered by a WHERE clause."""
    sql = f'SELECT COUNT(*) FROM "{table}"'
    if where:
        sql += f" WHERE {where}"
    return fetch_one(conn, sql, params)[0]


# ============================================================================
# Users
# ============================================================================

USER_COLUMNS = "usr_id, full_name, email, phone, role, school_id, address, service_area, is_active, created_at, updated_at"
USER_EDITABLE = ("full_name", "phone", "role", "school_id", "address", "service_area")
# Columns a user may change on their own profile
PROFILE_EDITABLE = ("full_name", "phone", "address", "service_area")


def create_user(conn, full_name, email, phone, password_hash, role, school_id=None, address=None, service_area=None):
    """
    Insert a new user.

    Raises:
        sqlite3.IntegrityError: If the email is already registered.
    Returns:
        int: The new usr_id.
    """
    cur = execute_query(conn, '''
        INSERT INTO User (full_name, email, phone, password_HS, role, school_id, address, service_area)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ''', (full_name, email, phone, password_hash, role, school_id, address, service_area))
    return cur.lastrowid


def get_user(conn, usr_id: int):
    return fetch_one(conn, f'SELECT {USER_COLUMNS} FROM User WHERE usr_id = ?', (usr_id,))


def get_user_credentials(conn, email: str):
    """Fetch the row used by login, password hash included."""
    return fetch_one(conn, f'SELECT {USER_COLUMNS}, password_HS FROM User WHERE email = ?', (email,))


def list_users(conn, role: str = None):
    if role:
        return fetch_all(conn, f'SELECT {USER_COLUMNS} FROM User WHERE role = ? ORDER BY created_at DESC, usr_id DESC', (role,))
    return fetch_all(conn, f'SELECT {USER_COLUMNS} FROM User ORDER BY created_at DESC, usr_id DESC')


def update_user(conn, usr_id: int, fields: dict):
    return update_fields(conn, "User", "usr_id", usr_id, fields, USER_EDITABLE)


def update_profile(conn, usr_id: int, fields: dict):
    return update_fields(conn, "User", "usr_id", usr_id, fields, PROFILE_EDITABLE)


def get_password_hash(conn, usr_id: int):
    row = fetch_one(conn, 'SELECT password_HS FROM User WHERE usr_id = ?', (usr_id,))
    return row[0] if row else None


def set_password_hash(conn, usr_id: int, password_hash: str):
    cur = execute_query(conn, 'UPDATE User SET password_HS = ? WHERE usr_id = ?', (password_hash, usr_id))
    return cur.rowcount > 0


def set_user_active(conn, usr_id: int, active: bool):
    cur = execute_query(conn, 'UPDATE User SET is_active = ? WHERE usr_id = ?', (1 if active else 0, usr_id))
    return cur.rowcount > 0


# ============================================================================
# Schools
# ============================================================================

SCHOOL_EDITABLE = ("name", "address", "phone", "email", "lunch_time_start", "lunch_time_end")


def create_school(conn, name, address=None, phone=None, email=None, lunch_time_start='12:00', lunch_time_end='13:00'):
    cur = execute_query(conn, '''
        INSERT INTO School (name, address, phone, email, lunch_time_start, lunch_time_end)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', (name, address, phone, email, lunch_time_start, lunch_time_end))
    return cur.lastrowid


def get_school(conn, school_id: int):
    return fetch_one(conn, 'SELECT * FROM School WHERE school_id = ?', (school_id,))


def list_schools(conn, active_only: bool = False):
    if active_only:
        return fetch_all(conn, 'SELECT * FROM School WHERE is_active = 1 ORDER BY name')
    return fetch_all(conn, 'SELECT * FROM School ORDER BY name')


def update_school(conn, school_id: int, fields: dict):
    return update_fields(conn, "School", "school_id", school_id, fields, SCHOOL_EDITABLE)


def set_school_active(conn, school_id: int, active: bool):
    cur = execute_query(conn, 'UPDATE School SET is_active = ? WHERE school_id = ?', (1 if active else 0, school_id))
    return cur.rowcount > 0


# ============================================================================
# Children
# ============================================================================

CHILD_EDITABLE = ("name", "class_name", "school_id", "allergies", "special_notes")


def create_child(conn, parent_id, school_id, name, class_name=None, allergies=None, special_notes=None):
    cur = execute_query(conn, '''
        INSERT INTO Child (parent_id, school_id, name, class_name, allergies, special_notes)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', (parent_id, school_id, name, class_name, allergies, special_notes))
    return cur.lastrowid


def get_child(conn, child_id: int):
    return fetch_one(conn, 'SELECT * FROM Child WHERE child_id = ?', (child_id,))


def list_children_by_parent(conn, parent_id: int, include_inactive: bool = False):
    """
    Fetch a parent's children, oldest profile first.
    Args:
        conn (sqlite3.Connection): Active database connection.
        parent_id (int): Owning parent.
        include_inactive (bool): Also return deactivated profiles.
    Returns:
        list[sqlite3.Row]: Child rows joined with the school name.
    """
    sql = '''
        SELECT c.*, s.name AS school_name
        FROM Child c
        LEFT JOIN School s ON s.school_id = c.school_id
        WHERE c.parent_id = ?
    '''
    if not include_inactive:
        sql += ' AND c.is_active = 1'
    sql += ' ORDER BY c.child_id'
    return fetch_all(conn, sql, (parent_id,))


def update_child(conn, child_id: int, fields: dict):
    return update_fields(conn, "Child", "child_id", child_id, fields, CHILD_EDITABLE)


def set_child_active(conn, child_id: int, active: bool):
    cur = execute_query(conn, 'UPDATE Child SET is_active = ? WHERE child_id = ?', (1 if active else 0, child_id))
    return cur.rowcount > 0


# ============================================================================
# Bookings
# ============================================================================

def insert_booking(conn, child_id, parent_id, delivery_date, pickup_time, delivery_time,
                   special_instructions=None, is_recurring=False, recurring_pattern=None,
                   recurring_end_date=None, status='pending', commit: bool = True):
    """
    Insert a booking row.

    Returns:
        int: The new booking_id.
    """
    cur = execute_query(conn, '''
        INSERT INTO Booking (child_id, parent_id, delivery_date, pickup_time, delivery_time,
                             special_instructions, is_recurring, recurring_pattern,
                             recurring_end_date, status)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ''', (child_id, parent_id, delivery_date, pickup_time, delivery_time, special_instructions,
          1 if is_recurring else 0, recurring_pattern, recurring_end_date, status), commit=commit)
    return cur.lastrowid


def get_booking(conn, booking_id: int):
    return fetch_one(conn, 'SELECT * FROM Booking WHERE booking_id = ?', (booking_id,))


def list_bookings_by_parent(conn, parent_id: int, limit: int = None):
    """Newest bookings first, joined with the child's name."""
    sql = '''
        SELECT b.*, c.name AS child_name
        FROM Booking b
        LEFT JOIN Child c ON c.child_id = b.child_id
        WHERE b.parent_id = ?
        ORDER BY b.created_at DESC, b.booking_id DESC
    '''
    params = (parent_id,)
    if limit:
        sql += ' LIMIT ?'
        params = (parent_id, limit)
    return fetch_all(conn, sql, params)


def list_all_bookings(conn, status: str = None):
    if status:
        return fetch_all(conn, 'SELECT * FROM Booking WHERE status = ? ORDER BY booking_id DESC', (status,))
    return fetch_all(conn, 'SELECT * FROM Booking ORDER BY booking_id DESC')


def update_booking_status(conn, booking_id: int, new_status: str, expected_status: str = None, commit: bool = True):
    """
    Write a booking's status.

    Args:
        conn (sqlite3.Connection): Active database connection.
        booking_id (int): Booking to update.
        new_status (str): Status to store.
        expected_status (str, optional): Only update if the stored status still equals this.
        commit (bool): Commit right away.
    Returns:
        bool: True if a row was updated.
    """
    if expected_status is None:
        cur = execute_query(conn, 'UPDATE Booking SET status = ? WHERE booking_id = ?',
                            (new_status, booking_id), commit=commit)
    else:
        cur = execute_query(conn, 'UPDATE Booking SET status = ? WHERE booking_id = ? AND status = ?',
                            (new_status, booking_id, expected_status), commit=commit)
    return cur.rowcount > 0


# ============================================================================
# Deliveries
# ============================================================================

DELIVERY_DETAIL_SQL = '''
    SELECT d.*,
           b.parent_id, b.child_id, b.delivery_time, b.pickup_time,
           b.special_instructions, b.status AS booking_status,
           c.name AS child_name, c.class_name,
           s.name AS school_name, s.address AS school_address
    FROM Delivery d
    JOIN Booking b ON b.booking_id = d.booking_id
    LEFT JOIN Child c ON c.child_id = b.child_id
    LEFT JOIN School s ON s.school_id = d.school_id
'''


def insert_delivery(conn, booking_id, school_id, scheduled_date, qr_code, pickup_address=None,
                    delivery_staff_id=None, status='assigned', commit: bool = True):
    """
    Insert a delivery row.

    Raises:
        sqlite3.IntegrityError: If the tracking code is already taken.
    Returns:
        int: The new delivery_id.
    """
    cur = execute_query(conn, '''
        INSERT INTO Delivery (booking_id, delivery_staff_id, school_id, scheduled_date,
                              pickup_address, qr_code, status)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', (booking_id, delivery_staff_id, school_id, scheduled_date, pickup_address, qr_code, status),
        commit=commit)
    return cur.lastrowid


def get_delivery(conn, delivery_id: int):
    return fetch_one(conn, 'SELECT * FROM Delivery WHERE delivery_id = ?', (delivery_id,))


def get_delivery_by_qr(conn, qr_code: str):
    """
    Look up a delivery by its tracking code.

    The comparison uses SQLite's default BINARY collation, so it is
    exact-match and case-sensitive; the UNIQUE constraint guarantees at most
    one row.
    """
    return fetch_one(conn, 'SELECT * FROM Delivery WHERE qr_code = ?', (qr_code,))


def get_delivery_detail(conn, delivery_id: int):
    return fetch_one(conn, DELIVERY_DETAIL_SQL + ' WHERE d.delivery_id = ?', (delivery_id,))


def list_deliveries_by_booking(conn, booking_id: int):
    return fetch_all(conn, 'SELECT * FROM Delivery WHERE booking_id = ? ORDER BY scheduled_date', (booking_id,))


def list_deliveries_for_staff(conn, staff_id: int, day: str = None):
    """Deliveries assigned to a staff member, optionally for a single scheduled date."""
    if day:
        return fetch_all(conn, DELIVERY_DETAIL_SQL + '''
            WHERE d.delivery_staff_id = ? AND d.scheduled_date = ?
            ORDER BY b.delivery_time, d.delivery_id
        ''', (staff_id, day))
    return fetch_all(conn, DELIVERY_DETAIL_SQL + '''
        WHERE d.delivery_staff_id = ?
        ORDER BY d.scheduled_date, b.delivery_time, d.delivery_id
    ''', (staff_id,))


def list_deliveries_for_school(conn, school_id: int, day: str):
    return fetch_all(conn, DELIVERY_DETAIL_SQL + '''
        WHERE d.school_id = ? AND d.scheduled_date = ?
        ORDER BY b.delivery_time, d.delivery_id
    ''', (school_id, day))


def list_active_deliveries_for_parent(conn, parent_id: int, statuses):
    qmarks = ",".join(["?"] * len(statuses))
    return fetch_all(conn, DELIVERY_DETAIL_SQL + f'''
        WHERE b.parent_id = ? AND d.status IN ({qmarks})
        ORDER BY d.scheduled_date, d.delivery_id
    ''', (parent_id, *statuses))


def update_delivery_status_if(conn, delivery_id: int, expected_status: str, new_status: str,
                              updated_at: str, extra_fields: dict = None, commit: bool = True):
    """
    Move a delivery to ``new_status`` only if it is still in ``expected_status``.

    This is the optimistic check behind every lifecycle transition: when a
    concurrent writer got there first no row matches and nothing is written.

    Args:
        conn (sqlite3.Connection): Active database connection.
        delivery_id (int): Delivery to update.
        expected_status (str): Status the caller read before deciding.
        new_status (str): Status to store.
        updated_at (str): Timestamp written to updated_at.
        extra_fields (dict, optional): Timestamp columns written with the status.
        commit (bool): Commit right away.
    Returns:
        bool: True if the row was still in ``expected_status`` and got updated.
    """
    extra_fields = extra_fields or {}
    allowed = ("pickup_time_actual", "delivery_time_actual", "pickup_proof", "delivery_proof")
    cols = [c for c in extra_fields if c in allowed]
    sets = ["status = ?", "updated_at = ?"] + [f"{c} = ?" for c in cols]
    params = [new_status, updated_at] + [extra_fields[c] for c in cols] + [delivery_id, expected_status]
    cur = execute_query(conn, f'''
        UPDATE Delivery SET {", ".join(sets)}
        WHERE delivery_id = ? AND status = ?
    ''', tuple(params), commit=commit)
    return cur.rowcount > 0


def assign_delivery_staff_if(conn, delivery_id: int, staff_id: int, expected_status: str, updated_at: str):
    cur = execute_query(conn, '''
        UPDATE Delivery SET delivery_staff_id = ?, updated_at = ?
        WHERE delivery_id = ? AND status = ?
    ''', (staff_id, updated_at, delivery_id, expected_status))
    return cur.rowcount > 0


# ============================================================================
# Delivery routes
# ============================================================================

def insert_route(conn, staff_id: int, route_date: str, deliveries_json: str, status: str = 'in_progress'):
    cur = execute_query(conn, '''
        INSERT INTO DeliveryRoute (delivery_staff_id, route_date, deliveries, status)
        VALUES (?, ?, ?, ?)
    ''', (staff_id, route_date, deliveries_json, status))
    return cur.lastrowid


def get_route(conn, route_id: int):
    return fetch_one(conn, 'SELECT * FROM DeliveryRoute WHERE route_id = ?', (route_id,))


def get_route_for_day(conn, staff_id: int, route_date: str, status: str):
    return fetch_one(conn, '''
        SELECT * FROM DeliveryRoute
        WHERE delivery_staff_id = ? AND route_date = ? AND status = ?
        ORDER BY route_id DESC LIMIT 1
    ''', (staff_id, route_date, status))


def list_routes_for_staff(conn, staff_id: int, limit: int = 10):
    return fetch_all(conn, '''
        SELECT * FROM DeliveryRoute WHERE delivery_staff_id = ?
        ORDER BY route_date DESC, route_id DESC LIMIT ?
    ''', (staff_id, limit))


def update_route_status_if(conn, route_id: int, expected_status: str, new_status: str):
    cur = execute_query(conn, 'UPDATE DeliveryRoute SET status = ? WHERE route_id = ? AND status = ?',
                        (new_status, route_id, expected_status))
    return cur.rowcount > 0


# ============================================================================
# Payments & subscriptions
# ============================================================================

def insert_payment(conn, usr_id, amount_cents, status, currency='INR', payment_method='card',
                   booking_id=None, commit: bool = True):
    cur = execute_query(conn, '''
        INSERT INTO Payment (usr_id, booking_id, amount_cents, currency, payment_method, status)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', (usr_id, booking_id, amount_cents, currency, payment_method, status), commit=commit)
    return cur.lastrowid


def list_payments_by_user(conn, usr_id: int):
    return fetch_all(conn, 'SELECT * FROM Payment WHERE usr_id = ? ORDER BY created_at DESC, payment_id DESC', (usr_id,))


def sum_payments(conn, status: str, usr_id: int = None):
    """Total amount in cents of payments with ``status``, optionally for one user."""
    if usr_id is None:
        row = fetch_one(conn, 'SELECT COALESCE(SUM(amount_cents), 0) FROM Payment WHERE status = ?', (status,))
    else:
        row = fetch_one(conn, 'SELECT COALESCE(SUM(amount_cents), 0) FROM Payment WHERE status = ? AND usr_id = ?',
                        (status, usr_id))
    return row[0]


def insert_subscription(conn, usr_id, plan_type, amount_cents, start_date, end_date, commit: bool = True):
    cur = execute_query(conn, '''
        INSERT INTO Subscription (usr_id, plan_type, amount_cents, start_date, end_date, status)
        VALUES (?, ?, ?, ?, ?, 'active')
    ''', (usr_id, plan_type, amount_cents, start_date, end_date), commit=commit)
    return cur.lastrowid


def expire_subscriptions(conn, usr_id: int, today: str):
    """
    Mark a user's active subscriptions whose end_date is before ``today`` as expired.
    Args:
        conn (sqlite3.Connection): Active database connection.
        usr_id (int): Subscriber.
        today (str): Reference date as YYYY-MM-DD.
    Returns:
        int: Number of subscriptions expired.
    """
    cur = execute_query(conn, '''
        UPDATE Subscription SET status = 'expired'
        WHERE usr_id = ? AND status = 'active' AND end_date < ?
    ''', (usr_id, today))
    return cur.rowcount


def get_active_subscription(conn, usr_id: int):
    return fetch_one(conn, '''
        SELECT * FROM Subscription WHERE usr_id = ? AND status = 'active'
        ORDER BY subscription_id DESC LIMIT 1
    ''', (usr_id,))


def update_subscription_status(conn, subscription_id: int, new_status: str):
    cur = execute_query(conn, 'UPDATE Subscription SET status = ? WHERE subscription_id = ?',
                        (new_status, subscription_id))
    return cur.rowcount > 0


# ============================================================================
# Notifications
# ============================================================================

def insert_notification(conn, usr_id, title, message, type_='info', commit: bool = True):
    cur = execute_query(conn, '''
        INSERT INTO Notification (usr_id, title, message, type)
        VALUES (?, ?, ?, ?)
    ''', (usr_id, title, message, type_), commit=commit)
    return cur.lastrowid


def list_notifications(conn, usr_id: int, unread_only: bool = False):
    sql = 'SELECT * FROM Notification WHERE usr_id = ?'
    if unread_only:
        sql += ' AND is_read = 0'
    sql += ' ORDER BY created_at DESC, notification_id DESC'
    return fetch_all(conn, sql, (usr_id,))


def mark_notification_read(conn, notification_id: int, usr_id: int):
    cur = execute_query(conn, 'UPDATE Notification SET is_read = 1 WHERE notification_id = ? AND usr_id = ?',
                        (notification_id, usr_id))
    return cur.rowcount > 0
