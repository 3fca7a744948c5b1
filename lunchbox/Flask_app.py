import os
import re
import argparse
import logging
from functools import wraps
from sqlite3 import IntegrityError
from datetime import date, timedelta

from flask import Flask, jsonify, request, session, g
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from lunchbox import dashboards, lifecycle, payments, routing
from lunchbox.errors import AuthorizationError, LunchboxError, NotFound, ValidationError
from lunchbox.models import Actor, Role
from lunchbox.sqlQueries import (
    create_connection, close_connection, row_to_dict, rows_to_dicts,
    create_user, get_user, get_user_credentials, list_users, update_user, set_user_active,
    update_profile, get_password_hash, set_password_hash, PROFILE_EDITABLE,
    create_school, get_school, list_schools, update_school, set_school_active,
    create_child, get_child, list_children_by_parent, update_child, set_child_active,
    get_booking, list_bookings_by_parent, list_all_bookings, list_deliveries_by_booking,
    get_delivery_detail, list_notifications, mark_notification_read,
)

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('LUNCHBOX_SECRET_KEY', 'dev-secret-change-me')
app.config['DB_TIMEOUT_SECONDS'] = float(os.environ.get('LUNCHBOX_DB_TIMEOUT', '5'))
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(minutes=30)

db_file = os.environ.get('LUNCHBOX_DB') or os.path.join(os.path.dirname(__file__), 'lunchbox.db')

logger = logging.getLogger(__name__)

# Roles a user may pick when registering; admins are created by a system admin
SELF_SERVICE_ROLES = [Role.PARENT, Role.DELIVERY_STAFF]

# ---------------------- Helpers ----------------------

def _connect():
    """Open a connection to the configured database with the configured timeout."""
    return create_connection(db_file, timeout=app.config['DB_TIMEOUT_SECONDS'])


def _payload():
    """
    Return the JSON object body of the current request.
    Raises:
        ValidationError: If the request is not JSON or the body is not an object.
    """
    if not request.is_json:
        raise ValidationError("Request must be JSON")
    return _json_object()


def _json_object():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _form_or_json():
    """Login and registration accept either a JSON body or a posted form."""
    if request.is_json:
        return _json_object()
    return request.form


def _text(payload, key, strip=True):
    """String field of a payload ('' when absent); rejects numbers, lists and objects."""
    value = payload.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value.strip() if strip else value


def _int_field(payload, key, label):
    try:
        value = int(payload.get(key) or 0)
    except (ValueError, TypeError):
        raise ValidationError(f"Invalid {label}")
    if value <= 0:
        raise ValidationError(f"Invalid {label}")
    return value


def _valid_hhmm(value):
    return isinstance(value, str) and re.match(r"^([01]\d|2[0-3]):[0-5]\d$", value) is not None


def login_required(view):
    """
    Reject anonymous requests with 401 and expose the caller as g.actor.

    The user row is reloaded on every request so that a deactivation or a
    role or school change takes effect immediately; a session whose user no
    longer exists is cleared.
    """
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get("usr_id"):
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        conn = _connect()
        try:
            user = get_user(conn, session["usr_id"])
        finally:
            close_connection(conn)
        if user is None:
            session.clear()
            return jsonify({"ok": False, "error": "unauthorized"}), 401
        if not user["is_active"]:
            session.clear()
            return jsonify({"ok": False, "error": "Account is deactivated"}), 403
        g.actor = Actor.from_row(user)
        return view(*args, **kwargs)
    return wrapped


def roles_required(*roles):
    """Reject logged-in users whose role is not in ``roles`` with 403."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if g.actor.role not in roles:
                return jsonify({"ok": False, "error": "forbidden"}), 403
            return view(*args, **kwargs)
        return login_required(wrapped)
    return decorator


@app.errorhandler(LunchboxError)
def handle_domain_error(e):
    """Convert domain errors into the JSON error envelope with the kind's status code."""
    return jsonify({"ok": False, "error": e.message, "retryable": e.retryable}), e.http_status


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return jsonify({"ok": False, "error": e.description}), e.code
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"ok": False, "error": "Internal server error"}), 500


@app.route('/')
def root():
    return jsonify({"ok": True, "message": "Lunchbox delivery API running"})

# ---------------------- Auth ----------------------

@app.route('/register', methods=['POST'])
def register():
    """
    Create a parent or delivery staff account.
    Args:
        None (expects full_name, email, password, phone, optional role,
        confirm_password, address, service_area)
    Returns:
        Response: 201 with the new user, or 400 with a validation error.
    """
    data = _form_or_json()
    full_name = _text(data, 'full_name')
    email = _text(data, 'email').lower()
    phone = _text(data, 'phone')
    password = _text(data, 'password', strip=False)
    confirm_password = data.get('confirm_password')
    role = _text(data, 'role') or Role.PARENT

    if not full_name:
        raise ValidationError("Full name is required")
    if not email or not re.match(r"^[^@]+@[^@]+\.[^@]+$", email):
        raise ValidationError("Please enter a valid email address")
    if confirm_password is not None and password != confirm_password:
        raise ValidationError("Passwords do not match")
    if len(password) < 6:
        raise ValidationError("Password must be at least 6 characters")
    digits_only = re.sub(r"\D+", "", phone)
    if len(digits_only) < 7:
        raise ValidationError("Please enter a valid phone number")
    if role not in SELF_SERVICE_ROLES:
        raise ValidationError("Role must be parent or delivery_staff")

    conn = _connect()
    try:
        usr_id = create_user(
            conn, full_name, email, digits_only, generate_password_hash(password), role,
            address=_text(data, 'address') or None,
            service_area=_text(data, 'service_area') or None,
        )
        user = row_to_dict(get_user(conn, usr_id))
    except IntegrityError:
        raise ValidationError("Email already registered")
    finally:
        close_connection(conn)

    return jsonify({"ok": True, "user": user}), 201


@app.route('/login', methods=['POST'])
def login():
    """
    Authenticate user credentials and start a session.
    Args:
        None (expects email and password)
    Returns:
        Response: JSON with the user, 401 on bad credentials, 403 if deactivated.
    """
    data = _form_or_json()
    email = _text(data, "email").lower()
    password = _text(data, "password", strip=False)

    conn = _connect()
    try:
        user = get_user_credentials(conn, email)
    finally:
        close_connection(conn)

    if not user or not check_password_hash(user["password_HS"], password):
        return jsonify({"ok": False, "error": "Invalid credentials"}), 401
    if not user["is_active"]:
        return jsonify({"ok": False, "error": "Account is deactivated"}), 403

    session.clear()
    session["usr_id"] = user["usr_id"]
    session["role"] = user["role"]
    session["school_id"] = user["school_id"]
    session["Username"] = user["full_name"]
    session["Email"] = email
    session.permanent = True

    profile = dict(user)
    profile.pop("password_HS")
    return jsonify({"ok": True, "user": profile})


@app.route('/logout')
def logout():
    session.clear()
    return jsonify({"ok": True})


@app.route('/dashboard')
@login_required
def dashboard():
    """Role-specific dashboard for the logged-in user."""
    conn = _connect()
    try:
        data = dashboards.build_dashboard(conn, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "dashboard": data})

# ---------------------- Profile ----------------------

@app.route('/profile', methods=['GET'])
@login_required
def profile():
    """
    Show the logged-in user's account details.
    Returns:
        Response: JSON with the user (no password hash) and, for parents, the
        active subscription or null.
    """
    conn = _connect()
    try:
        user = row_to_dict(get_user(conn, g.actor.usr_id))
        subscription = None
        if g.actor.role == Role.PARENT:
            subscription = row_to_dict(payments.current_subscription(conn, g.actor.usr_id, date.today()))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "user": user, "subscription": subscription})


@app.route('/profile', methods=['POST'])
@login_required
def profile_edit():
    """
    Update the logged-in user's own details.

    Request Body:
        {"full_name": str, "phone": str, "address": str, "service_area": str}

    Role, school and email stay with the system admin; other keys are ignored.
    """
    payload = _payload()
    fields = {}
    for key in PROFILE_EDITABLE:
        if key in payload:
            fields[key] = _text(payload, key) or None
    if "full_name" in fields and not fields["full_name"]:
        raise ValidationError("Full name is required")
    if fields.get("phone") is not None:
        digits_only = re.sub(r"\D+", "", fields["phone"])
        if len(digits_only) < 7:
            raise ValidationError("Please enter a valid phone number")
        fields["phone"] = digits_only
    if not fields:
        raise ValidationError("Nothing to update")

    conn = _connect()
    try:
        update_profile(conn, g.actor.usr_id, fields)
        user = row_to_dict(get_user(conn, g.actor.usr_id))
    finally:
        close_connection(conn)
    if "full_name" in fields:
        session["Username"] = user["full_name"]
    return jsonify({"ok": True, "user": user})


@app.route('/profile/change-password', methods=['POST'])
@login_required
def change_password():
    """
    Change the logged-in user's password after checking the current one.
    Args:
        None (expects current_password, new_password, confirm_password)
    Returns:
        Response: JSON ok, or 400 with the reason the change was refused.
    """
    data = _form_or_json()
    current_password = _text(data, 'current_password')
    new_password = _text(data, 'new_password')
    confirm_password = _text(data, 'confirm_password')

    if not current_password:
        raise ValidationError("Current password is required")
    if len(new_password) < 6:
        raise ValidationError("Password must be at least 6 characters")
    if new_password != confirm_password:
        raise ValidationError("Passwords do not match")
    if new_password == current_password:
        raise ValidationError("New password must differ from the current one")

    conn = _connect()
    try:
        stored_hash = get_password_hash(conn, g.actor.usr_id)
        if not stored_hash or not check_password_hash(stored_hash, current_password):
            raise ValidationError("Current password is incorrect")
        set_password_hash(conn, g.actor.usr_id, generate_password_hash(new_password))
    finally:
        close_connection(conn)

    logger.info("User %s changed their password", g.actor.usr_id)
    return jsonify({"ok": True})

# ---------------------- Children ----------------------

def _owned_child(conn, child_id):
    child = get_child(conn, child_id)
    if child is None:
        raise NotFound("Child not found")
    if child["parent_id"] != g.actor.usr_id:
        raise AuthorizationError("You can only manage your own children")
    return child


def _check_school(conn, school_id):
    school = get_school(conn, school_id)
    if school is None or not school["is_active"]:
        raise ValidationError("Please select an active school")


@app.route('/children', methods=['GET'])
@roles_required(Role.PARENT)
def children_list():
    include_inactive = request.args.get("include_inactive") == "1"
    conn = _connect()
    try:
        children = rows_to_dicts(list_children_by_parent(conn, g.actor.usr_id, include_inactive))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "children": children})


@app.route('/children', methods=['POST'])
@roles_required(Role.PARENT)
def children_create():
    payload = _payload()
    name = _text(payload, "name")
    if not name:
        raise ValidationError("Child name is required")
    school_id = _int_field(payload, "school_id", "school ID")

    conn = _connect()
    try:
        _check_school(conn, school_id)
        child_id = create_child(conn, g.actor.usr_id, school_id, name,
                                class_name=payload.get("class_name"),
                                allergies=payload.get("allergies"),
                                special_notes=payload.get("special_notes"))
        child = row_to_dict(get_child(conn, child_id))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "child": child}), 201


@app.route('/children/<int:child_id>', methods=['POST'])
@roles_required(Role.PARENT)
def children_update(child_id: int):
    payload = _payload()
    conn = _connect()
    try:
        _owned_child(conn, child_id)
        if "school_id" in payload:
            payload["school_id"] = _int_field(payload, "school_id", "school ID")
            _check_school(conn, payload["school_id"])
        if "name" in payload and not _text(payload, "name"):
            raise ValidationError("Child name is required")
        update_child(conn, child_id, payload)
        child = row_to_dict(get_child(conn, child_id))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "child": child})


@app.route('/children/<int:child_id>/deactivate', methods=['POST'])
@roles_required(Role.PARENT)
def children_deactivate(child_id: int):
    conn = _connect()
    try:
        _owned_child(conn, child_id)
        set_child_active(conn, child_id, False)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "child_id": child_id, "is_active": False})

# ---------------------- Schools ----------------------

def _validate_school_payload(payload, creating):
    if creating and not _text(payload, "name"):
        raise ValidationError("School name is required")
    start = payload.get("lunch_time_start")
    end = payload.get("lunch_time_end")
    for label, value in (("lunch_time_start", start), ("lunch_time_end", end)):
        if value is not None and not _valid_hhmm(value):
            raise ValidationError(f"{label} must be a time in HH:MM format")
    if start and end and start >= end:
        raise ValidationError("Lunch time must start before it ends")


@app.route('/schools', methods=['GET'])
@login_required
def schools_list():
    active_only = g.actor.role != Role.SYSTEM_ADMIN
    conn = _connect()
    try:
        schools = rows_to_dicts(list_schools(conn, active_only=active_only))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "schools": schools})


@app.route('/schools', methods=['POST'])
@roles_required(Role.SYSTEM_ADMIN)
def schools_create():
    payload = _payload()
    _validate_school_payload(payload, creating=True)
    conn = _connect()
    try:
        school_id = create_school(
            conn, _text(payload, "name"), payload.get("address"), payload.get("phone"), payload.get("email"),
            payload.get("lunch_time_start") or '12:00', payload.get("lunch_time_end") or '13:00',
        )
        school = row_to_dict(get_school(conn, school_id))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "school": school}), 201


@app.route('/schools/<int:school_id>', methods=['POST'])
@roles_required(Role.SYSTEM_ADMIN)
def schools_update(school_id: int):
    payload = _payload()
    _validate_school_payload(payload, creating=False)
    conn = _connect()
    try:
        if not update_school(conn, school_id, payload):
            raise NotFound("School not found")
        school = row_to_dict(get_school(conn, school_id))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "school": school})


@app.route('/schools/<int:school_id>/toggle_active', methods=['POST'])
@roles_required(Role.SYSTEM_ADMIN)
def schools_toggle_active(school_id: int):
    conn = _connect()
    try:
        school = get_school(conn, school_id)
        if school is None:
            raise NotFound("School not found")
        set_school_active(conn, school_id, not school["is_active"])
        school = row_to_dict(get_school(conn, school_id))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "school": school})

# ---------------------- User management ----------------------

@app.route('/admin/users', methods=['GET'])
@roles_required(Role.SYSTEM_ADMIN)
def admin_users():
    role = request.args.get("role")
    if role and not Role.is_valid_role(role):
        raise ValidationError(f"Invalid role: {role}")
    conn = _connect()
    try:
        users = rows_to_dicts(list_users(conn, role))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "users": users})


@app.route('/admin/users/<int:usr_id>', methods=['POST'])
@roles_required(Role.SYSTEM_ADMIN)
def admin_update_user(usr_id: int):
    """
    Update a user's profile, role or school link.

    Request Body:
        {
            "full_name": str, "phone": str, "role": str,
            "school_id": int | null, "address": str, "service_area": str
        }
    """
    payload = _payload()
    if "role" in payload and not Role.is_valid_role(payload["role"]):
        raise ValidationError(f"Invalid role: {payload['role']}")

    conn = _connect()
    try:
        if payload.get("school_id") is not None:
            payload["school_id"] = _int_field(payload, "school_id", "school ID")
            _check_school(conn, payload["school_id"])
        if not update_user(conn, usr_id, payload):
            raise NotFound("User not found")
        user = row_to_dict(get_user(conn, usr_id))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "user": user})


@app.route('/admin/users/<int:usr_id>/toggle_active', methods=['POST'])
@roles_required(Role.SYSTEM_ADMIN)
def admin_toggle_user(usr_id: int):
    if usr_id == g.actor.usr_id:
        raise ValidationError("You cannot deactivate your own account")
    conn = _connect()
    try:
        user = get_user(conn, usr_id)
        if user is None:
            raise NotFound("User not found")
        set_user_active(conn, usr_id, not user["is_active"])
        user = row_to_dict(get_user(conn, usr_id))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "user": user})

# ---------------------- Bookings ----------------------

@app.route('/bookings', methods=['GET'])
@roles_required(Role.PARENT, Role.SYSTEM_ADMIN)
def bookings_list():
    conn = _connect()
    try:
        if g.actor.role == Role.PARENT:
            bookings = rows_to_dicts(list_bookings_by_parent(conn, g.actor.usr_id))
        else:
            bookings = rows_to_dicts(list_all_bookings(conn, request.args.get("status")))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "bookings": bookings})


@app.route('/bookings', methods=['POST'])
@login_required
def bookings_create():
    """
    Book a lunchbox delivery for one of the parent's children.

    Request Body:
        {
            "child_id": int,
            "delivery_date": "YYYY-MM-DD",
            "pickup_time": "HH:MM" (default 08:00),
            "delivery_time": "HH:MM" (default 12:00),
            "special_instructions": str (optional),
            "is_recurring": bool,
            "recurring_pattern": "daily" | "weekly",
            "recurring_end_date": "YYYY-MM-DD"
        }

    Response Body (Success, 201):
        {
            "ok": true,
            "booking": {..., "deliveries": [...]}
        }
    """
    payload = _payload()
    conn = _connect()
    try:
        booking = lifecycle.create_booking(conn, g.actor, payload)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "booking": booking}), 201


@app.route('/bookings/<int:booking_id>/cancel', methods=['POST'])
@login_required
def bookings_cancel(booking_id: int):
    conn = _connect()
    try:
        booking = lifecycle.cancel_booking(conn, booking_id, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "booking": booking})


@app.route('/bookings/<int:booking_id>/confirm', methods=['POST'])
@login_required
def bookings_confirm(booking_id: int):
    conn = _connect()
    try:
        booking = lifecycle.confirm_booking(conn, booking_id, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "booking": booking})


@app.route('/bookings/<int:booking_id>/assign', methods=['POST'])
@login_required
def bookings_assign(booking_id: int):
    staff_id = _int_field(_payload(), "staff_id", "staff ID")
    conn = _connect()
    try:
        assigned = lifecycle.assign_staff_to_booking(conn, booking_id, staff_id, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "booking_id": booking_id, "assigned": assigned})


@app.route('/bookings/<int:booking_id>/deliveries', methods=['GET'])
@login_required
def bookings_deliveries(booking_id: int):
    conn = _connect()
    try:
        booking = get_booking(conn, booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        if g.actor.role != Role.SYSTEM_ADMIN and booking["parent_id"] != g.actor.usr_id:
            raise NotFound("Booking not found")
        deliveries = rows_to_dicts(list_deliveries_by_booking(conn, booking_id))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "booking": row_to_dict(booking), "deliveries": deliveries})

# ---------------------- Deliveries ----------------------

@app.route('/deliveries/<int:delivery_id>/assign', methods=['POST'])
@login_required
def deliveries_assign(delivery_id: int):
    staff_id = _int_field(_payload(), "staff_id", "staff ID")
    conn = _connect()
    try:
        delivery = lifecycle.assign_staff(conn, delivery_id, staff_id, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "delivery": delivery})


@app.route('/deliveries/<int:delivery_id>/status', methods=['POST'])
@login_required
def deliveries_update_status(delivery_id: int):
    """
    Apply a lifecycle transition to a delivery.

    The transition is validated against the stored status and the logged-in
    user; when ``expected_status`` is sent and the delivery has moved on in
    the meantime the call fails with 409 and must be retried after reloading.

    Request Body:
        {
            "new_status": str,
            "expected_status": str (optional)
        }

    Response Body (Success):
        {
            "ok": true,
            "delivery_id": int,
            "new_status": str,
            "delivery": {...}
        }
    """
    payload = _payload()
    new_status = payload.get("new_status")
    if not new_status:
        raise ValidationError("Missing new_status parameter")

    conn = _connect()
    try:
        delivery = lifecycle.apply_transition(conn, delivery_id, new_status, g.actor,
                                              payload.get("expected_status"))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "delivery_id": delivery_id, "new_status": delivery["status"], "delivery": delivery})


@app.route('/deliveries/<int:delivery_id>/confirm_receipt', methods=['POST'])
@roles_required(Role.SCHOOL_ADMIN)
def deliveries_confirm_receipt(delivery_id: int):
    expected = _json_object().get("expected_status")
    conn = _connect()
    try:
        delivery = lifecycle.confirm_receipt(conn, delivery_id, g.actor, expected)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "delivery": delivery})


@app.route('/deliveries/<int:delivery_id>/report_missing', methods=['POST'])
@roles_required(Role.SCHOOL_ADMIN)
def deliveries_report_missing(delivery_id: int):
    expected = _json_object().get("expected_status")
    conn = _connect()
    try:
        delivery = lifecycle.report_missing(conn, delivery_id, g.actor, expected)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "delivery": delivery})


@app.route('/scan/<code>', methods=['GET'])
@login_required
def scan_lookup(code):
    """Resolve a scanned or typed tracking code and list the transitions offered to this user."""
    conn = _connect()
    try:
        delivery = lifecycle.lookup_delivery(conn, code)
        detail = row_to_dict(get_delivery_detail(conn, delivery["delivery_id"]))
    finally:
        close_connection(conn)
    return jsonify({
        "ok": True,
        "delivery": detail,
        "available_transitions": lifecycle.available_transitions(delivery, g.actor),
    })


@app.route('/scan/<code>', methods=['POST'])
@login_required
def scan_update(code):
    payload = _payload()
    new_status = payload.get("new_status")
    if not new_status:
        raise ValidationError("Missing new_status parameter")
    conn = _connect()
    try:
        delivery = lifecycle.scan_and_apply(conn, code, new_status, g.actor, payload.get("expected_status"))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "delivery": delivery})


def _may_track(detail, actor):
    """Parents see their own lunchboxes, staff their assigned ones, school admins their school's."""
    if actor.role == Role.SYSTEM_ADMIN:
        return True
    if actor.role == Role.PARENT:
        return detail["parent_id"] == actor.usr_id
    if actor.role == Role.DELIVERY_STAFF:
        return detail["delivery_staff_id"] == actor.usr_id
    if actor.role == Role.SCHOOL_ADMIN:
        return actor.school_id is not None and detail["school_id"] == actor.school_id
    return False


@app.route('/track/<code>', methods=['GET'])
@login_required
def track(code):
    """Delivery details for the tracking page, limited to deliveries the caller is involved in."""
    conn = _connect()
    try:
        delivery = lifecycle.lookup_delivery(conn, code)
        detail = row_to_dict(get_delivery_detail(conn, delivery["delivery_id"]))
    finally:
        close_connection(conn)
    if not _may_track(detail, g.actor):
        raise NotFound("Delivery not found")
    return jsonify({"ok": True, "delivery": detail})

# ---------------------- Delivery routes ----------------------

@app.route('/routes/today', methods=['GET'])
@roles_required(Role.DELIVERY_STAFF)
def routes_today():
    conn = _connect()
    try:
        data = routing.todays_deliveries(conn, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, **data})


@app.route('/routes', methods=['GET'])
@roles_required(Role.DELIVERY_STAFF)
def routes_history():
    conn = _connect()
    try:
        routes = routing.route_history(conn, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "routes": routes})


@app.route('/routes/start', methods=['POST'])
@roles_required(Role.DELIVERY_STAFF)
def routes_start():
    conn = _connect()
    try:
        route = routing.start_route(conn, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "route": route}), 201


@app.route('/routes/complete', methods=['POST'])
@roles_required(Role.DELIVERY_STAFF)
def routes_complete():
    conn = _connect()
    try:
        route = routing.complete_route(conn, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "route": route})

# ---------------------- Payments ----------------------

@app.route('/payments', methods=['GET'])
@login_required
def payments_overview():
    conn = _connect()
    try:
        data = payments.payment_summary(conn, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, **data, "plans": payments.list_plans()})


@app.route('/subscriptions', methods=['POST'])
@roles_required(Role.PARENT)
def subscriptions_create():
    plan_type = _payload().get("plan_type")
    if not plan_type:
        raise ValidationError("Missing plan_type parameter")
    conn = _connect()
    try:
        subscription = payments.subscribe(conn, g.actor, plan_type)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "subscription": subscription}), 201


@app.route('/subscriptions/cancel', methods=['POST'])
@roles_required(Role.PARENT)
def subscriptions_cancel():
    conn = _connect()
    try:
        subscription = payments.cancel_subscription(conn, g.actor)
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "subscription": subscription})

# ---------------------- Notifications ----------------------

@app.route('/notifications', methods=['GET'])
@login_required
def notifications_list():
    unread_only = request.args.get("unread") == "1"
    conn = _connect()
    try:
        items = rows_to_dicts(list_notifications(conn, g.actor.usr_id, unread_only))
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "notifications": items})


@app.route('/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def notifications_read(notification_id: int):
    conn = _connect()
    try:
        if not mark_notification_read(conn, notification_id, g.actor.usr_id):
            raise NotFound("Notification not found")
    finally:
        close_connection(conn)
    return jsonify({"ok": True, "notification_id": notification_id})


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Flask App for Lunchbox Delivery")
    parser.add_argument('--host', type=str, default='127.0.0.1', help='Host to run the Flask app on')
    parser.add_argument('--port', type=int, default=5000, help='Port to run the Flask app on')
    parser.add_argument('--db', type=str, default=None, help='Path to the SQLite database file')
    return parser.parse_args()


if __name__ == '__main__':
    # Create the schema first with: python -m lunchbox.migrations.create_schema
    args = parse_args()
    if args.db:
        db_file = args.db
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host=args.host, port=args.port, debug=True)
