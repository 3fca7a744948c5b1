"""
Booking creation and the delivery lifecycle.

Every status change on a delivery goes through apply_transition, whatever
screen it comes from (staff dashboard, QR scan, school receipt). The
transition is re-validated against the stored record and the acting user,
written with a conditional UPDATE guarded on the status that was read, and
projected onto the parent booking in the same transaction.
"""

import logging
import sqlite3
from datetime import date, datetime, timedelta

from lunchbox.errors import (AuthorizationError, Conflict, InvalidTransition, NotFound,
                             ValidationError)
from lunchbox.models import (BookingStatus, DeliveryStatus, RecurringPattern, Role,
                             occurrence_dates)
from lunchbox.sqlQueries import (get_booking, get_child, get_delivery, get_delivery_by_qr,
                                 get_school, get_user, insert_booking, insert_delivery,
                                 insert_notification, list_deliveries_by_booking,
                                 row_to_dict, rows_to_dicts, update_booking_status,
                                 update_delivery_status_if, assign_delivery_staff_if, commit)
from lunchbox.tracking import MAX_ATTEMPTS, generate_tracking_code, normalize_scanned_code

logger = logging.getLogger(__name__)

# Longest span a recurring booking may cover
MAX_RECURRING_DAYS = 366

DEFAULT_PICKUP_TIME = '08:00'
DEFAULT_DELIVERY_TIME = '12:00'

# Timestamp column written when a delivery reaches the status
TIMESTAMP_COLUMNS = {
    DeliveryStatus.PICKED_UP: 'pickup_time_actual',
    DeliveryStatus.DELIVERED: 'delivery_time_actual',
}


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _parse_date(value, field):
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format")


def _parse_time(value, field):
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(str(value).strip(), fmt).time()
        except (TypeError, ValueError):
            continue
    raise ValidationError(f"{field} must be a time in HH:MM format")


def _optional_text(value, field):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    return value.strip() or None


# ---------------------- Booking creation ----------------------

def validate_booking_payload(payload: dict, today: date) -> dict:
    """
    Check a booking request and normalise its fields.

    Args:
        payload (dict): Raw request fields.
        today (date): Reference date; the delivery date must be after it.
    Returns:
        dict: child_id, delivery_date (date), pickup_time, delivery_time (HH:MM),
            special_instructions, is_recurring, recurring_pattern,
            recurring_end_date (date | None) and occurrences (list[date]).
    Raises:
        ValidationError: On any missing or inconsistent field.
    """
    try:
        child_id = int(payload.get("child_id") or 0)
    except (TypeError, ValueError):
        raise ValidationError("Invalid child ID")
    if child_id <= 0:
        raise ValidationError("Please select a child")

    if not payload.get("delivery_date"):
        raise ValidationError("Missing delivery_date")
    delivery_date = _parse_date(payload["delivery_date"], "delivery_date")
    if delivery_date <= today:
        raise ValidationError("Delivery date must be in the future")

    pickup = _parse_time(payload.get("pickup_time") or DEFAULT_PICKUP_TIME, "pickup_time")
    drop = _parse_time(payload.get("delivery_time") or DEFAULT_DELIVERY_TIME, "delivery_time")
    if pickup >= drop:
        raise ValidationError("Pickup time must be before delivery time")

    is_recurring = _as_bool(payload.get("is_recurring"))
    pattern = None
    end_date = None
    occurrences = [delivery_date]
    if is_recurring:
        pattern = payload.get("recurring_pattern")
        if not RecurringPattern.is_valid_pattern(pattern):
            raise ValidationError("Recurring pattern must be 'daily' or 'weekly'")
        if not payload.get("recurring_end_date"):
            raise ValidationError("Missing recurring_end_date")
        end_date = _parse_date(payload["recurring_end_date"], "recurring_end_date")
        if end_date < delivery_date:
            raise ValidationError("Recurring end date cannot be before the delivery date")
        if end_date - delivery_date > timedelta(days=MAX_RECURRING_DAYS):
            raise ValidationError(f"Recurring bookings may span at most {MAX_RECURRING_DAYS} days")
        occurrences = occurrence_dates(delivery_date, end_date, pattern)

    return {
        "child_id": child_id,
        "delivery_date": delivery_date,
        "pickup_time": pickup.strftime("%H:%M"),
        "delivery_time": drop.strftime("%H:%M"),
        "special_instructions": _optional_text(payload.get("special_instructions"), "special_instructions"),
        "is_recurring": is_recurring,
        "recurring_pattern": pattern,
        "recurring_end_date": end_date,
        "occurrences": occurrences,
    }


def _insert_delivery_with_code(conn, booking_id, school_id, scheduled_date, pickup_address):
    """Insert one delivery, drawing a fresh tracking code if the first one collides."""
    for attempt in range(MAX_ATTEMPTS):
        code = generate_tracking_code()
        try:
            return insert_delivery(conn, booking_id, school_id, scheduled_date, code,
                                   pickup_address=pickup_address, commit=False)
        except sqlite3.IntegrityError as e:
            if "qr_code" not in str(e):
                raise
            logger.warning("Tracking code collision on attempt %d, regenerating", attempt + 1)
    raise Conflict("Could not allocate a unique tracking code, please retry")


def create_booking(conn, actor, payload: dict, today: date = None) -> dict:
    """
    Create a booking and materialise its deliveries.

    A one-off booking gets exactly one delivery; a recurring booking gets one
    per occurrence between the delivery date and the recurring end date, all
    pointing at the same booking. Every delivery starts ``assigned`` with its
    own tracking code and the child's school copied across. The booking and
    all of its deliveries are committed together or not at all.

    Returns:
        dict: The booking row with a ``deliveries`` list.
    """
    today = today or date.today()
    if actor.role != Role.PARENT:
        raise AuthorizationError("Only parents can book lunchbox deliveries")

    data = validate_booking_payload(payload, today)

    child = get_child(conn, data["child_id"])
    if child is None or not child["is_active"]:
        raise NotFound("Child not found")
    if child["parent_id"] != actor.usr_id:
        raise AuthorizationError("You can only book deliveries for your own children")

    school = get_school(conn, child["school_id"])
    if school is None or not school["is_active"]:
        raise ValidationError("The child's school is not accepting deliveries")

    parent = get_user(conn, actor.usr_id)
    pickup_address = (parent["address"] if parent else None) or f"Parent address for {child['name']}"

    try:
        booking_id = insert_booking(
            conn,
            child_id=child["child_id"],
            parent_id=actor.usr_id,
            delivery_date=data["delivery_date"].isoformat(),
            pickup_time=data["pickup_time"],
            delivery_time=data["delivery_time"],
            special_instructions=data["special_instructions"],
            is_recurring=data["is_recurring"],
            recurring_pattern=data["recurring_pattern"],
            recurring_end_date=data["recurring_end_date"].isoformat() if data["recurring_end_date"] else None,
            status=BookingStatus.PENDING,
            commit=False,
        )
        for day in data["occurrences"]:
            _insert_delivery_with_code(conn, booking_id, child["school_id"], day.isoformat(), pickup_address)
        commit(conn)
    except Exception:
        conn.rollback()
        raise

    logger.info("Booking %s created by user %s with %d deliveries",
                booking_id, actor.usr_id, len(data["occurrences"]))
    booking = row_to_dict(get_booking(conn, booking_id))
    booking["deliveries"] = rows_to_dicts(list_deliveries_by_booking(conn, booking_id))
    return booking


# ---------------------- Delivery transitions ----------------------

def apply_transition(conn, delivery_id: int, new_status: str, actor, expected_status: str = None) -> dict:
    """
    Move a delivery to ``new_status`` on behalf of ``actor``.

    Args:
        conn (sqlite3.Connection): Active database connection.
        delivery_id (int): Delivery to update.
        new_status (str): Requested status.
        actor (Actor): Acting user; role and identity are re-checked here.
        expected_status (str, optional): Status the caller last saw. If the
            stored status differs the call fails with Conflict.

    Returns:
        dict: The delivery row after the update.

    Raises:
        NotFound: Unknown delivery.
        Conflict: Stored status is not ``expected_status``, or it changed
            between our read and our write.
        InvalidTransition: Edge not in the lifecycle, already applied, or not
            permitted for this actor. Nothing is written.
    """
    delivery = get_delivery(conn, delivery_id)
    if delivery is None:
        raise NotFound("Delivery not found")

    current = delivery["status"]
    if expected_status is not None and current != expected_status:
        raise Conflict(f"Delivery is now {current}, expected {expected_status}; reload and retry")

    if not DeliveryStatus.is_valid_status(new_status):
        raise InvalidTransition(f"Invalid status: {new_status}")
    if not DeliveryStatus.is_valid_transition(current, new_status):
        raise InvalidTransition(f"Invalid transition from {current} to {new_status}")
    if not DeliveryStatus.actor_may_apply(delivery, actor, new_status):
        raise InvalidTransition(f"Transition from {current} to {new_status} is not permitted for this user")

    now = _now()
    extra = {}
    if new_status in TIMESTAMP_COLUMNS:
        extra[TIMESTAMP_COLUMNS[new_status]] = now

    try:
        if not update_delivery_status_if(conn, delivery_id, current, new_status, now, extra, commit=False):
            raise Conflict("Delivery was updated by someone else; reload and retry")

        projected = DeliveryStatus.BOOKING_PROJECTION.get(new_status)
        if projected:
            update_booking_status(conn, delivery["booking_id"], projected, commit=False)

        if new_status == DeliveryStatus.FAILED:
            booking = get_booking(conn, delivery["booking_id"])
            insert_notification(
                conn, booking["parent_id"], "Lunchbox missing",
                f"The school reported the lunchbox for {delivery['scheduled_date']} "
                f"(tracking {delivery['qr_code']}) as not received.",
                type_='error', commit=False,
            )
        commit(conn)
    except Exception:
        conn.rollback()
        raise

    logger.info("Delivery %s: %s -> %s by user %s", delivery_id, current, new_status, actor.usr_id)
    return row_to_dict(get_delivery(conn, delivery_id))


def confirm_receipt(conn, delivery_id: int, actor, expected_status: str = None) -> dict:
    """School-side confirmation that the lunchbox arrived (in_transit -> delivered)."""
    return apply_transition(conn, delivery_id, DeliveryStatus.DELIVERED, actor, expected_status)


def report_missing(conn, delivery_id: int, actor, expected_status: str = None) -> dict:
    """School-side report that the lunchbox never arrived (in_transit -> failed)."""
    return apply_transition(conn, delivery_id, DeliveryStatus.FAILED, actor, expected_status)


# ---------------------- Scan / manual entry ----------------------

def lookup_delivery(conn, tracking_code) -> dict:
    """
    Resolve a scanned or typed tracking code to its delivery.

    Raises:
        ValidationError: Empty code.
        NotFound: No delivery carries this exact code.
    """
    code = normalize_scanned_code(tracking_code)
    if not code:
        raise ValidationError("Tracking code is required")
    delivery = get_delivery_by_qr(conn, code)
    if delivery is None:
        raise NotFound("Invalid QR code")
    return row_to_dict(delivery)


def available_transitions(delivery, actor):
    """Statuses the scan screen offers; apply_transition still re-validates."""
    return DeliveryStatus.offered_to(delivery, actor)


def scan_and_apply(conn, tracking_code, new_status: str, actor, expected_status: str = None) -> dict:
    delivery = lookup_delivery(conn, tracking_code)
    return apply_transition(conn, delivery["delivery_id"], new_status, actor, expected_status)


# ---------------------- Staff assignment ----------------------

def _check_staff(conn, staff_id):
    staff = get_user(conn, staff_id)
    if staff is None:
        raise NotFound("Delivery staff member not found")
    if staff["role"] != Role.DELIVERY_STAFF or not staff["is_active"]:
        raise ValidationError("User is not an active delivery staff member")
    return staff


def assign_staff(conn, delivery_id: int, staff_id: int, actor) -> dict:
    """
    Assign (or re-assign) the staff member responsible for a delivery.

    Only system admins may assign, and only before pickup.
    """
    if actor.role != Role.SYSTEM_ADMIN:
        raise AuthorizationError("Only system admins can assign delivery staff")
    _check_staff(conn, staff_id)

    delivery = get_delivery(conn, delivery_id)
    if delivery is None:
        raise NotFound("Delivery not found")
    if delivery["status"] != DeliveryStatus.ASSIGNED:
        raise InvalidTransition(f"Cannot reassign a delivery that is {delivery['status']}")

    if not assign_delivery_staff_if(conn, delivery_id, staff_id, DeliveryStatus.ASSIGNED, _now()):
        raise Conflict("Delivery was picked up before the assignment was saved")
    logger.info("Delivery %s assigned to staff %s", delivery_id, staff_id)
    return row_to_dict(get_delivery(conn, delivery_id))


def assign_staff_to_booking(conn, booking_id: int, staff_id: int, actor) -> list:
    """Assign every not-yet-picked-up delivery of a booking to one staff member."""
    if actor.role != Role.SYSTEM_ADMIN:
        raise AuthorizationError("Only system admins can assign delivery staff")
    _check_staff(conn, staff_id)
    if get_booking(conn, booking_id) is None:
        raise NotFound("Booking not found")

    assigned = []
    for delivery in list_deliveries_by_booking(conn, booking_id):
        if delivery["status"] != DeliveryStatus.ASSIGNED:
            continue
        if assign_delivery_staff_if(conn, delivery["delivery_id"], staff_id, DeliveryStatus.ASSIGNED, _now()):
            assigned.append(delivery["delivery_id"])
    return assigned


# ---------------------- Booking-level changes ----------------------

def cancel_booking(conn, booking_id: int, actor) -> dict:
    """
    Cancel the remaining lunchboxes of a booking.

    Every delivery still ``assigned`` is closed as ``failed``; deliveries
    already picked up or finished keep their status. For a recurring booking
    this stops the future occurrences even after earlier ones were
    delivered. The booking itself becomes ``cancelled`` unless one of its
    lunchboxes is on its way right now, in which case it keeps tracking that
    delivery.

    Raises:
        InvalidTransition: Booking already cancelled or nothing left to cancel.
        Conflict: Every open delivery was picked up before the cancel was saved.
    """
    booking = get_booking(conn, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if actor.role != Role.SYSTEM_ADMIN and not (actor.role == Role.PARENT and booking["parent_id"] == actor.usr_id):
        raise AuthorizationError("You can only cancel your own bookings")

    current = booking["status"]
    if current == BookingStatus.CANCELLED:
        raise InvalidTransition("Booking is already cancelled")

    deliveries = list_deliveries_by_booking(conn, booking_id)
    open_ids = [d["delivery_id"] for d in deliveries if d["status"] == DeliveryStatus.ASSIGNED]
    if not open_ids:
        raise InvalidTransition(f"Cannot cancel a booking that is {current}: no delivery is left to cancel")
    in_flight = any(d["status"] in (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT) for d in deliveries)

    now = _now()
    try:
        closed = 0
        for delivery_id in open_ids:
            if update_delivery_status_if(conn, delivery_id, DeliveryStatus.ASSIGNED,
                                         DeliveryStatus.FAILED, now, commit=False):
                closed += 1
        if not closed:
            raise Conflict("Deliveries were picked up before the cancellation was saved; reload and retry")
        if not in_flight and not update_booking_status(conn, booking_id, BookingStatus.CANCELLED,
                                                       expected_status=current, commit=False):
            raise Conflict("Booking was updated by someone else; reload and retry")
        commit(conn)
    except Exception:
        conn.rollback()
        raise

    logger.info("Booking %s: %s open deliveries cancelled by user %s", booking_id, closed, actor.usr_id)
    result = row_to_dict(get_booking(conn, booking_id))
    result["deliveries"] = rows_to_dicts(list_deliveries_by_booking(conn, booking_id))
    return result


def confirm_booking(conn, booking_id: int, actor) -> dict:
    """System admin acknowledgement of a pending booking."""
    if actor.role != Role.SYSTEM_ADMIN:
        raise AuthorizationError("Only system admins can confirm bookings")
    booking = get_booking(conn, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    current = booking["status"]
    if not BookingStatus.is_valid_transition(current, BookingStatus.CONFIRMED):
        raise InvalidTransition(f"Invalid transition from {current} to {BookingStatus.CONFIRMED}")
    if not update_booking_status(conn, booking_id, BookingStatus.CONFIRMED, expected_status=current):
        raise Conflict("Booking was updated by someone else; reload and retry")
    return row_to_dict(get_booking(conn, booking_id))
