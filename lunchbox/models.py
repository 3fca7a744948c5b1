"""
Data models for the lunchbox delivery application.

This module contains the status vocabularies, roles and recurrence rules
shared by booking creation, delivery hand-off, school receipt confirmation
and the QR scan flow. Records themselves live in SQLite; see sqlQueries.py.
"""

import calendar
from datetime import timedelta


class Role:
    """
    The closed set of user roles.

    Every dashboard, menu and permission check dispatches on exactly one of
    these values.
    """

    PARENT = 'parent'
    DELIVERY_STAFF = 'delivery_staff'
    SCHOOL_ADMIN = 'school_admin'
    SYSTEM_ADMIN = 'system_admin'

    VALID_ROLES = [PARENT, DELIVERY_STAFF, SCHOOL_ADMIN, SYSTEM_ADMIN]

    @classmethod
    def is_valid_role(cls, role):
        """Return True if ``role`` is one of the four known roles."""
        return role in cls.VALID_ROLES


class Actor:
    """
    The authenticated principal performing an operation.

    Attributes:
        usr_id (int): User id supplied by the session.
        role (str): One of Role.VALID_ROLES.
        school_id (int | None): School a school admin is attached to.
    """

    def __init__(self, usr_id, role, school_id=None):
        self.usr_id = usr_id
        self.role = role
        self.school_id = school_id

    @classmethod
    def from_row(cls, row):
        """Build an Actor from a User row."""
        return cls(row["usr_id"], row["role"], row["school_id"])

    def __repr__(self):
        return f"Actor(usr_id={self.usr_id!r}, role={self.role!r}, school_id={self.school_id!r})"


class DeliveryStatus:
    """
    Represents valid delivery statuses and transitions.

    Status Flow:
        assigned -> picked_up -> in_transit -> delivered
        in_transit -> failed (school reports the lunchbox missing)

    ``delivered`` and ``failed`` are terminal. A delivery still ``assigned``
    can also end in ``failed`` when its booking is cancelled upstream; that
    path is driven by lifecycle.cancel_booking and is not part of TRANSITIONS.

    Attributes:
        TRANSITIONS (dict): Mapping of current status to allowed next statuses
        ACTORS (dict): Mapping of (current, next) to the roles allowed to apply it
        BOOKING_PROJECTION (dict): Booking status written alongside each delivery status
        STAGE (dict): Position of each status along the happy path
    """

    ASSIGNED = 'assigned'
    PICKED_UP = 'picked_up'
    IN_TRANSIT = 'in_transit'
    DELIVERED = 'delivered'
    FAILED = 'failed'

    VALID_STATUSES = [ASSIGNED, PICKED_UP, IN_TRANSIT, DELIVERED, FAILED]

    TRANSITIONS = {
        ASSIGNED: [PICKED_UP],
        PICKED_UP: [IN_TRANSIT],
        IN_TRANSIT: [DELIVERED, FAILED],
        DELIVERED: [],
        FAILED: [],
    }

    ACTORS = {
        (ASSIGNED, PICKED_UP): [Role.DELIVERY_STAFF],
        (PICKED_UP, IN_TRANSIT): [Role.DELIVERY_STAFF],
        (IN_TRANSIT, DELIVERED): [Role.DELIVERY_STAFF, Role.SCHOOL_ADMIN],
        (IN_TRANSIT, FAILED): [Role.SCHOOL_ADMIN],
    }

    # failed is recorded on the delivery only; the booking keeps its status.
    BOOKING_PROJECTION = {
        PICKED_UP: 'picked_up',
        IN_TRANSIT: 'in_transit',
        DELIVERED: 'delivered',
    }

    STAGE = {
        ASSIGNED: 0,
        PICKED_UP: 1,
        IN_TRANSIT: 2,
        DELIVERED: 3,
        FAILED: 3,
    }

    ACTIVE_STATUSES = [ASSIGNED, PICKED_UP, IN_TRANSIT]

    @classmethod
    def is_valid_status(cls, status):
        """
        Check if a status value is valid.

        Example:
            >>> DeliveryStatus.is_valid_status('in_transit')
            True
            >>> DeliveryStatus.is_valid_status('lost')
            False
        """
        return status in cls.VALID_STATUSES

    @classmethod
    def is_valid_transition(cls, current_status, new_status):
        """
        Check if a status transition is allowed.

        Re-applying the current status is not a transition and returns False.

        Example:
            >>> DeliveryStatus.is_valid_transition('assigned', 'picked_up')
            True
            >>> DeliveryStatus.is_valid_transition('assigned', 'delivered')
            False
            >>> DeliveryStatus.is_valid_transition('picked_up', 'picked_up')
            False
        """
        if current_status not in cls.TRANSITIONS:
            return False
        return new_status in cls.TRANSITIONS[current_status]

    @classmethod
    def actor_may_apply(cls, delivery, actor, new_status):
        """
        Check whether ``actor`` may move ``delivery`` to ``new_status``.

        Staff may only drive deliveries assigned to them; school admins may
        only confirm or fail deliveries addressed to their own school.

        Args:
            delivery (Mapping): Delivery row with status, delivery_staff_id, school_id
            actor (Actor): The acting user
            new_status (str): Requested status

        Returns:
            bool: True if the edge exists and the actor is allowed to apply it
        """
        current = delivery["status"]
        if not cls.is_valid_transition(current, new_status):
            return False
        roles = cls.ACTORS.get((current, new_status), [])
        if actor.role not in roles:
            return False
        if actor.role == Role.DELIVERY_STAFF:
            staff_id = delivery["delivery_staff_id"]
            return staff_id is not None and staff_id == actor.usr_id
        if actor.role == Role.SCHOOL_ADMIN:
            return actor.school_id is not None and actor.school_id == delivery["school_id"]
        return False

    @classmethod
    def offered_to(cls, delivery, actor):
        """List the next statuses the scan screen should offer to ``actor``."""
        return [
            nxt for nxt in cls.TRANSITIONS.get(delivery["status"], [])
            if cls.actor_may_apply(delivery, actor, nxt)
        ]


class BookingStatus:
    """
    Represents valid booking statuses.

    Bookings start ``pending``. Only confirmation and cancellation are applied
    to a booking directly; picked_up, in_transit and delivered are projected
    from its deliveries (see DeliveryStatus.BOOKING_PROJECTION).

    TRANSITIONS governs confirmation only. Whether a booking can be cancelled
    depends on its deliveries: it can while any of them is still ``assigned``,
    which lets a recurring booking drop its future occurrences.
    """

    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    PICKED_UP = 'picked_up'
    IN_TRANSIT = 'in_transit'
    DELIVERED = 'delivered'
    CANCELLED = 'cancelled'

    VALID_STATUSES = [PENDING, CONFIRMED, PICKED_UP, IN_TRANSIT, DELIVERED, CANCELLED]

    # statuses counted as "active" on the admin dashboard
    ACTIVE_STATUSES = [PENDING, CONFIRMED, PICKED_UP, IN_TRANSIT]

    TRANSITIONS = {
        PENDING: [CONFIRMED, CANCELLED],
        CONFIRMED: [CANCELLED],
        PICKED_UP: [],
        IN_TRANSIT: [],
        DELIVERED: [],
        CANCELLED: [],
    }

    @classmethod
    def is_valid_status(cls, status):
        return status in cls.VALID_STATUSES

    @classmethod
    def is_valid_transition(cls, current_status, new_status):
        if current_status not in cls.TRANSITIONS:
            return False
        return new_status in cls.TRANSITIONS[current_status]


class RecurringPattern:
    """Recurrence options for a booking and the occurrence dates they produce."""

    DAILY = 'daily'
    WEEKLY = 'weekly'

    VALID_PATTERNS = [DAILY, WEEKLY]

    STEP = {
        DAILY: timedelta(days=1),
        WEEKLY: timedelta(days=7),
    }

    @classmethod
    def is_valid_pattern(cls, pattern):
        return pattern in cls.VALID_PATTERNS


def occurrence_dates(start, end, pattern):
    """
    Expand a recurring booking into its delivery dates.

    Args:
        start (date): First delivery date (always included when start <= end)
        end (date): Recurring end date, inclusive
        pattern (str): 'daily' or 'weekly'

    Returns:
        list[date]: Occurrence dates in ascending order; empty if end < start

    Example:
        >>> occurrence_dates(date(2024, 1, 1), date(2024, 1, 22), 'weekly')
        [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22)]
    """
    if not RecurringPattern.is_valid_pattern(pattern):
        raise ValueError(f"unknown recurring pattern: {pattern!r}")
    step = RecurringPattern.STEP[pattern]
    dates = []
    current = start
    while current <= end:
        dates.append(current)
        current += step
    return dates


def occurrence_count(start, end, pattern):
    """Number of deliveries a recurring booking materialises."""
    return len(occurrence_dates(start, end, pattern))


def add_months(day, months):
    """Shift ``day`` by whole calendar months, clamping to the last day of the month."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return day.replace(year=year, month=month, day=min(day.day, last_day))
