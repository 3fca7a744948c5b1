"""
Role dashboards.

Each role has exactly one builder; build_dashboard dispatches on the acting
user's role through DASHBOARD_HANDLERS.
"""

from datetime import date

from lunchbox.errors import AuthorizationError
from lunchbox.models import BookingStatus, DeliveryStatus, Role
from lunchbox.payments import cents_to_rupees
from lunchbox.sqlQueries import (count_rows, list_active_deliveries_for_parent, list_bookings_by_parent,
                                 list_children_by_parent, list_deliveries_for_school,
                                 list_deliveries_for_staff, rows_to_dicts, sum_payments)

RECENT_BOOKINGS = 5


def parent_dashboard(conn, actor, today):
    return {
        "children": rows_to_dicts(list_children_by_parent(conn, actor.usr_id)),
        "recent_bookings": rows_to_dicts(list_bookings_by_parent(conn, actor.usr_id, limit=RECENT_BOOKINGS)),
        "active_deliveries": rows_to_dicts(
            list_active_deliveries_for_parent(conn, actor.usr_id, DeliveryStatus.ACTIVE_STATUSES)),
    }


def delivery_staff_dashboard(conn, actor, today):
    deliveries = rows_to_dicts(list_deliveries_for_staff(conn, actor.usr_id, today.isoformat()))
    return {
        "deliveries": deliveries,
        "stats": {
            "pending": sum(1 for d in deliveries if d["status"] == DeliveryStatus.ASSIGNED),
            "in_transit": sum(1 for d in deliveries
                              if d["status"] in (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT)),
            "completed": sum(1 for d in deliveries if d["status"] == DeliveryStatus.DELIVERED),
        },
    }


def _on_time(delivery):
    actual = delivery.get("delivery_time_actual")
    if delivery["status"] != DeliveryStatus.DELIVERED or not actual:
        return False
    return actual[:16] <= f"{delivery['scheduled_date']}T{delivery['delivery_time']}"


def school_admin_dashboard(conn, actor, today):
    if actor.school_id is None:
        raise AuthorizationError("Your account is not linked to a school")
    deliveries = rows_to_dicts(list_deliveries_for_school(conn, actor.school_id, today.isoformat()))
    return {
        "deliveries": deliveries,
        "stats": {
            "expected": len(deliveries),
            "received": sum(1 for d in deliveries if d["status"] == DeliveryStatus.DELIVERED),
            "missing": sum(1 for d in deliveries if d["status"] == DeliveryStatus.FAILED),
            "on_time": sum(1 for d in deliveries if _on_time(d)),
        },
    }


def system_admin_dashboard(conn, actor, today):
    total_deliveries = count_rows(conn, "Delivery")
    completed = count_rows(conn, "Delivery", "status = ?", (DeliveryStatus.DELIVERED,))
    qmarks = ",".join(["?"] * len(BookingStatus.ACTIVE_STATUSES))
    return {
        "stats": {
            "total_users": count_rows(conn, "User"),
            "total_schools": count_rows(conn, "School"),
            "total_deliveries": total_deliveries,
            "total_revenue": cents_to_rupees(sum_payments(conn, 'completed')),
            "active_bookings": count_rows(conn, "Booking", f"status IN ({qmarks})",
                                          tuple(BookingStatus.ACTIVE_STATUSES)),
            "completion_rate": round(completed * 100 / total_deliveries) if total_deliveries else 0,
        },
    }


DASHBOARD_HANDLERS = {
    Role.PARENT: parent_dashboard,
    Role.DELIVERY_STAFF: delivery_staff_dashboard,
    Role.SCHOOL_ADMIN: school_admin_dashboard,
    Role.SYSTEM_ADMIN: system_admin_dashboard,
}


def build_dashboard(conn, actor, today: date = None):
    """
    Build the dashboard payload for the acting user's role.

    Raises:
        AuthorizationError: Unknown role.
    """
    handler = DASHBOARD_HANDLERS.get(actor.role)
    if handler is None:
        raise AuthorizationError(f"Unknown role: {actor.role}")
    data = handler(conn, actor, today or date.today())
    data["role"] = actor.role
    return data
