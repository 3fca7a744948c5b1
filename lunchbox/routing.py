"""
Daily delivery runs for staff members.

A run is the ordered list of a staff member's deliveries for one day. The
ordering groups stops by school and, within a school, by the booked delivery
time; there is no distance-based optimisation.
"""

import json
import logging
from datetime import date

from lunchbox.errors import AuthorizationError, Conflict, NotFound, ValidationError
from lunchbox.models import DeliveryStatus, Role
from lunchbox.sqlQueries import (get_route, get_route_for_day, insert_route, list_deliveries_for_staff,
                                 list_routes_for_staff, row_to_dict, rows_to_dicts,
                                 update_route_status_if)

logger = logging.getLogger(__name__)

IN_PROGRESS = 'in_progress'
COMPLETED = 'completed'


def _require_staff(actor):
    if actor.role != Role.DELIVERY_STAFF:
        raise AuthorizationError("Only delivery staff have delivery routes")


def optimize_order(deliveries):
    """
    Order deliveries by school name, then delivery time, then id.

    Args:
        deliveries (list[dict]): Delivery rows with school_name and delivery_time.
    Returns:
        list[dict]: A new list; the input is not modified.
    """
    return sorted(
        deliveries,
        key=lambda d: ((d.get("school_name") or "").lower(), d.get("delivery_time") or "", d["delivery_id"]),
    )


def todays_deliveries(conn, actor, day: date = None):
    """Today's deliveries for the acting staff member, in route order, with progress counts."""
    _require_staff(actor)
    day = day or date.today()
    deliveries = optimize_order(rows_to_dicts(list_deliveries_for_staff(conn, actor.usr_id, day.isoformat())))
    completed = sum(1 for d in deliveries if d["status"] == DeliveryStatus.DELIVERED)
    return {
        "date": day.isoformat(),
        "deliveries": deliveries,
        "completed": completed,
        "progress": round(completed * 100 / len(deliveries)) if deliveries else 0,
        "route": row_to_dict(get_route_for_day(conn, actor.usr_id, day.isoformat(), IN_PROGRESS)),
    }


def start_route(conn, actor, day: date = None):
    """Open today's run; a staff member has at most one run in progress per day."""
    _require_staff(actor)
    day = day or date.today()
    if get_route_for_day(conn, actor.usr_id, day.isoformat(), IN_PROGRESS) is not None:
        raise Conflict("A route is already in progress for today")

    deliveries = optimize_order(rows_to_dicts(list_deliveries_for_staff(conn, actor.usr_id, day.isoformat())))
    if not deliveries:
        raise ValidationError("No deliveries scheduled for today")

    route_id = insert_route(conn, actor.usr_id, day.isoformat(), json.dumps([d["delivery_id"] for d in deliveries]))
    logger.info("Route %s started by staff %s with %d stops", route_id, actor.usr_id, len(deliveries))
    return _route_dict(get_route(conn, route_id))


def complete_route(conn, actor, day: date = None):
    _require_staff(actor)
    day = day or date.today()
    route = get_route_for_day(conn, actor.usr_id, day.isoformat(), IN_PROGRESS)
    if route is None:
        raise NotFound("No route in progress")
    if not update_route_status_if(conn, route["route_id"], IN_PROGRESS, COMPLETED):
        raise Conflict("Route was already completed")
    logger.info("Route %s completed by staff %s", route["route_id"], actor.usr_id)
    return _route_dict(get_route(conn, route["route_id"]))


def route_history(conn, actor, limit: int = 10):
    _require_staff(actor)
    return [_route_dict(r) for r in list_routes_for_staff(conn, actor.usr_id, limit)]


def _route_dict(row):
    route = row_to_dict(row)
    route["deliveries"] = json.loads(route["deliveries"] or "[]")
    return route
