from datetime import date

import pytest

from lunchbox.models import (Actor, BookingStatus, DeliveryStatus, RecurringPattern, Role, add_months,
                             occurrence_count, occurrence_dates)


def _delivery(status, staff_id=7, school_id=3):
    return {"status": status, "delivery_staff_id": staff_id, "school_id": school_id}


def test_delivery_status_constants():
    """Ensure constants haven't drifted."""
    assert DeliveryStatus.ASSIGNED == 'assigned'
    assert DeliveryStatus.PICKED_UP == 'picked_up'
    assert DeliveryStatus.IN_TRANSIT == 'in_transit'
    assert DeliveryStatus.DELIVERED == 'delivered'
    assert DeliveryStatus.FAILED == 'failed'


def test_is_valid_status():
    assert DeliveryStatus.is_valid_status('in_transit') is True
    assert DeliveryStatus.is_valid_status('lost') is False
    assert DeliveryStatus.is_valid_status('') is False
    assert DeliveryStatus.is_valid_status(None) is False


def test_forward_transitions():
    assert DeliveryStatus.is_valid_transition('assigned', 'picked_up') is True
    assert DeliveryStatus.is_valid_transition('picked_up', 'in_transit') is True
    assert DeliveryStatus.is_valid_transition('in_transit', 'delivered') is True
    assert DeliveryStatus.is_valid_transition('in_transit', 'failed') is True


def test_skipping_steps_is_blocked():
    assert DeliveryStatus.is_valid_transition('assigned', 'delivered') is False
    assert DeliveryStatus.is_valid_transition('assigned', 'in_transit') is False
    assert DeliveryStatus.is_valid_transition('picked_up', 'delivered') is False


def test_missing_report_only_from_in_transit():
    assert DeliveryStatus.is_valid_transition('assigned', 'failed') is False
    assert DeliveryStatus.is_valid_transition('picked_up', 'failed') is False


def test_terminal_and_backward_transitions_blocked():
    for status in DeliveryStatus.VALID_STATUSES:
        assert DeliveryStatus.is_valid_transition('delivered', status) is False
        assert DeliveryStatus.is_valid_transition('failed', status) is False
    assert DeliveryStatus.is_valid_transition('in_transit', 'picked_up') is False


def test_same_status_is_not_a_transition():
    for status in DeliveryStatus.VALID_STATUSES:
        assert DeliveryStatus.is_valid_transition(status, status) is False


def test_unknown_status_transitions():
    assert DeliveryStatus.is_valid_transition('lost', 'assigned') is False
    assert DeliveryStatus.is_valid_transition('assigned', 'lost') is False


def test_staff_may_drive_only_own_delivery():
    own = Actor(7, Role.DELIVERY_STAFF)
    other = Actor(8, Role.DELIVERY_STAFF)
    assert DeliveryStatus.actor_may_apply(_delivery('assigned'), own, 'picked_up') is True
    assert DeliveryStatus.actor_may_apply(_delivery('assigned'), other, 'picked_up') is False
    assert DeliveryStatus.actor_may_apply(_delivery('assigned', staff_id=None), own, 'picked_up') is False


def test_staff_cannot_report_missing():
    staff = Actor(7, Role.DELIVERY_STAFF)
    assert DeliveryStatus.actor_may_apply(_delivery('in_transit'), staff, 'delivered') is True
    assert DeliveryStatus.actor_may_apply(_delivery('in_transit'), staff, 'failed') is False


def test_school_admin_limited_to_own_school():
    admin = Actor(1, Role.SCHOOL_ADMIN, school_id=3)
    elsewhere = Actor(1, Role.SCHOOL_ADMIN, school_id=4)
    assert DeliveryStatus.actor_may_apply(_delivery('in_transit'), admin, 'delivered') is True
    assert DeliveryStatus.actor_may_apply(_delivery('in_transit'), admin, 'failed') is True
    assert DeliveryStatus.actor_may_apply(_delivery('in_transit'), elsewhere, 'delivered') is False
    assert DeliveryStatus.actor_may_apply(_delivery('assigned'), admin, 'picked_up') is False


def test_parent_and_system_admin_never_drive_lifecycle():
    for actor in (Actor(1, Role.PARENT), Actor(2, Role.SYSTEM_ADMIN)):
        for cur, nxt in DeliveryStatus.ACTORS:
            assert DeliveryStatus.actor_may_apply(_delivery(cur), actor, nxt) is False


def test_offered_to():
    staff = Actor(7, Role.DELIVERY_STAFF)
    admin = Actor(1, Role.SCHOOL_ADMIN, school_id=3)
    assert DeliveryStatus.offered_to(_delivery('in_transit'), staff) == ['delivered']
    assert DeliveryStatus.offered_to(_delivery('in_transit'), admin) == ['delivered', 'failed']
    assert DeliveryStatus.offered_to(_delivery('delivered'), admin) == []


def test_failed_is_not_projected_onto_booking():
    assert 'failed' not in DeliveryStatus.BOOKING_PROJECTION
    assert DeliveryStatus.BOOKING_PROJECTION['delivered'] == BookingStatus.DELIVERED


def test_booking_transitions():
    assert BookingStatus.is_valid_transition('pending', 'confirmed') is True
    assert BookingStatus.is_valid_transition('pending', 'cancelled') is True
    assert BookingStatus.is_valid_transition('confirmed', 'cancelled') is True
    assert BookingStatus.is_valid_transition('picked_up', 'cancelled') is False
    assert BookingStatus.is_valid_transition('cancelled', 'pending') is False


def test_roles():
    assert Role.is_valid_role('school_admin') is True
    assert Role.is_valid_role('admin') is False
    assert len(Role.VALID_ROLES) == 4


def test_weekly_occurrences():
    dates = occurrence_dates(date(2024, 1, 1), date(2024, 1, 22), RecurringPattern.WEEKLY)
    assert dates == [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22)]


def test_weekly_end_not_on_step_is_excluded():
    dates = occurrence_dates(date(2024, 1, 1), date(2024, 1, 21), RecurringPattern.WEEKLY)
    assert dates[-1] == date(2024, 1, 15)
    assert len(dates) == 3


def test_daily_occurrences_inclusive():
    assert occurrence_count(date(2024, 2, 27), date(2024, 3, 1), 'daily') == 4


def test_single_day_range():
    assert occurrence_dates(date(2024, 5, 5), date(2024, 5, 5), 'weekly') == [date(2024, 5, 5)]


def test_end_before_start_is_empty():
    assert occurrence_dates(date(2024, 5, 5), date(2024, 5, 4), 'daily') == []


def test_unknown_pattern_rejected():
    with pytest.raises(ValueError):
        occurrence_dates(date(2024, 1, 1), date(2024, 1, 5), 'monthly')


def test_add_months_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2024, 12, 15), 1) == date(2025, 1, 15)
