"""
Integration tests for delivery status updates.

Covers POST /deliveries/<id>/status, the QR scan endpoints, the school
receipt/missing actions and staff assignment.
"""
import json

from lunchbox.sqlQueries import create_connection, close_connection, fetch_one, set_user_active, update_user


def _post_json(client, url, payload):
    return client.post(url, data=json.dumps(payload), content_type='application/json')


def _status(temp_db_path, delivery_id):
    conn = create_connection(temp_db_path)
    try:
        return fetch_one(conn, 'SELECT status FROM Delivery WHERE delivery_id = ?', (delivery_id,))[0]
    finally:
        close_connection(conn)


def _booking_status(temp_db_path, booking_id):
    conn = create_connection(temp_db_path)
    try:
        return fetch_one(conn, 'SELECT status FROM Booking WHERE booking_id = ?', (booking_id,))[0]
    finally:
        close_connection(conn)


def test_staff_pickup(client, temp_db_path, booked_delivery, staff_session):
    response = _post_json(client, f'/deliveries/{booked_delivery["delivery_id"]}/status',
                          {"new_status": "picked_up"})

    assert response.status_code == 200
    data = response.get_json()
    assert data["ok"] is True
    assert data["delivery_id"] == booked_delivery["delivery_id"]
    assert data["new_status"] == "picked_up"
    assert _status(temp_db_path, booked_delivery["delivery_id"]) == "picked_up"
    assert _booking_status(temp_db_path, booked_delivery["booking_id"]) == "picked_up"


def test_invalid_transition_returns_400(client, temp_db_path, booked_delivery, staff_session):
    response = _post_json(client, f'/deliveries/{booked_delivery["delivery_id"]}/status',
                          {"new_status": "delivered"})
    assert response.status_code == 400
    data = response.get_json()
    assert data["ok"] is False
    assert "transition" in data["error"].lower()
    assert _status(temp_db_path, booked_delivery["delivery_id"]) == "assigned"


def test_stale_expected_status_returns_409(client, booked_delivery, staff_session):
    url = f'/deliveries/{booked_delivery["delivery_id"]}/status'
    assert _post_json(client, url, {"new_status": "picked_up", "expected_status": "assigned"}).status_code == 200

    response = _post_json(client, url, {"new_status": "picked_up", "expected_status": "assigned"})
    assert response.status_code == 409
    data = response.get_json()
    assert data["ok"] is False
    assert data["retryable"] is True


def test_unknown_delivery_returns_404(client, staff_session):
    response = _post_json(client, '/deliveries/99999/status', {"new_status": "picked_up"})
    assert response.status_code == 404
    assert "not found" in response.get_json()["error"].lower()


def test_missing_new_status(client, booked_delivery, staff_session):
    response = _post_json(client, f'/deliveries/{booked_delivery["delivery_id"]}/status', {})
    assert response.status_code == 400
    assert "new_status" in response.get_json()["error"]


def test_status_requires_json(client, booked_delivery, staff_session):
    response = client.post(f'/deliveries/{booked_delivery["delivery_id"]}/status', data="new_status=picked_up")
    assert response.status_code == 400


def test_status_requires_login(client, booked_delivery):
    response = _post_json(client, f'/deliveries/{booked_delivery["delivery_id"]}/status',
                          {"new_status": "picked_up"})
    assert response.status_code == 401


def test_scan_lookup_lists_transitions(client, booked_delivery, login_as):
    login_as("staff")
    response = client.get(f'/scan/{booked_delivery["qr_code"]}')
    assert response.status_code == 200
    data = response.get_json()
    assert data["delivery"]["child_name"] == "Kim"
    assert data["delivery"]["school_name"] == "Green Valley School"
    assert data["available_transitions"] == ["picked_up"]

    login_as("other_staff")
    assert client.get(f'/scan/{booked_delivery["qr_code"]}').get_json()["available_transitions"] == []


def test_scan_unknown_code(client, seed_minimal_data, staff_session):
    response = client.get('/scan/DOESNOTEXIST')
    assert response.status_code == 404
    assert response.get_json()["error"] == "Invalid QR code"


def test_scan_full_hand_off(client, temp_db_path, booked_delivery, login_as):
    code = booked_delivery["qr_code"]
    login_as("staff")
    assert _post_json(client, f'/scan/{code}', {"new_status": "picked_up"}).status_code == 200
    assert _post_json(client, f'/scan/{code}', {"new_status": "in_transit"}).status_code == 200

    login_as("school_admin")
    response = client.post(f'/deliveries/{booked_delivery["delivery_id"]}/confirm_receipt')
    assert response.status_code == 200
    assert response.get_json()["delivery"]["delivery_time_actual"] is not None
    assert _booking_status(temp_db_path, booked_delivery["booking_id"]) == "delivered"


def test_report_missing(client, temp_db_path, booked_delivery, login_as):
    url = f'/deliveries/{booked_delivery["delivery_id"]}/status'
    login_as("school_admin")
    early = client.post(f'/deliveries/{booked_delivery["delivery_id"]}/report_missing')
    assert early.status_code == 400

    login_as("staff")
    _post_json(client, url, {"new_status": "picked_up"})
    _post_json(client, url, {"new_status": "in_transit"})

    login_as("school_admin")
    response = client.post(f'/deliveries/{booked_delivery["delivery_id"]}/report_missing')
    assert response.status_code == 200
    assert _status(temp_db_path, booked_delivery["delivery_id"]) == "failed"
    assert _booking_status(temp_db_path, booked_delivery["booking_id"]) == "in_transit"

    login_as("parent")
    notes = client.get('/notifications').get_json()["notifications"]
    assert notes[0]["type"] == "error"


def test_receipt_actions_restricted_to_school_admin(client, booked_delivery, staff_session):
    response = client.post(f'/deliveries/{booked_delivery["delivery_id"]}/report_missing')
    assert response.status_code == 403


def test_assign_delivery(client, booked_delivery, seed_minimal_data, login_as):
    url = f'/deliveries/{booked_delivery["delivery_id"]}/assign'
    login_as("parent")
    assert _post_json(client, url, {"staff_id": seed_minimal_data["other_staff_id"]}).status_code == 403

    login_as("system_admin")
    response = _post_json(client, url, {"staff_id": seed_minimal_data["other_staff_id"]})
    assert response.status_code == 200
    assert response.get_json()["delivery"]["delivery_staff_id"] == seed_minimal_data["other_staff_id"]

    assert _post_json(client, url, {"staff_id": "abc"}).status_code == 400


def test_track_visible_to_owner(client, booked_delivery, login_as):
    login_as("parent")
    response = client.get(f'/track/{booked_delivery["qr_code"]}')
    assert response.status_code == 200
    assert response.get_json()["delivery"]["status"] == "assigned"

    login_as("other_parent")
    assert client.get(f'/track/{booked_delivery["qr_code"]}').status_code == 404


def test_track_scoped_to_assigned_staff_and_school(client, temp_db_path, booked_delivery, seed_minimal_data,
                                                   login_as):
    url = f'/track/{booked_delivery["qr_code"]}'
    for name in ("staff", "school_admin", "system_admin"):
        login_as(name)
        assert client.get(url).status_code == 200, name

    login_as("other_staff")
    assert client.get(url).status_code == 404

    conn = create_connection(temp_db_path)
    try:
        update_user(conn, seed_minimal_data["school_admin_id"], {"school_id": seed_minimal_data["other_school_id"]})
    finally:
        close_connection(conn)
    login_as("school_admin")
    assert client.get(url).status_code == 404


def test_deactivated_staff_session_is_rejected(client, temp_db_path, booked_delivery, seed_minimal_data,
                                               staff_session):
    conn = create_connection(temp_db_path)
    try:
        set_user_active(conn, seed_minimal_data["staff_id"], False)
    finally:
        close_connection(conn)

    response = _post_json(client, f'/deliveries/{booked_delivery["delivery_id"]}/status',
                          {"new_status": "picked_up"})
    assert response.status_code == 403
    assert "deactivated" in response.get_json()["error"]
    assert _status(temp_db_path, booked_delivery["delivery_id"]) == "assigned"


def test_school_change_applies_to_open_session(client, temp_db_path, booked_delivery, seed_minimal_data,
                                               login_as):
    url = f'/deliveries/{booked_delivery["delivery_id"]}/status'
    login_as("staff")
    _post_json(client, url, {"new_status": "picked_up"})
    _post_json(client, url, {"new_status": "in_transit"})

    login_as("school_admin")
    conn = create_connection(temp_db_path)
    try:
        update_user(conn, seed_minimal_data["school_admin_id"], {"school_id": seed_minimal_data["other_school_id"]})
    finally:
        close_connection(conn)

    response = client.post(f'/deliveries/{booked_delivery["delivery_id"]}/confirm_receipt')
    assert response.status_code == 400
    assert _status(temp_db_path, booked_delivery["delivery_id"]) == "in_transit"
