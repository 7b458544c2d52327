from __future__ import annotations

import json
import logging
from datetime import date

import httpx
from fastapi.testclient import TestClient

from conftest import BASE_URL
from sucol.config import Settings
from sucol.web import create_app

TODAY = date(2025, 5, 10)


def _app(fake_api):
    return create_app(
        Settings(api_base_url=BASE_URL, session_secret="not-so-secret"),
        transport=fake_api.transport,
        today=TODAY,
    )


def _login_admin(client, fake_api) -> None:
    fake_api.on(
        "POST",
        "/adminreader/loginadminreader",
        {"success": True, "role": "admin", "token": "admin-token", "name": "Admin", "id": 1},
    )
    response = client.post(
        "/admin/login", data={"username": "admin", "password": "pw"}, follow_redirects=False
    )
    assert response.status_code == 303


def _login_reader(client, fake_api) -> None:
    fake_api.on(
        "POST",
        "/adminreader/loginadminreader",
        {"success": True, "role": "meter_reader", "token": "reader-token", "name": "Reader", "id": 2},
    )
    response = client.post(
        "/reader/login", data={"username": "reader", "password": "pw"}, follow_redirects=False
    )
    assert response.status_code == 303


def _login_resident(client, fake_api) -> None:
    fake_api.on(
        "POST",
        "/user/login",
        {"success": True, "token": "resident-token", "user": {"id": 7, "name": "Ana"}},
    )
    response = client.post(
        "/resident/login", data={"username": "ana", "password": "pw"}, follow_redirects=False
    )
    assert response.status_code == 303


OPEN_BILL = {
    "id": 11,
    "user_id": 7,
    "name": "Ana",
    "billing_date": "2025-05-02",
    "cubic_used": 6,
    "total_bill": 270,
    "remaining_balance": 270,
}


def test_admin_dashboard_shows_month_kpis(fake_api) -> None:
    fake_api.on(
        "GET",
        "/consumption/all",
        {
            "data": [
                dict(OPEN_BILL, payment_1=100, remaining_balance=170),
                {"id": 12, "user_id": 8, "billing_date": "2025-04-03", "total_bill": 500, "payment_1": 500},
            ]
        },
    )

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        everything = client.get("/admin")
        may_only = client.get("/admin", params={"year": "2025", "month": "5"})

    assert everything.status_code == 200
    assert "₱600.00" in everything.text
    assert "₱100.00" in may_only.text
    assert "₱500.00" not in may_only.text


def test_partial_payment_is_refused_before_any_write(fake_api) -> None:
    fake_api.on("GET", "/payment/user/7", {"data": [OPEN_BILL]})
    fake_api.on("GET", "/consumption/all", {"data": [OPEN_BILL]})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        page = client.post("/admin/payments/7/11", data={"amount": "200", "return_to": "unpaid"})

    assert page.status_code == 200
    assert "Payment must be exactly ₱270.00. Partial payments are not allowed." in page.text
    assert fake_api.calls("POST", "/payment/record") == []


def test_exact_payment_records_sends_receipt_and_clears_alert(fake_api) -> None:
    fake_api.on("GET", "/payment/user/7", {"data": [OPEN_BILL]})
    fake_api.on("POST", "/payment/record", {"success": True})
    fake_api.on(
        "GET",
        "/receipt/11",
        {"data": {"receipt_number": "OR-0011", "name": "Ana", "billing_date": "2025-05-02", "total_paid": 270}},
    )
    fake_api.on("POST", "/notifications/send", {"success": True})
    fake_api.on(
        "GET",
        "/notifications/admin",
        {
            "data": [
                {"id": 40, "user_id": 7, "title": "Payment submitted", "message": "m", "is_read": 0},
                {"id": 41, "user_id": 8, "title": "Payment submitted", "message": "m", "is_read": 0},
            ]
        },
    )
    fake_api.on("PUT", "/notifications/admin/read/40", {"success": True})
    fake_api.on("GET", "/consumption/all", {"data": []})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        page = client.post("/admin/payments/7/11", data={"amount": "270.00", "return_to": "unpaid"})

    assert "Payment of ₱270.00 recorded and receipt sent." in page.text
    assert fake_api.bodies("POST", "/payment/record") == [{"payment_id": 11, "amount": 270.0}]
    (receipt,) = fake_api.bodies("POST", "/notifications/send")
    assert receipt["title"] == "Official Receipt: OR-0011"
    assert receipt["user_id"] == 7
    assert fake_api.calls("PUT", "/notifications/admin/read/41") == []
    assert len(fake_api.calls("PUT", "/notifications/admin/read/40")) == 1


def test_receipt_failure_keeps_the_payment(fake_api) -> None:
    fake_api.on("GET", "/payment/user/7", {"data": [OPEN_BILL]})
    fake_api.on("POST", "/payment/record", {"success": True})
    fake_api.on("GET", "/receipt/11", (500, {"message": "boom"}))
    fake_api.on("GET", "/notifications/admin", {"data": []})
    fake_api.on("GET", "/consumption/all", {"data": []})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        page = client.post("/admin/payments/7/11", data={"amount": "270", "return_to": "unpaid"})

    assert "the receipt could not be sent" in page.text
    assert len(fake_api.calls("POST", "/payment/record")) == 1


def test_send_all_notices_reports_failures(fake_api) -> None:
    fake_api.on(
        "GET",
        "/deact-notice/overdue",
        {
            "users": [
                {"user_id": 1, "name": "Ana", "billing_date": "2025-02-01"},
                {"user_id": 2, "name": "Ben", "billing_date": "2025-02-01"},
                {"user_id": 3, "name": "Cora", "billing_date": "2025-02-01", "notice_sent": 1},
            ]
        },
    )

    def send(request):
        if json.loads(request.content)["user_id"] == 2:
            return httpx.Response(500, json={"message": "mailer down"})
        return httpx.Response(200, json={"success": True})

    fake_api.on("POST", "/deact-notice/send", send)
    fake_api.on("GET", "/user/all", {"message": []})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        page = client.post("/admin/notices")

    assert "Sent 1 notice(s); failed for Ben." in page.text
    sent_to = [body["user_id"] for body in fake_api.bodies("POST", "/deact-notice/send")]
    assert sent_to == [1, 2]


def test_single_notice_is_not_resent(fake_api) -> None:
    fake_api.on(
        "GET",
        "/deact-notice/overdue",
        {"users": [{"user_id": 3, "name": "Cora", "notice_sent": True}]},
    )
    fake_api.on("GET", "/user/all", {"message": []})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        already = client.post("/admin/notices/3")
        missing = client.post("/admin/notices/99")

    assert "Notice already sent." in already.text
    assert "User is not overdue." in missing.text
    assert fake_api.calls("POST", "/deact-notice/send") == []


def test_customer_registration_requires_every_field(fake_api) -> None:
    fake_api.on("GET", "/user/all", {"message": []})
    fake_api.on("GET", "/deact-notice/overdue", {"users": []})
    fake_api.on("POST", "/user/register", {"success": True})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        incomplete = client.post("/admin/customers", data={"name": "Dan", "username": "", "password": "x"})
        complete = client.post("/admin/customers", data={"name": "Dan", "username": "dan", "password": "x"})

    assert "All fields are required." in incomplete.text
    assert "Customer Added!" in complete.text
    assert fake_api.bodies("POST", "/user/register") == [{"name": "Dan", "username": "dan", "password": "x"}]


def test_broadcast_notification(fake_api) -> None:
    fake_api.on("POST", "/notifications/send", {"success": True})
    fake_api.on("GET", "/notifications/all", {"notifications": []})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        page = client.post("/admin/notifications", data={"title": "Water interruption", "message": "Friday"})

    assert "Notification sent successfully!" in page.text
    (body,) = fake_api.bodies("POST", "/notifications/send")
    assert body["type"] == "broadcast"
    assert body["user_id"] is None


def test_reader_rejects_non_positive_reading(fake_api) -> None:
    fake_api.on("GET", "/consumption/all", {"data": [OPEN_BILL]})

    with TestClient(_app(fake_api)) as client:
        _login_reader(client, fake_api)
        page = client.post("/reader/readings", data={"user_id": "7", "name": "Ana", "cubic_used": "0"})

    assert "Current reading must be greater than 0." in page.text
    assert fake_api.calls("POST", "/consumption/add") == []


def test_reader_records_reading_and_logs_tariff_drift(fake_api, caplog) -> None:
    fake_api.on("GET", "/consumption/all", {"data": [OPEN_BILL]})
    fake_api.on(
        "POST",
        "/consumption/add",
        {"success": True, "data": {"id": 20, "user_id": 7, "cubic_used": 7, "total_bill": 310}},
    )

    with caplog.at_level(logging.WARNING, logger="sucol.web"):
        with TestClient(_app(fake_api)) as client:
            _login_reader(client, fake_api)
            page = client.post(
                "/reader/readings", data={"user_id": "7", "name": "Ana", "cubic_used": "7"}
            )

    assert "New reading recorded successfully!" in page.text
    assert fake_api.bodies("POST", "/consumption/add") == [{"user_id": 7, "name": "Ana", "cubic_used": 7.0}]
    assert any("differs from the local tariff preview" in record.getMessage() for record in caplog.records)


def test_reader_bill_preview(fake_api) -> None:
    fake_api.on("GET", "/consumption/all", {"data": [OPEN_BILL]})

    with TestClient(_app(fake_api)) as client:
        _login_reader(client, fake_api)
        page = client.get("/reader", params={"selected": "7", "cubic": "7"})

    assert page.status_code == 200
    assert "₱304.00" in page.text


def test_resident_payment_page_targets_current_bill(fake_api) -> None:
    fake_api.on("GET", "/payment/user/7", {"data": [OPEN_BILL]})
    fake_api.on("GET", "/payment/user/7/pending", {"data": []})

    with TestClient(_app(fake_api)) as client:
        _login_resident(client, fake_api)
        page = client.get("/resident/payment")

    assert page.status_code == 200
    assert "₱270.00" in page.text


def test_resident_submission_requires_reference_code(fake_api) -> None:
    fake_api.on("GET", "/payment/user/7", {"data": [OPEN_BILL]})
    fake_api.on("GET", "/payment/user/7/pending", {"data": []})

    with TestClient(_app(fake_api)) as client:
        _login_resident(client, fake_api)
        page = client.post(
            "/resident/payment",
            data={"reference_code": "  "},
            files={"proof": ("gcash.png", b"\x89PNG", "image/png")},
        )

    assert "Enter GCash reference code!" in page.text
    assert fake_api.calls("POST", "/payment/submit-reference") == []


def test_resident_submission_registers_code_then_uploads(fake_api) -> None:
    fake_api.on("GET", "/payment/user/7", {"data": [OPEN_BILL]})
    fake_api.on("GET", "/payment/user/7/pending", {"data": []})
    fake_api.on("POST", "/payment/submit-reference", {"success": True})
    fake_api.on("POST", "/payment/upload-proof", {"success": True})

    with TestClient(_app(fake_api)) as client:
        _login_resident(client, fake_api)
        page = client.post(
            "/resident/payment",
            data={"reference_code": "GC-123"},
            files={"proof": ("gcash.png", b"\x89PNG", "image/png")},
        )

    assert "Payment proof for ₱270.00 submitted. Please wait for verification." in page.text
    assert fake_api.bodies("POST", "/payment/submit-reference") == [
        {"user_id": 7, "bill_id": 11, "reference_code": "GC-123"}
    ]
    (upload,) = fake_api.calls("POST", "/payment/upload-proof")
    assert b'filename="gcash.png"' in upload.content
    assert fake_api.paths().index("POST /payment/submit-reference") < fake_api.paths().index(
        "POST /payment/upload-proof"
    )


def test_admin_feed_and_mark_read(fake_api) -> None:
    alerts = [
        {"id": 1, "user_id": 7, "title": "Payment submitted", "message": "Ana paid", "is_read": 0},
        {"id": 2, "user_id": 8, "title": "Payment submitted", "message": "Ben paid", "is_read": 1},
    ]
    fake_api.on("GET", "/notifications/admin", {"data": alerts})
    fake_api.on("PUT", "/notifications/admin/read/1", {"success": True})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        feed = client.get("/feed/notifications")
        marked = client.post("/feed/notifications/1/read")

    assert feed.status_code == 200
    assert feed.json()["unread"] == 1
    assert [item["id"] for item in feed.json()["items"]] == [1, 2]
    assert marked.status_code == 200
    assert marked.json()["unread"] == 0


def test_resident_feed_hides_other_residents(fake_api) -> None:
    fake_api.on(
        "GET",
        "/notifications/user/7",
        {
            "notifications": [
                {"id": 1, "user_id": 7, "title": "Receipt", "message": "m", "is_read": 0},
                {"id": 2, "user_id": None, "title": "Water interruption", "message": "m", "is_read": 0},
                {"id": 3, "user_id": 9, "title": "Someone else", "message": "m", "is_read": 0},
            ]
        },
    )

    with TestClient(_app(fake_api)) as client:
        _login_resident(client, fake_api)
        feed = client.get("/feed/notifications")

    assert sorted(item["id"] for item in feed.json()["items"]) == [1, 2]


def test_feed_reports_api_failure(fake_api) -> None:
    fake_api.on("GET", "/notifications/admin", (500, {"message": "down"}))

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        response = client.get("/feed/notifications")

    assert response.status_code == 502


def test_settled_bill_is_not_paid_twice(fake_api) -> None:
    settled = dict(OPEN_BILL, payment_1=270, remaining_balance=0)
    fake_api.on("GET", "/payment/user/7", {"data": [settled]})
    fake_api.on("GET", "/consumption/all", {"data": []})

    with TestClient(_app(fake_api)) as client:
        _login_admin(client, fake_api)
        page = client.post("/admin/payments/7/11", data={"amount": "0.01", "return_to": "unpaid"})

    assert "This bill is already fully paid." in page.text
    assert fake_api.calls("POST", "/payment/record") == []
    assert fake_api.calls("GET", "/receipt/11") == []
    assert fake_api.calls("POST", "/notifications/send") == []


def test_feed_script_keeps_mark_read_separate_from_polling(fake_api) -> None:
    with TestClient(_app(fake_api)) as client:
        script = client.get("/static/js/notifications.js")

    assert script.status_code == 200
    assert 'request("poll", feedUrl)' in script.text
    assert 'request("mark", ' in script.text
    assert 'kind === "poll" && controllers.poll' in script.text
