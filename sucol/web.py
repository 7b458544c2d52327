"""Browser console for administrators, meter readers and residents."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional

import httpx
from fastapi import FastAPI, File, Form, Request, UploadFile, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware

from .api_client import BillingAPIClient, SucolAPIError
from .billing import (
    ReadingValidationError,
    billing_status,
    calculate_bill,
    current_month_records,
    current_month_summary,
    filter_by_settlement,
    latest_per_customer,
    matches_status,
    parse_reading,
    payable_amount,
    select_bill_to_pay,
    sort_oldest_first,
    status_badge,
    tariff_drift,
    unpaid_records,
)
from .config import Settings, load_settings
from .kpis import admin_kpis, month_label, resident_kpis
from .models import ConsumptionRecord, Notification
from .money import ZERO, format_amount, format_peso
from .notices import DispatchInProgressError, NoticeDispatcher
from .notifications import (
    NotificationFeed,
    has_pending_payment,
    is_unread,
    mark_read,
    pending_payment_alerts,
    resident_feed,
)
from .payments import (
    PaymentValidationError,
    ProofUpload,
    format_short_date,
    record_exact_payment,
    send_receipt,
    submit_payment_proof,
)
from .sessions import (
    ROLE_ADMIN,
    ROLE_METER_READER,
    ROLE_RESIDENT,
    SessionIdentity,
    current_identity,
    sign_in,
    sign_out,
)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"
STATIC_DIR = Path(__file__).resolve().parent / "static"

logger = logging.getLogger("sucol.web")

LOGIN_ROUTES = {
    ROLE_ADMIN: "admin_login_form",
    ROLE_METER_READER: "reader_login_form",
    ROLE_RESIDENT: "resident_login_form",
}

HOME_ROUTES = {
    ROLE_ADMIN: "admin_dashboard",
    ROLE_METER_READER: "reader_dashboard",
    ROLE_RESIDENT: "resident_dashboard",
}

ACCESS_DENIED = {
    ROLE_ADMIN: "Access denied. This page is for admin only.",
    ROLE_METER_READER: "Access denied. This page is for meter readers only.",
}

LOGIN_TITLES = {
    ROLE_ADMIN: "Admin Login",
    ROLE_METER_READER: "Meter Reader Login",
    ROLE_RESIDENT: "Resident Login",
}


class FeedItem(BaseModel):
    id: int
    title: str
    message: str
    type: str
    unread: bool
    created_at: Optional[datetime] = None


class FeedResponse(BaseModel):
    unread: int
    items: List[FeedItem]


def _feed_response(feed: NotificationFeed) -> FeedResponse:
    return FeedResponse(
        unread=feed.unread_count,
        items=[
            FeedItem(
                id=item.id,
                title=item.title,
                message=item.message,
                type=item.type,
                unread=is_unread(item.is_read),
                created_at=item.created_at,
            )
            for item in feed.items
        ],
    )


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not str(value).strip():
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _group_by_user(records: List[ConsumptionRecord]) -> Dict[int, List[ConsumptionRecord]]:
    grouped: Dict[int, List[ConsumptionRecord]] = defaultdict(list)
    for record in records:
        grouped[record.user_id].append(record)
    return grouped


def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    today: Optional[date] = None,
) -> FastAPI:
    """Create the Sucol web console.

    ``transport`` is handed to every :class:`BillingAPIClient` the app opens,
    which lets tests answer API calls in-process. ``today`` pins the
    calendar used for month-based selection.
    """

    if settings is None:
        settings = load_settings()
    if not settings.session_secret:
        raise RuntimeError("SUCOL_SESSION_SECRET must be configured to use the web console")

    app = FastAPI(
        title="Sucol Water System",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.notice_lock = asyncio.Lock()

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie="sucol_session",
        https_only=settings.session_secure,
        same_site="lax",
        max_age=60 * 60 * 12,
    )
    if STATIC_DIR.is_dir():
        app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    templates.env.globals["api_base_url"] = settings.api_base_url
    templates.env.globals["poll_interval"] = settings.poll_interval
    templates.env.filters["peso"] = format_peso
    templates.env.filters["amount"] = format_amount
    templates.env.filters["badge"] = status_badge
    templates.env.filters["short_date"] = format_short_date
    templates.env.filters["month_label"] = month_label

    def _today() -> date:
        return today or date.today()

    def _client(identity: Optional[SessionIdentity] = None) -> BillingAPIClient:
        return BillingAPIClient(
            settings.api_base_url,
            token=identity.token if identity else None,
            timeout=settings.api_timeout,
            transport=transport,
        )

    def _flash(request: Request, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    def _redirect(
        request: Request, name: str, *, query: Optional[Dict[str, object]] = None
    ) -> RedirectResponse:
        url = request.url_for(name)
        if query:
            url = url.include_query_params(**query)
        return RedirectResponse(url, status_code=status.HTTP_303_SEE_OTHER)

    def _redirect_to_login(request: Request, role: str) -> RedirectResponse:
        return _redirect(request, LOGIN_ROUTES[role])

    def _require(request: Request, role: str) -> Optional[SessionIdentity]:
        identity = current_identity(request.session)
        if identity is None or identity.role != role:
            return None
        return identity

    def _render(
        request: Request,
        template: str,
        identity: Optional[SessionIdentity],
        context: Optional[Dict[str, object]] = None,
        *,
        active: str = "",
    ):
        payload: Dict[str, object] = {
            "request": request,
            "identity": identity,
            "flash_messages": _consume_flash(request),
            "active": active,
            "today": _today(),
        }
        payload.update(context or {})
        return templates.TemplateResponse(request, template, payload)

    # landing + authentication ------------------------------------------

    @app.get("/", response_class=HTMLResponse, name="landing")
    async def landing(request: Request):
        identity = current_identity(request.session)
        if identity is not None:
            return _redirect(request, HOME_ROUTES[identity.role])
        return _render(request, "landing.html", None)

    def _login_page(request: Request, role: str):
        identity = current_identity(request.session)
        if identity is not None and identity.role == role:
            return _redirect(request, HOME_ROUTES[role])
        error = request.session.pop("login_error", None)
        return _render(
            request,
            "login.html",
            None,
            {
                "role": role,
                "title": LOGIN_TITLES[role],
                "action": request.url_for(LOGIN_ROUTES[role]),
                "error": error,
            },
        )

    async def _process_login(request: Request, role: str, username: str, password: str):
        username = username.strip()
        if not username or not password:
            request.session["login_error"] = "Username and password are required."
            return _redirect_to_login(request, role)

        async with _client() as client:
            try:
                if role == ROLE_RESIDENT:
                    result = await client.login_resident(username, password)
                else:
                    result = await client.login_staff(username, password)
            except SucolAPIError:
                logger.exception("Login request for %s failed", username)
                request.session["login_error"] = "Login failed. Please try again."
                return _redirect_to_login(request, role)

        if not result.success:
            request.session["login_error"] = result.message or "Login failed. Check credentials."
            return _redirect_to_login(request, role)
        if result.role != role:
            logger.warning("User %s with role %r tried the %s login", username, result.role, role)
            request.session["login_error"] = ACCESS_DENIED.get(role, "Access denied.")
            return _redirect_to_login(request, role)
        if role == ROLE_RESIDENT and result.user_id is None:
            request.session["login_error"] = "Login failed. Check credentials."
            return _redirect_to_login(request, role)

        sign_in(
            request.session,
            SessionIdentity(
                user_id=result.user_id,
                role=role,
                token=result.token,
                name=result.name or username,
            ),
        )
        logger.info("%s %s signed in", role, username)
        return _redirect(request, HOME_ROUTES[role])

    @app.get("/admin/login", response_class=HTMLResponse, name="admin_login_form")
    async def admin_login_form(request: Request):
        return _login_page(request, ROLE_ADMIN)

    @app.post("/admin/login", name="admin_login")
    async def admin_login(request: Request, username: str = Form(""), password: str = Form("")):
        return await _process_login(request, ROLE_ADMIN, username, password)

    @app.get("/reader/login", response_class=HTMLResponse, name="reader_login_form")
    async def reader_login_form(request: Request):
        return _login_page(request, ROLE_METER_READER)

    @app.post("/reader/login", name="reader_login")
    async def reader_login(request: Request, username: str = Form(""), password: str = Form("")):
        return await _process_login(request, ROLE_METER_READER, username, password)

    @app.get("/resident/login", response_class=HTMLResponse, name="resident_login_form")
    async def resident_login_form(request: Request):
        return _login_page(request, ROLE_RESIDENT)

    @app.post("/resident/login", name="resident_login")
    async def resident_login(request: Request, username: str = Form(""), password: str = Form("")):
        return await _process_login(request, ROLE_RESIDENT, username, password)

    @app.post("/logout", name="logout")
    async def logout(request: Request):
        sign_out(request.session)
        return _redirect(request, "landing")

    # admin ---------------------------------------------------------------

    @app.get("/admin", response_class=HTMLResponse, name="admin_dashboard")
    async def admin_dashboard(
        request: Request, year: Optional[str] = None, month: Optional[str] = None
    ):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        selected_year = _optional_int(year)
        selected_month = _optional_int(month)
        records: List[ConsumptionRecord] = []
        async with _client(identity) as client:
            try:
                records = await client.list_consumptions()
            except SucolAPIError:
                logger.exception("Failed to load consumption records for the dashboard")
                _flash(request, "Failed to load dashboard data.", category="error")

        kpis = admin_kpis(records, year=selected_year, month=selected_month)
        return _render(
            request,
            "admin/dashboard.html",
            identity,
            {
                "kpis": kpis,
                "selected_year": selected_year,
                "selected_month": selected_month,
                "months": [(number, date(2000, number, 1).strftime("%B")) for number in range(1, 13)],
            },
            active="dashboard",
        )

    @app.get("/admin/records", response_class=HTMLResponse, name="admin_records")
    async def admin_records(
        request: Request,
        user_filter: str = "all",
        payment_status: str = "all",
        selected: Optional[str] = None,
    ):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        today = _today()
        selected_id = _optional_int(selected)
        rows = []
        proofs = []
        async with _client(identity) as client:
            try:
                users = await client.list_users()
                records = await client.list_consumptions()
                alerts = await client.list_admin_notifications()
                if selected_id is not None:
                    proofs = [
                        {"proof": proof, "image_url": client.proof_image_url(proof.proof_url)}
                        for proof in await client.list_pending_payments(selected_id)
                    ]
            except SucolAPIError:
                logger.exception("Failed to load payment records")
                _flash(request, "Failed to load records.", category="error")
                users, records, alerts = [], [], []

        by_user = _group_by_user(records)
        for user in users:
            if not user.is_active:
                continue
            pending = has_pending_payment(alerts, user.id)
            if user_filter == "pending" and not pending:
                continue
            if user_filter == "approved" and pending:
                continue
            current = current_month_records(by_user.get(user.id, []), today)
            latest = current[0] if current else None
            if not matches_status(latest, payment_status):
                continue
            rows.append(
                {
                    "user": user,
                    "pending": pending,
                    "current": [
                        {"record": record, "status": billing_status(record)} for record in current
                    ],
                    "expanded": user.id == selected_id,
                }
            )

        return _render(
            request,
            "admin/records.html",
            identity,
            {
                "rows": rows,
                "user_filter": user_filter,
                "payment_status": payment_status,
                "selected_id": selected_id,
                "proofs": proofs,
            },
            active="records",
        )

    @app.post("/admin/payments/{user_id}/{record_id}", name="admin_record_payment")
    async def admin_record_payment(
        request: Request,
        user_id: int,
        record_id: int,
        amount: str = Form(""),
        return_to: str = Form("records"),
    ):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        def _back() -> RedirectResponse:
            if return_to == "unpaid":
                return _redirect(request, "admin_unpaid")
            return _redirect(request, "admin_records", query={"selected": user_id})

        async with _client(identity) as client:
            try:
                records = await client.list_user_payments(user_id)
            except SucolAPIError:
                logger.exception("Failed to load bills for user %s", user_id)
                _flash(request, "Failed to record payment.", category="error")
                return _back()

            record = next((item for item in records if item.id == record_id), None)
            if record is None:
                _flash(request, "Bill not found.", category="error")
                return _back()

            try:
                outcome = await record_exact_payment(
                    client, user_id=user_id, record=record, raw_amount=amount, today=_today()
                )
            except PaymentValidationError as exc:
                _flash(request, str(exc), category="error")
                return _back()
            except SucolAPIError:
                logger.exception("Failed to record payment for bill %s", record_id)
                _flash(request, "Failed to record payment.", category="error")
                return _back()

            try:
                alerts = await client.list_admin_notifications()
                for alert in pending_payment_alerts(alerts, user_id):
                    await client.mark_admin_notification_read(alert.id)
            except SucolAPIError:
                logger.exception("Failed to clear payment alerts for user %s", user_id)

        # the redirect target re-reads the bills
        if outcome.warning:
            _flash(request, outcome.warning, category="error")
        else:
            _flash(
                request,
                f"Payment of {format_peso(outcome.amount)} recorded and receipt sent.",
                category="success",
            )
        return _back()

    @app.post("/admin/receipts/{user_id}/{record_id}", name="admin_generate_receipt")
    async def admin_generate_receipt(request: Request, user_id: int, record_id: int):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        async with _client(identity) as client:
            try:
                receipt = await send_receipt(
                    client, user_id=user_id, consumption_id=record_id, today=_today()
                )
            except SucolAPIError:
                logger.exception("Failed to generate receipt for bill %s", record_id)
                _flash(request, "Failed to generate receipt.", category="error")
            else:
                _flash(request, f"Receipt {receipt.receipt_number} sent.", category="success")
        return _redirect(request, "admin_records", query={"selected": user_id})

    @app.post("/admin/records/{user_id}/notice", name="admin_personal_notice")
    async def admin_personal_notice(
        request: Request, user_id: int, title: str = Form(""), message: str = Form("")
    ):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        if not title.strip() or not message.strip():
            _flash(request, "Title and message are required.", category="error")
        else:
            async with _client(identity) as client:
                try:
                    await client.send_notification(
                        user_id=user_id, title=title.strip(), message=message.strip(), type="personal"
                    )
                except SucolAPIError:
                    logger.exception("Failed to send personal notice to user %s", user_id)
                    _flash(request, "Failed to send notice.", category="error")
                else:
                    _flash(request, "Notice sent.", category="success")
        return _redirect(request, "admin_records", query={"selected": user_id})

    @app.get("/admin/unpaid", response_class=HTMLResponse, name="admin_unpaid")
    async def admin_unpaid(request: Request):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        records: List[ConsumptionRecord] = []
        async with _client(identity) as client:
            try:
                records = await client.list_consumptions()
            except SucolAPIError:
                logger.exception("Failed to load unpaid records")
                _flash(request, "Failed to load unpaid records.", category="error")

        rows = [
            {"record": record, "status": billing_status(record)} for record in unpaid_records(records)
        ]
        return _render(request, "admin/unpaid.html", identity, {"rows": rows}, active="unpaid")

    @app.get("/admin/notifications", response_class=HTMLResponse, name="admin_notifications")
    async def admin_notifications(request: Request):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        notifications: List[Notification] = []
        async with _client(identity) as client:
            try:
                notifications = await client.list_all_notifications()
            except SucolAPIError:
                logger.exception("Failed to load notifications")
                _flash(request, "Failed to load notifications.", category="error")
        return _render(
            request,
            "admin/notifications.html",
            identity,
            {"notifications": notifications},
            active="notifications",
        )

    @app.post("/admin/notifications", name="admin_broadcast")
    async def admin_broadcast(request: Request, title: str = Form(""), message: str = Form("")):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        if not title.strip() or not message.strip():
            _flash(request, "Title and message are required.", category="error")
            return _redirect(request, "admin_notifications")

        async with _client(identity) as client:
            try:
                await client.send_notification(
                    user_id=None, title=title.strip(), message=message.strip(), type="broadcast"
                )
            except SucolAPIError:
                logger.exception("Failed to broadcast notification")
                _flash(request, "Failed to send notification.", category="error")
            else:
                _flash(request, "Notification sent successfully!", category="success")
        return _redirect(request, "admin_notifications")

    @app.get("/admin/customers", response_class=HTMLResponse, name="admin_customers")
    async def admin_customers(request: Request):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        users = []
        overdue = []
        async with _client(identity) as client:
            try:
                users = await client.list_users()
                overdue = await client.list_overdue_users()
            except SucolAPIError:
                logger.exception("Failed to load customers")
                _flash(request, "Failed to load customers.", category="error")
        return _render(
            request,
            "admin/customers.html",
            identity,
            {
                "users": users,
                "overdue": overdue,
                "sending": app.state.notice_lock.locked(),
            },
            active="customers",
        )

    @app.post("/admin/customers", name="admin_register_customer")
    async def admin_register_customer(
        request: Request,
        name: str = Form(""),
        username: str = Form(""),
        password: str = Form(""),
    ):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        if not name.strip() or not username.strip() or not password:
            _flash(request, "All fields are required.", category="error")
            return _redirect(request, "admin_customers")

        async with _client(identity) as client:
            try:
                await client.register_user(name.strip(), username.strip(), password)
            except SucolAPIError:
                logger.exception("Failed to register customer %s", username)
                _flash(request, "Failed to add customer.", category="error")
            else:
                logger.info("Registered customer %s", username)
                _flash(request, "Customer Added!", category="success")
        return _redirect(request, "admin_customers")

    @app.post("/admin/customers/{user_id}/status/{action}", name="admin_customer_status")
    async def admin_customer_status(request: Request, user_id: int, action: str):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        if action not in {"deactivate", "reactivate"}:
            return JSONResponse({"detail": "Unsupported action"}, status_code=status.HTTP_404_NOT_FOUND)

        async with _client(identity) as client:
            try:
                if action == "deactivate":
                    await client.deactivate_user(user_id)
                else:
                    await client.reactivate_user(user_id)
            except SucolAPIError:
                logger.exception("Failed to %s user %s", action, user_id)
                _flash(request, "Failed to update user status", category="error")
            else:
                label = "User deactivated" if action == "deactivate" else "User reactivated"
                _flash(request, label, category="success")
        return _redirect(request, "admin_customers")

    @app.post("/admin/customers/{user_id}/password", name="admin_reset_password")
    async def admin_reset_password(request: Request, user_id: int, new_password: str = Form("")):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        if not new_password:
            _flash(request, "Enter a new password.", category="error")
            return _redirect(request, "admin_customers")

        async with _client(identity) as client:
            try:
                await client.reset_user_password(user_id, new_password)
            except SucolAPIError:
                logger.exception("Failed to reset password for user %s", user_id)
                _flash(request, "Failed to reset password.", category="error")
            else:
                _flash(request, "Password reset.", category="success")
        return _redirect(request, "admin_customers")

    @app.post("/admin/notices", name="admin_send_all_notices")
    async def admin_send_all_notices(request: Request):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        async with _client(identity) as client:
            dispatcher = NoticeDispatcher(
                client.send_deactivation_notice, lock=app.state.notice_lock
            )
            try:
                overdue = await client.list_overdue_users()
                report = await dispatcher.send_all(overdue)
            except DispatchInProgressError:
                _flash(request, "Notices are already being sent.", category="error")
                return _redirect(request, "admin_customers")
            except SucolAPIError:
                logger.exception("Failed to load overdue users")
                _flash(request, "Failed to load overdue users.", category="error")
                return _redirect(request, "admin_customers")

        if report.failed:
            names = ", ".join(notice.name or str(notice.user_id) for notice in report.failed)
            _flash(
                request,
                f"Sent {len(report.sent)} notice(s); failed for {names}.",
                category="error",
            )
        else:
            _flash(request, f"Sent {len(report.sent)} notice(s).", category="success")
        return _redirect(request, "admin_customers")

    @app.post("/admin/notices/{user_id}", name="admin_send_notice")
    async def admin_send_notice(request: Request, user_id: int):
        identity = _require(request, ROLE_ADMIN)
        if identity is None:
            return _redirect_to_login(request, ROLE_ADMIN)

        async with _client(identity) as client:
            dispatcher = NoticeDispatcher(
                client.send_deactivation_notice, lock=app.state.notice_lock
            )
            try:
                overdue = await client.list_overdue_users()
            except SucolAPIError:
                logger.exception("Failed to load overdue users")
                _flash(request, "Failed to load overdue users.", category="error")
                return _redirect(request, "admin_customers")

            notice = next((item for item in overdue if item.user_id == user_id), None)
            if notice is None:
                _flash(request, "User is not overdue.", category="error")
            elif notice.notice_sent:
                _flash(request, "Notice already sent.", category="info")
            elif await dispatcher.send_one(notice):
                _flash(request, f"Notice sent to {notice.name or user_id}.", category="success")
            else:
                _flash(request, "Failed to send notice.", category="error")
        return _redirect(request, "admin_customers")

    # meter reader ----------------------------------------------------------

    @app.get("/reader", response_class=HTMLResponse, name="reader_dashboard")
    async def reader_dashboard(
        request: Request,
        status_filter: str = "all",
        selected: Optional[str] = None,
        cubic: Optional[str] = None,
    ):
        identity = _require(request, ROLE_METER_READER)
        if identity is None:
            return _redirect_to_login(request, ROLE_METER_READER)

        records: List[ConsumptionRecord] = []
        async with _client(identity) as client:
            try:
                records = await client.list_consumptions()
            except SucolAPIError:
                logger.exception("Failed to load consumptions")
                _flash(request, "Failed to load customers.", category="error")

        customers = latest_per_customer(records)
        selected_id = _optional_int(selected)
        selected_customer = next(
            (record for record in customers if record.user_id == selected_id), None
        )
        preview = None
        if cubic is not None and str(cubic).strip():
            preview = calculate_bill(cubic, settings.tariff)

        return _render(
            request,
            "reader/dashboard.html",
            identity,
            {
                "customers": filter_by_settlement(customers, status_filter),
                "status_filter": status_filter,
                "selected": selected_customer,
                "cubic": cubic or "",
                "preview": preview,
                "tariff": settings.tariff,
            },
            active="readings",
        )

    def _reader_back(request: Request, user_id: Optional[int]) -> RedirectResponse:
        if user_id is None:
            return _redirect(request, "reader_dashboard")
        return _redirect(request, "reader_dashboard", query={"selected": user_id})

    def _check_drift(record: ConsumptionRecord) -> None:
        drift = tariff_drift(record, settings.tariff)
        if drift != ZERO:
            logger.warning(
                "Bill %s total %s differs from the local tariff preview by %s",
                record.id,
                record.total_bill,
                drift,
            )

    @app.post("/reader/readings", name="reader_add_reading")
    async def reader_add_reading(
        request: Request,
        user_id: int = Form(...),
        name: str = Form(""),
        cubic_used: str = Form(""),
    ):
        identity = _require(request, ROLE_METER_READER)
        if identity is None:
            return _redirect_to_login(request, ROLE_METER_READER)

        try:
            usage = parse_reading(cubic_used)
        except ReadingValidationError as exc:
            _flash(request, str(exc), category="error")
            return _reader_back(request, user_id)

        async with _client(identity) as client:
            try:
                record = await client.add_consumption(user_id=user_id, name=name, cubic_used=usage)
            except SucolAPIError as exc:
                logger.warning("Failed to record reading for user %s: %s", user_id, exc.message)
                _flash(request, exc.message or "Failed to record reading.", category="error")
                return _reader_back(request, user_id)

        _check_drift(record)
        _flash(request, "New reading recorded successfully!", category="success")
        return _reader_back(request, user_id)

    @app.post("/reader/readings/{record_id}", name="reader_update_reading")
    async def reader_update_reading(
        request: Request,
        record_id: int,
        user_id: Optional[int] = Form(None),
        cubic_used: str = Form(""),
    ):
        identity = _require(request, ROLE_METER_READER)
        if identity is None:
            return _redirect_to_login(request, ROLE_METER_READER)

        try:
            usage = parse_reading(cubic_used)
        except ReadingValidationError as exc:
            _flash(request, str(exc), category="error")
            return _reader_back(request, user_id)

        async with _client(identity) as client:
            try:
                record = await client.update_consumption(record_id, cubic_used=usage)
            except SucolAPIError as exc:
                logger.warning("Failed to update reading %s: %s", record_id, exc.message)
                _flash(request, exc.message or "Failed to update reading.", category="error")
                return _reader_back(request, user_id)

        _check_drift(record)
        _flash(request, "Reading updated.", category="success")
        return _reader_back(request, user_id)

    @app.post("/reader/readings/{record_id}/delete", name="reader_delete_reading")
    async def reader_delete_reading(request: Request, record_id: int):
        identity = _require(request, ROLE_METER_READER)
        if identity is None:
            return _redirect_to_login(request, ROLE_METER_READER)

        async with _client(identity) as client:
            try:
                await client.delete_consumption(record_id)
            except SucolAPIError as exc:
                logger.warning("Failed to delete reading %s: %s", record_id, exc.message)
                _flash(request, exc.message or "Failed to delete reading.", category="error")
            else:
                _flash(request, "Reading deleted.", category="success")
        return _reader_back(request, None)

    # resident --------------------------------------------------------------

    @app.get("/resident", response_class=HTMLResponse, name="resident_dashboard")
    async def resident_dashboard(request: Request):
        identity = _require(request, ROLE_RESIDENT)
        if identity is None:
            return _redirect_to_login(request, ROLE_RESIDENT)

        records: List[ConsumptionRecord] = []
        notices: List[Notification] = []
        async with _client(identity) as client:
            try:
                records = await client.list_user_consumptions(identity.user_id)
                notices = await client.list_user_notices(identity.user_id)
            except SucolAPIError:
                logger.exception("Failed to load dashboard for resident %s", identity.user_id)
                _flash(request, "Failed to load your billing history.", category="error")

        return _render(
            request,
            "resident/dashboard.html",
            identity,
            {"kpis": resident_kpis(records), "notices": notices},
            active="dashboard",
        )

    @app.post("/resident/notices/{notice_id}/read", name="resident_notice_read")
    async def resident_notice_read(request: Request, notice_id: int):
        identity = _require(request, ROLE_RESIDENT)
        if identity is None:
            return _redirect_to_login(request, ROLE_RESIDENT)

        async with _client(identity) as client:
            try:
                await client.mark_notice_read(notice_id)
            except SucolAPIError:
                logger.exception("Failed to mark notice %s as read", notice_id)
                _flash(request, "Failed to update notice.", category="error")
        return _redirect(request, "resident_dashboard")

    @app.get("/resident/payment", response_class=HTMLResponse, name="resident_payment")
    async def resident_payment(request: Request):
        identity = _require(request, ROLE_RESIDENT)
        if identity is None:
            return _redirect_to_login(request, ROLE_RESIDENT)

        today = _today()
        records: List[ConsumptionRecord] = []
        pending_bills = set()
        async with _client(identity) as client:
            try:
                records = await client.list_user_payments(identity.user_id)
                pending_bills = {
                    proof.bill_id
                    for proof in await client.list_pending_payments(identity.user_id)
                    if proof.status == "pending"
                }
            except SucolAPIError:
                logger.exception("Failed to load bills for resident %s", identity.user_id)
                _flash(request, "Failed to load your bills.", category="error")

        selection = select_bill_to_pay(records, today)
        history = []
        for record in reversed(sort_oldest_first(records)):
            label = billing_status(record).value
            if record.id in pending_bills or record.pending_amount > ZERO:
                label = "Pending"
            history.append({"record": record, "status": label})

        return _render(
            request,
            "resident/payment.html",
            identity,
            {
                "selection": selection,
                "amount_due": payable_amount(selection.bill) if selection.bill else ZERO,
                "summary": current_month_summary(
                    records, today, blocked=selection.current_month_blocked
                ),
                "history": history,
            },
            active="payment",
        )

    @app.post("/resident/payment", name="resident_submit_payment")
    async def resident_submit_payment(
        request: Request,
        reference_code: str = Form(""),
        proof: Optional[UploadFile] = File(None),
    ):
        identity = _require(request, ROLE_RESIDENT)
        if identity is None:
            return _redirect_to_login(request, ROLE_RESIDENT)

        upload = None
        if proof is not None and proof.filename:
            upload = ProofUpload(
                filename=proof.filename,
                content=await proof.read(),
                content_type=proof.content_type or "application/octet-stream",
            )

        async with _client(identity) as client:
            try:
                records = await client.list_user_payments(identity.user_id)
                plan = await submit_payment_proof(
                    client,
                    user_id=identity.user_id,
                    records=records,
                    reference_code=reference_code,
                    proof=upload,
                    today=_today(),
                )
            except PaymentValidationError as exc:
                _flash(request, str(exc), category="error")
                return _redirect(request, "resident_payment")
            except SucolAPIError as exc:
                logger.warning("Payment submission for resident %s failed: %s", identity.user_id, exc.message)
                _flash(request, exc.message or "Payment failed!", category="error")
                return _redirect(request, "resident_payment")

        _flash(
            request,
            f"Payment proof for {format_peso(plan.amount)} submitted. Please wait for verification.",
            category="success",
        )
        return _redirect(request, "resident_payment")

    # notification feed -----------------------------------------------------

    def _feed_unauthorized() -> JSONResponse:
        return JSONResponse(
            {"detail": "Authentication required"},
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    async def _load_feed(client: BillingAPIClient, identity: SessionIdentity) -> NotificationFeed:
        if identity.role == ROLE_ADMIN:
            items = await client.list_admin_notifications()
        elif identity.role == ROLE_RESIDENT:
            items = resident_feed(await client.list_user_notifications(identity.user_id), identity.user_id)
        else:
            items = [item for item in await client.list_all_notifications() if item.is_broadcast]
        return NotificationFeed(items)

    @app.get("/feed/notifications", response_model=FeedResponse, name="notification_feed")
    async def notification_feed(request: Request):
        identity = current_identity(request.session)
        if identity is None:
            return _feed_unauthorized()

        async with _client(identity) as client:
            try:
                feed = await _load_feed(client, identity)
            except SucolAPIError:
                logger.exception("Failed to refresh notification feed")
                return JSONResponse(
                    {"detail": "Failed to load notifications"},
                    status_code=status.HTTP_502_BAD_GATEWAY,
                )
        return _feed_response(feed)

    @app.post(
        "/feed/notifications/{notification_id}/read",
        response_model=FeedResponse,
        name="notification_mark_read",
    )
    async def notification_mark_read(request: Request, notification_id: int):
        identity = current_identity(request.session)
        if identity is None:
            return _feed_unauthorized()

        async with _client(identity) as client:
            try:
                feed = await _load_feed(client, identity)
            except SucolAPIError:
                logger.exception("Failed to refresh notification feed")
                return JSONResponse(
                    {"detail": "Failed to load notifications"},
                    status_code=status.HTTP_502_BAD_GATEWAY,
                )
            marker = (
                client.mark_admin_notification_read
                if identity.role == ROLE_ADMIN
                else client.mark_notification_read
            )
            if not await mark_read(feed, notification_id, marker):
                return JSONResponse(
                    {"detail": "Failed to mark notification as read"},
                    status_code=status.HTTP_502_BAD_GATEWAY,
                )
        return _feed_response(feed)

    return app


__all__ = ["FeedItem", "FeedResponse", "create_app"]
