"""Async HTTP client for the Sucol billing REST API."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .models import (
    ConsumptionRecord,
    DeactivationNotice,
    LoginResult,
    Notification,
    PaymentProof,
    Receipt,
    User,
)

logger = logging.getLogger("sucol.api")

UPLOADS_PREFIX = "/uploads"


class SucolAPIError(RuntimeError):
    """Raised when the billing API cannot be reached or rejects a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: object | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("API base URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def _unwrap_list(payload: object, *keys: str) -> List[Mapping[str, Any]]:
    """Return the first list found under *keys*, or the payload itself when it is a list."""

    candidate: object = payload
    if isinstance(payload, dict):
        candidate = None
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                candidate = value
                break
    if not isinstance(candidate, list):
        return []
    return [item for item in candidate if isinstance(item, Mapping)]


def _unwrap_object(payload: object, *keys: str) -> Mapping[str, Any]:
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, Mapping):
                return value
        return payload
    return {}


def _json_amount(value: Decimal | float | int) -> float:
    return float(value)


def _json_date(value: date | str | None) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return value.isoformat()


class BillingAPIClient:
    """Typed wrappers around the billing API, grouped by resource prefix.

    One instance is meant to live for a single page request or CLI run and
    be closed afterwards, which also abandons any request still in flight.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = _normalize_base_url(base_url)
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> "BillingAPIClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if not path.startswith("/"):
            path = "/" + path
        logger.debug("%s %s", method, path)
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                params=params,
                data=data,
                files=files,
            )
        except httpx.RequestError as exc:
            raise SucolAPIError(f"Failed to contact the billing API: {exc}") from exc

        if response.status_code >= 400:
            try:
                parsed: object = response.json()
            except ValueError:
                parsed = response.text
            message = _extract_error_message(
                parsed, f"Billing API request failed with status {response.status_code}"
            )
            raise SucolAPIError(message, status_code=response.status_code, payload=parsed)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise SucolAPIError("Billing API returned an invalid response") from exc

    @staticmethod
    def _ensure_success(payload: Any, default: str) -> Any:
        if isinstance(payload, dict) and payload.get("success") is False:
            raise SucolAPIError(_extract_error_message(payload, default), payload=payload)
        return payload

    # users ------------------------------------------------------------

    async def login_resident(self, username: str, password: str) -> LoginResult:
        try:
            payload = await self._request(
                "POST", "/user/login", json={"username": username, "password": password}
            )
        except SucolAPIError as exc:
            if exc.status_code is not None and isinstance(exc.payload, dict):
                return LoginResult.from_dict(exc.payload, default_role="resident")
            raise
        return LoginResult.from_dict(_unwrap_object(payload), default_role="resident")

    async def register_user(self, name: str, username: str, password: str) -> Any:
        payload = await self._request(
            "POST",
            "/user/register",
            json={"name": name, "username": username, "password": password},
        )
        return self._ensure_success(payload, "Failed to register customer")

    async def list_users(self) -> List[User]:
        payload = await self._request("GET", "/user/all")
        return [User.from_dict(item) for item in _unwrap_list(payload, "message", "data", "users")]

    async def reset_user_password(self, user_id: int, new_password: str) -> Any:
        payload = await self._request(
            "POST", f"/user/reset-password/{user_id}", json={"newPassword": new_password}
        )
        return self._ensure_success(payload, "Failed to reset password")

    async def deactivate_user(self, user_id: int) -> Any:
        payload = await self._request("PUT", f"/user/deactivate/{user_id}")
        return self._ensure_success(payload, "Failed to deactivate user")

    async def reactivate_user(self, user_id: int) -> Any:
        payload = await self._request("PUT", f"/user/reactivate/{user_id}")
        return self._ensure_success(payload, "Failed to reactivate user")

    # admin + meter reader ---------------------------------------------

    async def login_staff(self, username: str, password: str) -> LoginResult:
        try:
            payload = await self._request(
                "POST",
                "/adminreader/loginadminreader",
                json={"username": username, "password": password},
            )
        except SucolAPIError as exc:
            if exc.status_code is not None and isinstance(exc.payload, dict):
                return LoginResult.from_dict(exc.payload)
            raise
        return LoginResult.from_dict(_unwrap_object(payload))

    # consumption ------------------------------------------------------

    async def list_consumptions(self) -> List[ConsumptionRecord]:
        payload = await self._request("GET", "/consumption/all")
        return [ConsumptionRecord.from_dict(item) for item in _unwrap_list(payload, "data")]

    async def list_user_consumptions(self, user_id: int) -> List[ConsumptionRecord]:
        payload = await self._request("GET", f"/consumption/user/{user_id}")
        return [ConsumptionRecord.from_dict(item) for item in _unwrap_list(payload, "data")]

    async def add_consumption(
        self, *, user_id: int, name: str, cubic_used: Decimal | float
    ) -> ConsumptionRecord:
        payload = await self._request(
            "POST",
            "/consumption/add",
            json={"user_id": user_id, "name": name, "cubic_used": _json_amount(cubic_used)},
        )
        self._ensure_success(payload, "Failed to record reading.")
        return ConsumptionRecord.from_dict(_unwrap_object(payload, "data"))

    async def update_consumption(
        self, consumption_id: int, *, cubic_used: Decimal | float
    ) -> ConsumptionRecord:
        payload = await self._request(
            "PATCH",
            f"/consumption/update/{consumption_id}",
            json={"cubic_used": _json_amount(cubic_used)},
        )
        self._ensure_success(payload, "Failed to update reading.")
        return ConsumptionRecord.from_dict(_unwrap_object(payload, "data"))

    async def delete_consumption(self, consumption_id: int) -> Any:
        payload = await self._request("DELETE", f"/consumption/delete/{consumption_id}")
        return self._ensure_success(payload, "Failed to delete reading.")

    async def list_monthly_income(
        self, *, year: Optional[int] = None, month: Optional[int] = None
    ) -> List[Mapping[str, Any]]:
        params: Dict[str, Any] = {}
        if year:
            params["year"] = year
        if month:
            params["month"] = month
        payload = await self._request("GET", "/monthly-income/all", params=params or None)
        return _unwrap_list(payload, "data")

    # payments ---------------------------------------------------------

    async def list_user_payments(self, user_id: int) -> List[ConsumptionRecord]:
        payload = await self._request("GET", f"/payment/user/{user_id}")
        return [ConsumptionRecord.from_dict(item) for item in _unwrap_list(payload, "data")]

    async def list_pending_payments(self, user_id: int) -> List[PaymentProof]:
        payload = await self._request("GET", f"/payment/user/{user_id}/pending")
        return [PaymentProof.from_dict(item) for item in _unwrap_list(payload, "data")]

    async def record_payment(self, payment_id: int, amount: Decimal) -> Any:
        payload = await self._request(
            "POST",
            "/payment/record",
            json={"payment_id": payment_id, "amount": _json_amount(amount)},
        )
        return self._ensure_success(payload, "Failed to record payment.")

    async def submit_reference_code(self, *, user_id: int, bill_id: int, reference_code: str) -> Any:
        payload = await self._request(
            "POST",
            "/payment/submit-reference",
            json={"user_id": user_id, "bill_id": bill_id, "reference_code": reference_code},
        )
        return self._ensure_success(payload, "Failed to submit reference code.")

    async def upload_payment_proof(
        self,
        *,
        user_id: int,
        bill_id: int,
        amount: Decimal,
        payment_type: str,
        filename: str,
        content: bytes,
        content_type: str = "application/octet-stream",
    ) -> Any:
        payload = await self._request(
            "POST",
            "/payment/upload-proof",
            data={
                "user_id": str(user_id),
                "bill_id": str(bill_id),
                "amount": str(amount),
                "payment_type": payment_type,
            },
            files={"proof": (filename, content, content_type)},
        )
        return self._ensure_success(payload, "Failed to upload payment proof.")

    def proof_image_url(self, proof_url: str) -> str:
        """Absolute URL for a proof image served from the API's upload folder."""

        cleaned = (proof_url or "").strip()
        if not cleaned or cleaned.startswith(("http://", "https://")):
            return cleaned
        if cleaned.startswith("/"):
            return f"{self._base_url}{cleaned}"
        return f"{self._base_url}{UPLOADS_PREFIX}/{cleaned}"

    # notifications ----------------------------------------------------

    async def send_notification(
        self,
        *,
        user_id: Optional[int],
        title: str,
        message: str,
        type: str = "personal",
    ) -> Any:
        payload = await self._request(
            "POST",
            "/notifications/send",
            json={"user_id": user_id, "title": title, "message": message, "type": type},
        )
        return self._ensure_success(payload, "Failed to send notification.")

    async def list_user_notifications(self, user_id: int) -> List[Notification]:
        payload = await self._request("GET", f"/notifications/user/{user_id}")
        return [
            Notification.from_dict(item)
            for item in _unwrap_list(payload, "notifications", "data")
        ]

    async def list_all_notifications(self) -> List[Notification]:
        payload = await self._request("GET", "/notifications/all")
        return [
            Notification.from_dict(item)
            for item in _unwrap_list(payload, "notifications", "data")
        ]

    async def mark_notification_read(self, notification_id: int) -> Any:
        return await self._request("PUT", f"/notifications/read/{notification_id}")

    async def list_admin_notifications(self) -> List[Notification]:
        payload = await self._request("GET", "/notifications/admin")
        return [
            Notification.from_dict(item)
            for item in _unwrap_list(payload, "data", "notifications")
        ]

    async def mark_admin_notification_read(self, notification_id: int) -> Any:
        return await self._request("PUT", f"/notifications/admin/read/{notification_id}")

    # deactivation notices ---------------------------------------------

    async def list_overdue_users(self) -> List[DeactivationNotice]:
        payload = await self._request("GET", "/deact-notice/overdue")
        return [DeactivationNotice.from_dict(item) for item in _unwrap_list(payload, "users", "data")]

    async def send_deactivation_notice(
        self, *, user_id: int, billing_date: date | str | None = None
    ) -> Any:
        body: Dict[str, Any] = {"user_id": user_id}
        if billing_date is not None:
            body["billing_date"] = _json_date(billing_date)
        payload = await self._request("POST", "/deact-notice/send", json=body)
        return self._ensure_success(payload, "Failed to send notice.")

    async def list_user_notices(self, user_id: int) -> List[Notification]:
        payload = await self._request("GET", f"/deact-notice/user/{user_id}")
        return [
            Notification.from_dict(item)
            for item in _unwrap_list(payload, "notifications", "data")
        ]

    async def mark_notice_read(self, notice_id: int) -> Any:
        return await self._request("PUT", f"/deact-notice/read/{notice_id}")

    # receipts ---------------------------------------------------------

    async def get_receipt(self, consumption_id: int) -> Receipt:
        payload = await self._request("GET", f"/receipt/{consumption_id}")
        return Receipt.from_dict(_unwrap_object(payload, "data"))


__all__ = ["BillingAPIClient", "SucolAPIError", "UPLOADS_PREFIX"]
