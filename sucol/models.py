"""Records returned by the Sucol billing API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from .money import to_decimal, to_money


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, returning ``None`` when it is unusable."""

    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    try:
        return datetime.strptime(text[:10], "%Y-%m-%d")
    except ValueError:
        return None


def parse_date(value: Any) -> Optional[date]:
    parsed = parse_datetime(value)
    return parsed.date() if parsed is not None else None


@dataclass(frozen=True)
class User:
    """A resident account as listed by the billing API."""

    id: int
    name: str
    username: str
    is_active: bool = True
    created_at: Optional[datetime] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "User":
        if "is_active" in data:
            is_active = _as_bool(data.get("is_active"))
        else:
            is_active = not _as_bool(data.get("is_deactivated", False))
        return User(
            id=_as_int(data.get("id", data.get("user_id"))) or 0,
            name=_as_text(data.get("name")),
            username=_as_text(data.get("username")),
            is_active=is_active,
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class ConsumptionRecord:
    """One billing cycle for one resident."""

    id: int
    user_id: int
    name: str = ""
    billing_date: Optional[date] = None
    previous_reading: Decimal = Decimal(0)
    present_reading: Decimal = Decimal(0)
    cubic_used: Decimal = Decimal(0)
    total_bill: Decimal = Decimal("0.00")
    payment_1: Decimal = Decimal("0.00")
    payment_2: Decimal = Decimal("0.00")
    payment_total: Decimal = Decimal("0.00")
    remaining_balance: Decimal = Decimal("0.00")
    pending_amount: Decimal = Decimal("0.00")
    created_at: Optional[datetime] = None
    payment_1_date: Optional[datetime] = None
    payment_2_date: Optional[datetime] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ConsumptionRecord":
        payment_1 = to_money(data.get("payment_1"))
        payment_2 = to_money(data.get("payment_2"))
        if data.get("payment_total") is not None:
            payment_total = to_money(data.get("payment_total"))
        else:
            payment_total = payment_1 + payment_2
        present = data.get("present_reading", data.get("current_reading"))
        return ConsumptionRecord(
            id=_as_int(data.get("id")) or 0,
            user_id=_as_int(data.get("user_id")) or 0,
            name=_as_text(data.get("name")),
            billing_date=parse_date(data.get("billing_date")),
            previous_reading=to_decimal(data.get("previous_reading")),
            present_reading=to_decimal(present),
            cubic_used=to_decimal(data.get("cubic_used")),
            total_bill=to_money(data.get("total_bill")),
            payment_1=payment_1,
            payment_2=payment_2,
            payment_total=payment_total,
            remaining_balance=to_money(data.get("remaining_balance")),
            pending_amount=to_money(data.get("pending_amount")),
            created_at=parse_datetime(data.get("created_at")),
            payment_1_date=parse_datetime(data.get("payment_1_date")),
            payment_2_date=parse_datetime(data.get("payment_2_date")),
        )

    @property
    def effective_date(self) -> Optional[date]:
        """Billing date, falling back to the creation date."""

        if self.billing_date is not None:
            return self.billing_date
        if self.created_at is not None:
            return self.created_at.date()
        return None


@dataclass(frozen=True)
class PaymentProof:
    """A resident's unverified payment claim awaiting admin review."""

    id: int
    user_id: int
    bill_id: Optional[int]
    reference_code: str
    proof_url: str
    pending_amount: Decimal
    status: str

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "PaymentProof":
        return PaymentProof(
            id=_as_int(data.get("id")) or 0,
            user_id=_as_int(data.get("user_id")) or 0,
            bill_id=_as_int(data.get("bill_id")),
            reference_code=_as_text(data.get("reference_code")),
            proof_url=_as_text(data.get("proof_url", data.get("proof_image"))),
            pending_amount=to_money(data.get("pending_amount", data.get("amount"))),
            status=_as_text(data.get("status")) or "pending",
        )


@dataclass(frozen=True)
class Notification:
    """A personal, receipt, or broadcast message shown in the header dropdown."""

    id: int
    user_id: Optional[int]
    title: str
    message: str
    type: str = "personal"
    is_read: Any = 0
    created_at: Optional[datetime] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Notification":
        user_id = _as_int(data.get("user_id"))
        kind = _as_text(data.get("type")) or ("broadcast" if user_id is None else "personal")
        return Notification(
            id=_as_int(data.get("id")) or 0,
            user_id=user_id,
            title=_as_text(data.get("title")),
            message=_as_text(data.get("message")),
            type=kind,
            is_read=data.get("is_read", 0),
            created_at=parse_datetime(data.get("created_at")),
        )

    @property
    def is_broadcast(self) -> bool:
        return self.user_id is None


@dataclass
class DeactivationNotice:
    """Tracks whether an overdue resident has been warned about deactivation.

    ``notice_sent`` is flipped locally once the notice call succeeds.
    """

    user_id: int
    name: str = ""
    billing_date: Optional[date] = None
    due_date: Optional[date] = None
    remaining_balance: Decimal = Decimal("0.00")
    notice_sent: bool = False
    raw_billing_date: Optional[str] = field(default=None, repr=False)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "DeactivationNotice":
        raw_date = data.get("billing_date")
        return DeactivationNotice(
            user_id=_as_int(data.get("user_id")) or 0,
            name=_as_text(data.get("name")),
            billing_date=parse_date(raw_date),
            due_date=parse_date(data.get("due_date")),
            remaining_balance=to_money(data.get("remaining_balance")),
            notice_sent=_as_bool(data.get("notice_sent", False)),
            raw_billing_date=str(raw_date) if raw_date is not None else None,
        )


@dataclass(frozen=True)
class Receipt:
    """Server-generated receipt for a settled bill."""

    receipt_number: str
    name: str
    billing_date: Optional[date]
    total_paid: Decimal

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Receipt":
        return Receipt(
            receipt_number=_as_text(data.get("receipt_number")),
            name=_as_text(data.get("name")),
            billing_date=parse_date(data.get("billing_date")),
            total_paid=to_money(data.get("total_paid")),
        )


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a login call against either login endpoint."""

    success: bool
    role: str
    token: str
    name: str
    user_id: Optional[int]
    message: str

    @staticmethod
    def from_dict(data: Mapping[str, Any], *, default_role: str = "") -> "LoginResult":
        user = data.get("user")
        nested: Mapping[str, Any] = user if isinstance(user, Mapping) else {}
        message = _as_text(data.get("message"))
        token = _as_text(data.get("token")) or message
        user_id = _as_int(
            data.get("user_id", data.get("id", nested.get("id", nested.get("user_id"))))
        )
        return LoginResult(
            success=_as_bool(data.get("success", False)),
            role=_as_text(data.get("role", nested.get("role"))) or default_role,
            token=token,
            name=_as_text(data.get("name", nested.get("name"))),
            user_id=user_id,
            message=message,
        )


__all__ = [
    "ConsumptionRecord",
    "DeactivationNotice",
    "LoginResult",
    "Notification",
    "PaymentProof",
    "Receipt",
    "User",
    "parse_date",
    "parse_datetime",
]
