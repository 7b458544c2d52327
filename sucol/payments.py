"""Payment workflows: admin settlement with receipts and resident proof submission."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence, Tuple

from .api_client import BillingAPIClient, SucolAPIError
from .billing import in_payment_window, payable_amount, payment_type, select_bill_to_pay
from .models import ConsumptionRecord, Receipt
from .money import ZERO, format_peso, to_money

logger = logging.getLogger("sucol.payments")

EPSILON = Decimal("0.01")

RECEIPT_FAILURE_MESSAGE = (
    "Payment recorded, but the receipt could not be sent. Generate it again from the records page."
)


class PaymentValidationError(ValueError):
    """Raised before any API call when payment input is unusable."""


def parse_amount(raw: Any) -> Optional[Decimal]:
    if raw is None:
        return None
    text = str(raw).strip().replace(",", "")
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def validate_exact_payment(raw_amount: Any, remaining_balance: Any, *, epsilon: Decimal = EPSILON) -> Decimal:
    """Accept only an amount that settles the remaining balance in full.

    Returns the balance to record. Partial payments are refused here so
    every recorded payment closes its bill.
    """

    entered = parse_amount(raw_amount)
    if entered is None or entered <= 0:
        raise PaymentValidationError("Enter a valid payment amount.")

    remaining = to_money(remaining_balance)
    if remaining <= ZERO:
        raise PaymentValidationError("This bill is already fully paid.")
    if abs(entered - remaining) > epsilon:
        raise PaymentValidationError(
            f"Payment must be exactly {format_peso(remaining)}. Partial payments are not allowed."
        )
    return remaining


def format_short_date(value: Optional[date]) -> str:
    if value is None:
        return "-"
    return f"{value.month}/{value.day}/{value.year}"


def receipt_notification(receipt: Receipt, amount: Decimal, confirmed_on: date) -> Tuple[str, str]:
    title = f"Official Receipt: {receipt.receipt_number}"
    message = (
        f"Hello {receipt.name}, your payment of {format_peso(amount)} for "
        f"{format_short_date(receipt.billing_date)} has been confirmed on "
        f"{format_short_date(confirmed_on)}. Receipt Number: {receipt.receipt_number}"
    )
    return title, message


async def send_receipt(
    client: BillingAPIClient,
    *,
    user_id: int,
    consumption_id: int,
    amount: Optional[Decimal] = None,
    today: Optional[date] = None,
) -> Receipt:
    """Fetch the server receipt for a bill and notify its owner."""

    receipt = await client.get_receipt(consumption_id)
    paid = amount if amount is not None else receipt.total_paid
    title, message = receipt_notification(receipt, paid, today or date.today())
    await client.send_notification(user_id=user_id, title=title, message=message, type="receipt")
    logger.info("Receipt %s sent to user %s", receipt.receipt_number, user_id)
    return receipt


@dataclass
class PaymentOutcome:
    amount: Decimal
    receipt: Optional[Receipt] = None
    warning: Optional[str] = None

    @property
    def notified(self) -> bool:
        return self.receipt is not None


async def record_exact_payment(
    client: BillingAPIClient,
    *,
    user_id: int,
    record: ConsumptionRecord,
    raw_amount: Any,
    today: Optional[date] = None,
) -> PaymentOutcome:
    """Record a full settlement, then send the receipt to the bill's owner.

    Errors from the payment call propagate. Once the payment is stored, a
    failing receipt is logged and reported through ``PaymentOutcome.warning``;
    the payment is never rolled back. Callers re-read the bills themselves.
    """

    amount = validate_exact_payment(raw_amount, record.remaining_balance)
    await client.record_payment(record.id, amount)
    logger.info("Recorded payment of %s against bill %s for user %s", amount, record.id, user_id)

    outcome = PaymentOutcome(amount=amount)
    try:
        outcome.receipt = await send_receipt(
            client, user_id=user_id, consumption_id=record.id, amount=amount, today=today
        )
    except SucolAPIError:
        logger.exception("Payment for bill %s recorded but the receipt step failed", record.id)
        outcome.warning = RECEIPT_FAILURE_MESSAGE

    return outcome


@dataclass(frozen=True)
class ProofUpload:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class SubmissionPlan:
    bill: ConsumptionRecord
    amount: Decimal
    payment_type: str
    reference_code: str
    proof: ProofUpload


def plan_submission(
    records: Sequence[ConsumptionRecord],
    *,
    reference_code: str,
    proof: Optional[ProofUpload],
    today: date,
) -> SubmissionPlan:
    """Validate a resident's payment claim in the order the form reports errors."""

    bill = select_bill_to_pay(records, today).bill
    if bill is None:
        raise PaymentValidationError("No unpaid bill detected to submit proof for.")
    if not in_payment_window(bill, today):
        raise PaymentValidationError("This bill is outside the allowed payment window.")

    code = (reference_code or "").strip()
    if not code:
        raise PaymentValidationError("Enter GCash reference code!")
    if proof is None or not proof.filename or not proof.content:
        raise PaymentValidationError("Upload proof image!")

    amount = payable_amount(bill)
    if amount <= ZERO:
        raise PaymentValidationError("This bill is already fully paid or pending verification.")
    return SubmissionPlan(
        bill=bill,
        amount=amount,
        payment_type=payment_type(bill),
        reference_code=code,
        proof=proof,
    )


async def submit_payment_proof(
    client: BillingAPIClient,
    *,
    user_id: int,
    records: Sequence[ConsumptionRecord],
    reference_code: str,
    proof: Optional[ProofUpload],
    today: Optional[date] = None,
) -> SubmissionPlan:
    """Register the reference code, then upload the proof image.

    The two calls are not atomic. If the upload fails the reference code
    stays registered on the server; that is logged so it can be cleaned up.
    """

    plan = plan_submission(
        records, reference_code=reference_code, proof=proof, today=today or date.today()
    )
    await client.submit_reference_code(
        user_id=user_id, bill_id=plan.bill.id, reference_code=plan.reference_code
    )
    try:
        await client.upload_payment_proof(
            user_id=user_id,
            bill_id=plan.bill.id,
            amount=plan.amount,
            payment_type=plan.payment_type,
            filename=plan.proof.filename,
            content=plan.proof.content,
            content_type=plan.proof.content_type,
        )
    except SucolAPIError:
        logger.warning(
            "Reference code %s for bill %s was registered but the proof upload failed",
            plan.reference_code,
            plan.bill.id,
        )
        raise
    logger.info("User %s submitted %s against bill %s", user_id, plan.amount, plan.bill.id)
    return plan


__all__ = [
    "EPSILON",
    "PaymentOutcome",
    "PaymentValidationError",
    "ProofUpload",
    "RECEIPT_FAILURE_MESSAGE",
    "SubmissionPlan",
    "parse_amount",
    "plan_submission",
    "receipt_notification",
    "record_exact_payment",
    "send_receipt",
    "submit_payment_proof",
    "validate_exact_payment",
]
