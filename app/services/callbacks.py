"""M-Pesa STK callback: parse, finalize the Transaction once, reconcile the Order."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.core.logging import bind_payment_context, get_logger
from app.services import ledger
from app.services import reconciliation

log = get_logger(__name__)

ACK_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Callback processed successfully"}
ACK_REJECTED = {"ResultCode": 1, "ResultDesc": "Invalid callback payload"}


class CallbackOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN_REFERENCE = "unknown_reference"
    DUPLICATE = "duplicate"
    DUPLICATE_PAYMENT = "duplicate_payment"
    INCONSISTENT = "reconciliation_inconsistency"
    INVALID = "invalid_payload"


class CallbackItem(BaseModel):
    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    items: list[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_request_id: str | None = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    metadata: CallbackMetadata | None = Field(default=None, alias="CallbackMetadata")

    def item(self, *names: str) -> Any:
        if not self.metadata:
            return None
        for it in self.metadata.items:
            if it.name in names:
                return it.value
        return None

    def result_details(self) -> dict[str, Any]:
        if self.result_code != 0:
            return {"failureReason": self.result_desc}
        phone = self.item("PhoneNumber")
        return {
            "mpesaReceiptNumber": self.item("MpesaReceiptNumber"),
            "phoneNumber": str(phone) if phone is not None else None,
            "amountPaid": self.item("Amount", "TransactionAmount"),
            "transactionDate": self.item("TransactionDate"),
        }


class CallbackResult(BaseModel):
    outcome: CallbackOutcome
    ack: dict[str, Any]
    transaction_ref: str | None = None


def parse_callback(payload: Any) -> StkCallback:
    """Raises ValueError if the body is not a {Body: {stkCallback: {...}}} envelope."""
    if not isinstance(payload, dict):
        raise ValueError("Callback body must be a JSON object")
    body = payload.get("Body")
    stk = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise ValueError("Missing Body.stkCallback")
    try:
        return StkCallback.model_validate(stk)
    except ValidationError as e:
        raise ValueError(str(e))


async def apply_result(
    transaction_ref: str,
    result_code: int,
    result_desc: str,
    result_details: dict[str, Any],
    source: str = "callback",
) -> CallbackOutcome:
    """
    Shared finalization path for gateway callbacks and status-query recovery.
    Safe under duplicate and concurrent delivery: only one caller wins the
    pending -> terminal write, every other caller sees DUPLICATE.
    """
    bind_payment_context(transaction_ref=transaction_ref)
    txn = await ledger.get_by_ref(transaction_ref)
    if txn is None:
        log.warning("callback_unknown_reference", source=source, result_code=result_code)
        return CallbackOutcome.UNKNOWN_REFERENCE
    bind_payment_context(order_id=txn.order_id)
    if txn.is_terminal:
        log.info("callback_duplicate", source=source, status=txn.status)
        repaired = await reconciliation.repair_if_unsynced(txn)
        if repaired == "inconsistent":
            return CallbackOutcome.INCONSISTENT
        return CallbackOutcome.DUPLICATE

    succeeded = result_code == 0
    receipt = result_details.get("mpesaReceiptNumber") if succeeded else None
    finalized = await ledger.finalize(
        transaction_ref,
        "completed" if succeeded else "failed",
        result_code=str(result_code),
        result_desc=result_desc,
        result_details={**result_details, "source": source},
        receipt_number=receipt,
    )
    if finalized is None:
        log.info("callback_duplicate", source=source, reason="lost_race")
        return CallbackOutcome.DUPLICATE

    amount_paid = result_details.get("amountPaid")
    if succeeded and amount_paid is not None and str(amount_paid) != str(finalized.amount):
        log.warning("callback_amount_mismatch", expected=finalized.amount, received=amount_paid)

    order_result = await reconciliation.sync_order_with_transaction(finalized)
    from app.core.audit import log_event
    await log_event(
        None,
        "payment_completed" if succeeded else "payment_failed",
        "transaction",
        transaction_ref,
        {"order_id": finalized.order_id, "result_code": result_code, "result_desc": result_desc, "source": source},
    )
    log.info(
        "callback_processed",
        source=source,
        transaction_status=finalized.status,
        order_update=order_result,
    )
    if order_result == "inconsistent":
        return CallbackOutcome.INCONSISTENT
    if order_result == "duplicate_payment":
        return CallbackOutcome.DUPLICATE_PAYMENT
    return CallbackOutcome.COMPLETED if succeeded else CallbackOutcome.FAILED


async def handle_callback(payload: Any) -> CallbackResult:
    """Entry point for the gateway webhook. Every parsed callback is acknowledged with ResultCode 0."""
    try:
        stk = parse_callback(payload)
    except ValueError as e:
        log.warning("callback_invalid_payload", error=str(e))
        return CallbackResult(outcome=CallbackOutcome.INVALID, ack=ACK_REJECTED)
    outcome = await apply_result(
        stk.checkout_request_id,
        stk.result_code,
        stk.result_desc,
        stk.result_details(),
        source="callback",
    )
    return CallbackResult(outcome=outcome, ack=ACK_ACCEPTED, transaction_ref=stk.checkout_request_id)
