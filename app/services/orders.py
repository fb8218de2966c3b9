"""Order payment state: conditional transitions, status query, manual updates."""

from datetime import datetime
from typing import Any

from beanie import UpdateResponse

from app.core.exceptions import ConflictError, NotFoundError, ValidationFailure
from app.models.order import PAYMENT_STATUSES, SYSTEM_USER, Order, StatusHistoryEntry
from app.models.transaction import Transaction
from app.services import ledger

SETTLED_STATUSES = ("paid", "refunded")


async def get_order(order_id: str) -> Order:
    order = await Order.get(order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


def _history(status: str, note: str, created_by: str = SYSTEM_USER) -> dict[str, Any]:
    return StatusHistoryEntry(status=status, note=note, created_by=created_by).model_dump()


async def mark_pending(order_id: str) -> bool:
    """failed -> pending for a fresh attempt. No-op when already pending; never touches paid/refunded."""
    updated = await Order.find_one({"_id": order_id, "payment_status": "failed"}).update(
        {"$set": {"payment_status": "pending", "updated_at": datetime.utcnow()}},
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    return updated is not None


async def mark_paid(order_id: str, transaction_ref: str, receipt_number: str | None) -> str:
    """
    Settle the order with a completed Transaction.
    Returns "applied", or "already_paid" when a different Transaction settled it first.
    Re-applying the same Transaction is reported as "applied".
    """
    now = datetime.utcnow()
    note = f"Payment received via M-Pesa. Receipt: {receipt_number or 'n/a'}"
    updated = await Order.find_one(
        {"_id": order_id, "payment_status": {"$nin": list(SETTLED_STATUSES)}}
    ).update(
        {
            "$set": {
                "payment_status": "paid",
                "payment_date": now,
                "paid_transaction_ref": transaction_ref,
                "updated_at": now,
            },
            "$push": {"status_history": _history("confirmed", note)},
        },
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        order = await get_order(order_id)
        if order.paid_transaction_ref == transaction_ref:
            return "applied"
        return "already_paid"
    await Order.find_one({"_id": order_id, "status": "pending"}).update(
        {"$set": {"status": "confirmed", "updated_at": now}}
    )
    return "applied"


async def mark_failed(order_id: str, transaction_ref: str, reason: str | None) -> str:
    """
    pending -> failed, unless any Transaction for the order has completed.
    Returns "applied" or "skipped".
    """
    if await ledger.completed_for_order(order_id):
        return "skipped"
    now = datetime.utcnow()
    updated = await Order.find_one({"_id": order_id, "payment_status": "pending"}).update(
        {
            "$set": {"payment_status": "failed", "updated_at": now},
            "$push": {"status_history": _history("payment_failed", f"{transaction_ref}: {reason or 'failed'}")},
        },
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        await get_order(order_id)
        return "skipped"
    return "applied"


async def set_payment_status(order_id: str, payment_status: str, note: str = "", actor: str = "operator") -> Order:
    """Manual override by an operator. A settled (paid or refunded) order never returns to pending or failed."""
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationFailure("Invalid payment status", details={"allowed": list(PAYMENT_STATUSES)})
    order = await get_order(order_id)
    if order.payment_status in SETTLED_STATUSES and payment_status not in SETTLED_STATUSES:
        raise ConflictError(
            f"A {order.payment_status} order cannot return to {payment_status}",
            details={"from": order.payment_status, "to": payment_status},
        )
    previous = order.payment_status
    updated = await Order.find_one({"_id": order_id, "payment_status": previous}).update(
        {
            "$set": {"payment_status": payment_status, "updated_at": datetime.utcnow()},
            "$push": {"status_history": _history(f"payment_{payment_status}", note, created_by=actor)},
        },
        response_type=UpdateResponse.NEW_DOCUMENT,
    )
    if updated is None:
        raise ConflictError("Order payment status changed concurrently, retry")
    from app.core.audit import log_event
    await log_event(
        actor,
        "payment_status_manual_update",
        "order",
        order_id,
        {"from": previous, "to": payment_status, "note": note},
    )
    return updated


def _receipt(txn: Transaction | None) -> str | None:
    if not txn:
        return None
    if txn.receipt_number:
        return txn.receipt_number
    result = txn.payment_details.get("result") or {}
    return result.get("mpesaReceiptNumber")


async def get_payment_status(order_id: str) -> dict[str, Any]:
    """Order payment_status joined with its newest Transaction. Always read from the database."""
    order = await get_order(order_id)
    txn = await ledger.latest_for_order(order_id)
    return {
        "success": True,
        "paymentStatus": order.payment_status,
        "transactionStatus": txn.status if txn else None,
        "transactionRef": txn.transaction_ref if txn else None,
        "receiptNumber": _receipt(txn),
    }
