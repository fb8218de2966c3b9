"""Transaction ledger: one row per STK push, finalized by a conditional write on status."""

from datetime import datetime, timedelta
from typing import Any, Literal

from beanie import UpdateResponse
from pymongo.errors import DuplicateKeyError

from app.core.exceptions import ConflictError
from app.models.transaction import Transaction


async def create_pending(
    order_id: str,
    transaction_ref: str,
    amount: int,
    phone_number: str,
    request_echo: dict[str, Any],
    acknowledgment: dict[str, Any] | None = None,
    merchant_request_id: str | None = None,
) -> Transaction:
    txn = Transaction(
        order_id=order_id,
        transaction_ref=transaction_ref,
        merchant_request_id=merchant_request_id,
        amount=amount,
        phone_number=phone_number,
        status="pending",
        payment_details={"request": request_echo, "acknowledgment": acknowledgment or {}},
    )
    try:
        await txn.insert()
    except DuplicateKeyError:
        raise ConflictError("Transaction reference already recorded", details={"transaction_ref": transaction_ref})
    return txn


async def get_by_ref(transaction_ref: str) -> Transaction | None:
    return await Transaction.find_one(Transaction.transaction_ref == transaction_ref)


async def finalize(
    transaction_ref: str,
    status: Literal["completed", "failed"],
    result_code: str,
    result_desc: str,
    result_details: dict[str, Any],
    receipt_number: str | None = None,
) -> Transaction | None:
    """
    Compare-and-set pending -> terminal. Returns the updated row, or None when
    no pending row matched (unknown ref, or already finalized by another delivery).
    """
    now = datetime.utcnow()
    fields: dict[str, Any] = {
        "status": status,
        "result_code": result_code,
        "result_desc": result_desc,
        "payment_details.result": result_details,
        "updated_at": now,
    }
    if receipt_number:
        fields["receipt_number"] = receipt_number
    return await Transaction.find_one(
        {"transaction_ref": transaction_ref, "status": "pending"}
    ).update({"$set": fields}, response_type=UpdateResponse.NEW_DOCUMENT)


async def latest_for_order(order_id: str) -> Transaction | None:
    items = await list_for_order(order_id, limit=1)
    return items[0] if items else None


async def list_for_order(order_id: str, limit: int | None = None) -> list[Transaction]:
    """Newest first; _id breaks ties between rows created in the same millisecond."""
    query = Transaction.find(Transaction.order_id == order_id).sort(-Transaction.created_at, -Transaction.id)
    if limit:
        query = query.limit(limit)
    return await query.to_list()


async def completed_for_order(order_id: str) -> list[Transaction]:
    return await Transaction.find(
        Transaction.order_id == order_id,
        Transaction.status == "completed",
    ).to_list()


async def recently_finalized(window: timedelta, limit: int = 200) -> list[Transaction]:
    """Terminal rows finalized within the window, newest first."""
    cutoff = datetime.utcnow() - window
    return (
        await Transaction.find(
            {"status": {"$in": ["completed", "failed"]}},
            Transaction.updated_at >= cutoff,
        )
        .sort(-Transaction.updated_at)
        .limit(limit)
        .to_list()
    )


async def stale_pending(older_than: timedelta, limit: int = 50) -> list[Transaction]:
    cutoff = datetime.utcnow() - older_than
    return (
        await Transaction.find(
            Transaction.status == "pending",
            Transaction.created_at <= cutoff,
        )
        .sort(+Transaction.created_at)
        .limit(limit)
        .to_list()
    )
