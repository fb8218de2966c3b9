"""
Bring an Order in line with a finalized Transaction.

The Transaction row commits first (it is the idempotency point). The Order
update is retried with exponential backoff; if it still cannot be applied the
inconsistency is persisted as a ReconciliationIssue and logged at error level
so it is retried by the worker and seen by operators.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId

from app.core.config import get_settings
from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.models.order import Order
from app.models.reconciliation_issue import ReconciliationIssue
from app.models.transaction import Transaction
from app.services import ledger
from app.services import orders as orders_service

log = get_logger(__name__)


async def _apply_order_update(txn: Transaction) -> str:
    if txn.status == "completed":
        return await orders_service.mark_paid(txn.order_id, txn.transaction_ref, txn.receipt_number)
    if txn.status == "failed":
        return await orders_service.mark_failed(txn.order_id, txn.transaction_ref, txn.result_desc)
    return "skipped"


async def open_issue(
    kind: str,
    txn: Transaction,
    reason: str,
    details: dict[str, Any] | None = None,
) -> ReconciliationIssue:
    """One open issue per (transaction_ref, kind)."""
    existing = await ReconciliationIssue.find_one(
        ReconciliationIssue.transaction_ref == txn.transaction_ref,
        ReconciliationIssue.kind == kind,
        ReconciliationIssue.status == "open",
    )
    if existing:
        return existing
    issue = ReconciliationIssue(
        kind=kind,
        order_id=txn.order_id,
        transaction_ref=txn.transaction_ref,
        target_payment_status="paid" if txn.status == "completed" else "failed",
        reason=reason[:2000],
        details=details or {},
    )
    await issue.insert()
    return issue


def _signal(event: str, **fields: Any) -> None:
    log.error(event, **fields)
    if get_settings().sentry_dsn:
        import sentry_sdk
        sentry_sdk.capture_message(f"{event}: {fields}", level="error")


async def sync_order_with_transaction(txn: Transaction) -> str:
    """
    Returns "applied", "skipped", "duplicate_payment" or "inconsistent".
    """
    settings = get_settings()
    attempts = max(1, settings.order_update_max_attempts)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = await _apply_order_update(txn)
        except Exception as e:
            last_error = e
            log.warning("order_update_retry", attempt=attempt, order_id=txn.order_id, error=str(e))
            if attempt < attempts:
                await asyncio.sleep(settings.order_update_backoff_seconds * 2 ** (attempt - 1))
            continue
        if result == "already_paid":
            # Two pushes for one order were both authorized; the payer was charged twice.
            await open_issue(
                "duplicate_payment",
                txn,
                "Order already settled by another transaction",
                {"amount": txn.amount, "receipt_number": txn.receipt_number},
            )
            log.warning("duplicate_payment", order_id=txn.order_id, transaction_ref=txn.transaction_ref)
            return "duplicate_payment"
        return result

    _signal(
        "reconciliation_inconsistency",
        order_id=txn.order_id,
        transaction_ref=txn.transaction_ref,
        transaction_status=txn.status,
        error=str(last_error),
    )
    await open_issue(
        "order_update_failed",
        txn,
        str(last_error),
        {"error_type": type(last_error).__name__},
    )
    return "inconsistent"


async def order_needs_sync(txn: Transaction) -> bool:
    """
    True when a finalized Transaction is not reflected on its Order and no
    issue records it, e.g. the process died between the two writes. Rows with
    an open order_update_failed issue are left to the issue retry job.
    """
    order = await Order.get(txn.order_id)
    if order is None:
        return False
    pending_retry = await ReconciliationIssue.find_one(
        ReconciliationIssue.transaction_ref == txn.transaction_ref,
        ReconciliationIssue.kind == "order_update_failed",
        ReconciliationIssue.status == "open",
    )
    if pending_retry is not None:
        return False
    if txn.status == "completed":
        if order.payment_status not in ("paid", "refunded"):
            return True
        if order.paid_transaction_ref == txn.transaction_ref:
            return False
        flagged = await ReconciliationIssue.find_one(
            ReconciliationIssue.transaction_ref == txn.transaction_ref,
            ReconciliationIssue.kind == "duplicate_payment",
        )
        return flagged is None
    if txn.status == "failed":
        if order.payment_status != "pending":
            return False
        # A failure of an older attempt must not fail the order while a newer push is open.
        latest = await ledger.latest_for_order(txn.order_id)
        if latest is None or latest.transaction_ref != txn.transaction_ref:
            return False
        return not await ledger.completed_for_order(txn.order_id)
    return False


async def repair_if_unsynced(txn: Transaction) -> str | None:
    """Re-run the Order update for a finalized Transaction. None when the Order already agrees."""
    if not await order_needs_sync(txn):
        return None
    log.warning("order_out_of_sync", order_id=txn.order_id, transaction_ref=txn.transaction_ref, status=txn.status)
    return await sync_order_with_transaction(txn)


async def sweep_unsynced_transactions(lookback_hours: int, limit: int = 200) -> dict[str, int]:
    """Check recently finalized Transactions against their Orders."""
    recent = await ledger.recently_finalized(timedelta(hours=lookback_hours), limit=limit)
    counts = {"checked": len(recent), "repaired": 0, "inconsistent": 0}
    for txn in recent:
        result = await repair_if_unsynced(txn)
        if result is None:
            continue
        if result == "inconsistent":
            counts["inconsistent"] += 1
        else:
            counts["repaired"] += 1
    if counts["repaired"] or counts["inconsistent"]:
        log.info("unsynced_transaction_sweep", **counts)
    return counts


async def retry_issue(issue: ReconciliationIssue) -> ReconciliationIssue:
    """Single attempt at the Order update behind an open order_update_failed issue."""
    now = datetime.utcnow()
    txn = await ledger.get_by_ref(issue.transaction_ref)
    if txn is None:
        issue.attempts += 1
        issue.reason = "Transaction not found"
        issue.updated_at = now
        await issue.save()
        return issue
    try:
        result = await _apply_order_update(txn)
    except Exception as e:
        issue.attempts += 1
        issue.reason = str(e)[:2000]
        issue.updated_at = now
        await issue.save()
        log.warning("reconciliation_retry_failed", issue_id=str(issue.id), attempts=issue.attempts, error=str(e))
        return issue
    issue.status = "resolved"
    issue.attempts += 1
    issue.details = {**issue.details, "resolution": result}
    issue.updated_at = now
    await issue.save()
    log.info("reconciliation_resolved", issue_id=str(issue.id), resolution=result)
    if result == "already_paid":
        await open_issue("duplicate_payment", txn, "Order already settled by another transaction")
    return issue


async def retry_open_issues(limit: int = 50) -> dict[str, int]:
    issues = (
        await ReconciliationIssue.find(
            ReconciliationIssue.status == "open",
            ReconciliationIssue.kind == "order_update_failed",
        )
        .sort(+ReconciliationIssue.created_at)
        .limit(limit)
        .to_list()
    )
    resolved = 0
    for issue in issues:
        issue = await retry_issue(issue)
        if issue.status == "resolved":
            resolved += 1
    if issues:
        log.info("reconciliation_retry_run", checked=len(issues), resolved=resolved)
    return {"checked": len(issues), "resolved": resolved}


async def get_issue(issue_id: str) -> ReconciliationIssue:
    try:
        oid = PydanticObjectId(issue_id)
    except Exception:
        raise NotFoundError("Reconciliation issue not found")
    issue = await ReconciliationIssue.get(oid)
    if not issue:
        raise NotFoundError("Reconciliation issue not found")
    return issue


async def list_issues(status: str | None = "open", limit: int = 50, offset: int = 0) -> list[ReconciliationIssue]:
    query = ReconciliationIssue.find(ReconciliationIssue.status == status) if status else ReconciliationIssue.find_all()
    return await query.sort(-ReconciliationIssue.created_at).skip(offset).limit(limit).to_list()
