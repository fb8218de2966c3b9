"""Recover late or lost callbacks by asking the gateway for the push outcome."""

from datetime import timedelta
from typing import Any

from app.core.exceptions import AppError
from app.core.logging import get_logger
from app.models.transaction import Transaction
from app.services import ledger
from app.services.callbacks import CallbackOutcome, apply_result
from app.services.daraja import DarajaClient

log = get_logger(__name__)


def _result_code(body: dict[str, Any]) -> int | None:
    """ResultCode from a query response; None while the push is still being processed."""
    raw = body.get("ResultCode")
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


async def reconcile_pending_transaction(client: DarajaClient, txn: Transaction) -> CallbackOutcome | None:
    """Query one pending Transaction. Returns None when the gateway has no final answer yet."""
    if txn.is_terminal:
        return CallbackOutcome.DUPLICATE
    body = await client.query_stk_status(txn.transaction_ref)
    code = _result_code(body)
    if code is None:
        log.info("stk_query_still_pending", transaction_ref=txn.transaction_ref, body=body)
        return None
    desc = str(body.get("ResultDesc") or "")
    details: dict[str, Any] = {"query": body}
    if code != 0:
        details["failureReason"] = desc
    return await apply_result(txn.transaction_ref, code, desc, details, source="status_query")


async def sweep_stale_pending(client: DarajaClient, older_than_minutes: int, limit: int = 50) -> dict[str, int]:
    stale = await ledger.stale_pending(timedelta(minutes=older_than_minutes), limit=limit)
    counts = {"checked": len(stale), "finalized": 0, "still_pending": 0, "errors": 0}
    for txn in stale:
        try:
            outcome = await reconcile_pending_transaction(client, txn)
        except AppError as e:
            counts["errors"] += 1
            log.warning("stk_query_failed", transaction_ref=txn.transaction_ref, code=e.code, error=e.message)
            continue
        if outcome is None:
            counts["still_pending"] += 1
        else:
            counts["finalized"] += 1
    if stale:
        log.info("stale_pending_sweep", **counts)
    return counts
