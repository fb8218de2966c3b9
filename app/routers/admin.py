from fastapi import APIRouter, Depends, Query

from app.core.exceptions import NotFoundError
from app.deps import get_daraja_client, require_operator
from app.services import ledger
from app.services import reconciliation
from app.services.daraja import DarajaClient
from app.services.stk_query import reconcile_pending_transaction

router = APIRouter()


def _issue_out(i) -> dict:
    return {
        "id": str(i.id),
        "kind": i.kind,
        "order_id": i.order_id,
        "transaction_ref": i.transaction_ref,
        "target_payment_status": i.target_payment_status,
        "status": i.status,
        "reason": i.reason,
        "attempts": i.attempts,
        "created_at": i.created_at.isoformat(),
    }


@router.get("/reconciliation/issues")
async def reconciliation_issues(
    actor: str = Depends(require_operator),
    status: str | None = Query("open"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Finalized transactions whose order is out of line, or orders paid twice."""
    issues = await reconciliation.list_issues(status=status, limit=limit, offset=offset)
    return {"issues": [_issue_out(i) for i in issues], "limit": limit, "offset": offset}


@router.post("/reconciliation/issues/{issue_id}/retry")
async def reconciliation_issue_retry(issue_id: str, actor: str = Depends(require_operator)):
    issue = await reconciliation.get_issue(issue_id)
    if issue.status == "open" and issue.kind == "order_update_failed":
        issue = await reconciliation.retry_issue(issue)
    return _issue_out(issue)


@router.post("/transactions/{transaction_ref}/query")
async def transaction_query(
    transaction_ref: str,
    actor: str = Depends(require_operator),
    client: DarajaClient = Depends(get_daraja_client),
):
    """Ask the gateway for the outcome of a pending push and apply it."""
    txn = await ledger.get_by_ref(transaction_ref)
    if not txn:
        raise NotFoundError("Transaction not found")
    outcome = await reconcile_pending_transaction(client, txn)
    txn = await ledger.get_by_ref(transaction_ref)
    return {
        "transaction_ref": transaction_ref,
        "outcome": outcome.value if outcome else "still_pending",
        "status": txn.status,
    }
