from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.deps import require_operator
from app.services import ledger
from app.services import orders as orders_service

router = APIRouter()


class PaymentStatusUpdate(BaseModel):
    payment_status: str
    note: str = ""


def _transaction_out(t) -> dict:
    return {
        "id": str(t.id),
        "transaction_ref": t.transaction_ref,
        "amount": t.amount,
        "status": t.status,
        "receipt_number": t.receipt_number,
        "result_desc": t.result_desc,
        "created_at": t.created_at.isoformat(),
        "updated_at": t.updated_at.isoformat(),
    }


@router.get("/{order_id}")
async def order_detail(order_id: str, actor: str = Depends(require_operator)):
    """Order with payment history and all STK attempts (newest first)."""
    order = await orders_service.get_order(order_id)
    txns = await ledger.list_for_order(order_id)
    return {
        "id": order.id,
        "total_amount": order.total_amount,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_date": order.payment_date.isoformat() if order.payment_date else None,
        "paid_transaction_ref": order.paid_transaction_ref,
        "status_history": [h.model_dump(mode="json") for h in order.status_history],
        "transactions": [_transaction_out(t) for t in txns],
    }


@router.patch("/{order_id}/payment-status")
async def order_payment_status_update(
    order_id: str,
    body: PaymentStatusUpdate,
    actor: str = Depends(require_operator),
):
    """Manual payment status override (e.g. refunds, cash settlement)."""
    order = await orders_service.set_payment_status(order_id, body.payment_status, body.note, actor=actor)
    return {"success": True, "id": order.id, "payment_status": order.payment_status}
