"""STK push initiation: validate, push, record a pending Transaction."""

from typing import Any

from app.core.exceptions import ConflictError, TooManyRequestsError
from app.core.logging import bind_payment_context, get_logger
from app.services import ledger
from app.services import orders as orders_service
from app.services.daraja import DarajaClient
from app.services.rate_limit import incr_initiations, initiations_cap
from app.services.stk_request import PushRequestBuilder

log = get_logger(__name__)


async def initiate(
    client: DarajaClient,
    builder: PushRequestBuilder,
    order_id: str,
    payer_phone: str,
    amount: Any,
    account_reference: str | None = None,
    redis=None,
) -> dict[str, Any]:
    """
    Push a payment prompt to the payer's phone.
    The gateway only acknowledges dispatch here; the outcome arrives later on
    the callback. Every call that reaches the gateway successfully creates a new
    pending Transaction, so retries after a failure are safe.
    """
    bind_payment_context(order_id=order_id)
    order = await orders_service.get_order(order_id)
    if order.payment_status in ("paid", "refunded"):
        raise ConflictError(
            f"Order is already {order.payment_status}",
            details={"payment_status": order.payment_status},
        )
    request = builder.build(order, payer_phone, amount, account_reference=account_reference)

    if redis is not None:
        count = await incr_initiations(redis, request.payer_phone)
        if count > initiations_cap():
            raise TooManyRequestsError("Too many payment requests for this phone number, try again later")

    ack = await client.stk_push(request)
    checkout_request_id = ack["CheckoutRequestID"]
    bind_payment_context(transaction_ref=checkout_request_id)
    try:
        txn = await ledger.create_pending(
            order_id=order.id,
            transaction_ref=checkout_request_id,
            amount=request.amount,
            phone_number=request.payer_phone,
            request_echo=request.echo(),
            acknowledgment=ack,
            merchant_request_id=ack.get("MerchantRequestID"),
        )
    except Exception:
        # The prompt is already on the payer's phone; its callback will be dropped as unknown.
        log.exception("stk_push_unrecorded", amount=request.amount)
        raise
    await orders_service.mark_pending(order.id)

    from app.core.audit import log_event
    await log_event(
        None,
        "stk_push_initiated",
        "transaction",
        checkout_request_id,
        {"order_id": order.id, "amount": request.amount},
    )
    log.info("stk_push_sent", amount=request.amount)
    return {
        "correlation_id": checkout_request_id,
        "ack_status": str(ack.get("ResponseCode")),
        "transaction_id": str(txn.id),
        "merchant_request_id": ack.get("MerchantRequestID"),
        "customer_message": ack.get("CustomerMessage") or "STK push sent. Enter your M-PESA PIN to authorize.",
    }
