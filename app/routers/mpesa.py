import json
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictInt, StrictStr

from app.core.logging import get_logger
from app.deps import get_daraja_client, get_push_builder, get_redis
from app.services import orders as orders_service
from app.services import payments as payments_service
from app.services.callbacks import ACK_REJECTED, handle_callback
from app.services.daraja import DarajaClient
from app.services.stk_request import PushRequestBuilder

router = APIRouter()
log = get_logger(__name__)

ACK_ERROR = {"ResultCode": 1, "ResultDesc": "Error processing callback"}


class PayRequest(BaseModel):
    phone_number: str = Field(alias="phoneNumber")
    # Validated by parse_amount so booleans and other non-numbers reach the 400 path untouched.
    amount: Any
    order_id: StrictInt | StrictStr = Field(alias="orderId")
    account_reference: str | None = Field(default=None, alias="accountReference")


@router.post("/pay")
async def pay(
    body: PayRequest,
    client: DarajaClient = Depends(get_daraja_client),
    builder: PushRequestBuilder = Depends(get_push_builder),
    redis=Depends(get_redis),
):
    """Send an STK push for an order. Returns the CheckoutRequestID to poll against."""
    out = await payments_service.initiate(
        client,
        builder,
        str(body.order_id),
        body.phone_number,
        body.amount,
        account_reference=body.account_reference,
        redis=redis,
    )
    return {
        "success": True,
        "message": "STK push initiated successfully",
        "correlationId": out["correlation_id"],
        "ackStatus": out["ack_status"],
        "transactionId": out["transaction_id"],
        "customerMessage": out["customer_message"],
    }


@router.post("/callback")
async def callback(request: Request):
    """Daraja result webhook. Always answers with a ResultCode envelope."""
    raw = await request.body()
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return JSONResponse(status_code=400, content=ACK_REJECTED)
    try:
        result = await handle_callback(payload)
    except Exception:
        # Error ack makes the gateway redeliver; redelivery of a finalized row is a no-op.
        log.exception("callback_processing_error")
        return JSONResponse(status_code=500, content=ACK_ERROR)
    return JSONResponse(status_code=200 if result.ack["ResultCode"] == 0 else 400, content=result.ack)


@router.get("/status/{order_id}")
async def payment_status(order_id: str):
    """Polled by the client after /pay until the order is paid, failed or the client gives up."""
    return await orders_service.get_payment_status(order_id)
