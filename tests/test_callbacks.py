"""Callback receiver: idempotency, completed-wins, unknown references, reconciliation flagging."""

import asyncio

import pytest

from app.models.audit_log import AuditLog
from app.models.order import Order
from app.models.reconciliation_issue import ReconciliationIssue
from app.models.transaction import Transaction
from app.services import ledger
from app.services import orders as orders_service
from app.services import payments as payments_service
from app.services import reconciliation
from app.services.callbacks import ACK_ACCEPTED, CallbackOutcome, handle_callback

pytestmark = pytest.mark.asyncio


async def _initiate(daraja, builder, order_id="42", amount=500) -> str:
    out = await payments_service.initiate(daraja, builder, order_id, "0712345678", amount)
    return out["correlation_id"]


async def test_successful_callback_marks_order_paid(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)

    result = await handle_callback(callback_payload(ref, result_code=0, amount=500))
    assert result.outcome == CallbackOutcome.COMPLETED
    assert result.ack == ACK_ACCEPTED

    txn = await Transaction.find_one(Transaction.transaction_ref == ref)
    assert txn.status == "completed"
    assert txn.receipt_number == "NLJ7RT61SV"
    assert txn.payment_details["result"]["mpesaReceiptNumber"] == "NLJ7RT61SV"
    assert txn.payment_details["result"]["phoneNumber"] == "254712345678"
    assert txn.payment_details["result"]["amountPaid"] == 500
    assert "request" in txn.payment_details

    order = await Order.get("42")
    assert order.payment_status == "paid"
    assert order.status == "confirmed"
    assert order.paid_transaction_ref == ref
    assert order.payment_date is not None
    assert order.status_history[-1].status == "confirmed"
    assert "NLJ7RT61SV" in order.status_history[-1].note

    status = await orders_service.get_payment_status("42")
    assert status["paymentStatus"] == "paid"
    assert status["transactionStatus"] == "completed"
    assert status["receiptNumber"] == "NLJ7RT61SV"
    assert await AuditLog.find(AuditLog.event_type == "payment_completed").count() == 1


async def test_redelivered_callback_is_applied_once(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)
    payload = callback_payload(ref, result_code=0)

    first = await handle_callback(payload)
    order_after_first = await Order.get("42")
    second = await handle_callback(payload)
    order_after_second = await Order.get("42")

    assert first.outcome == CallbackOutcome.COMPLETED
    assert second.outcome == CallbackOutcome.DUPLICATE
    assert second.ack == ACK_ACCEPTED
    assert order_after_second.status_history == order_after_first.status_history
    assert order_after_second.updated_at == order_after_first.updated_at
    assert await AuditLog.find(AuditLog.event_type == "payment_completed").count() == 1


async def test_concurrent_duplicate_deliveries_finalize_once(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)
    payload = callback_payload(ref, result_code=0)

    results = await asyncio.gather(*(handle_callback(payload) for _ in range(3)))
    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes.count(CallbackOutcome.COMPLETED.value) == 1
    assert outcomes.count(CallbackOutcome.DUPLICATE.value) == 2
    order = await Order.get("42")
    assert len([h for h in order.status_history if h.status == "confirmed"]) == 1


async def test_failure_callback_marks_order_failed(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)

    result = await handle_callback(callback_payload(ref, result_code=1032))
    assert result.outcome == CallbackOutcome.FAILED
    assert result.ack == ACK_ACCEPTED

    txn = await Transaction.find_one(Transaction.transaction_ref == ref)
    assert txn.status == "failed"
    assert txn.result_desc == "Request cancelled by user"
    assert txn.payment_details["result"]["failureReason"] == "Request cancelled by user"
    order = await Order.get("42")
    assert order.payment_status == "failed"

    status = await orders_service.get_payment_status("42")
    assert status["paymentStatus"] == "failed"
    assert status["transactionStatus"] == "failed"


async def test_terminal_transaction_never_changes(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)
    await handle_callback(callback_payload(ref, result_code=1032))
    late_success = await handle_callback(callback_payload(ref, result_code=0))
    assert late_success.outcome == CallbackOutcome.DUPLICATE
    txn = await Transaction.find_one(Transaction.transaction_ref == ref)
    assert txn.status == "failed"


@pytest.mark.parametrize("success_first", [True, False])
async def test_completed_wins_over_failed(make_order, daraja, builder, callback_payload, success_first):
    await make_order("42", 500)
    ref_a = await _initiate(daraja, builder)
    ref_b = await _initiate(daraja, builder)
    failure = callback_payload(ref_a, result_code=1)
    success = callback_payload(ref_b, result_code=0)

    for payload in ([success, failure] if success_first else [failure, success]):
        result = await handle_callback(payload)
        assert result.ack == ACK_ACCEPTED

    order = await Order.get("42")
    assert order.payment_status == "paid"
    assert order.paid_transaction_ref == ref_b
    assert (await Transaction.find_one(Transaction.transaction_ref == ref_a)).status == "failed"
    assert (await Transaction.find_one(Transaction.transaction_ref == ref_b)).status == "completed"


async def test_unknown_reference_is_acknowledged_without_changes(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)

    result = await handle_callback(callback_payload("ws_CO_unknown", result_code=0))
    assert result.outcome == CallbackOutcome.UNKNOWN_REFERENCE
    assert result.ack == ACK_ACCEPTED
    assert (await Transaction.find_one(Transaction.transaction_ref == ref)).status == "pending"
    assert (await Order.get("42")).payment_status == "pending"


@pytest.mark.parametrize(
    "payload",
    [
        None,
        [],
        {},
        {"Body": {}},
        {"Body": {"stkCallback": {"ResultCode": 0}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "x", "ResultCode": "not-a-number"}}},
    ],
)
async def test_unparseable_payload_returns_error_ack(db, payload):
    result = await handle_callback(payload)
    assert result.outcome == CallbackOutcome.INVALID
    assert result.ack["ResultCode"] == 1


async def test_second_completion_for_paid_order_is_flagged(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref_a = await _initiate(daraja, builder)
    ref_b = await _initiate(daraja, builder)

    first = await handle_callback(callback_payload(ref_a, result_code=0, receipt="RCPT-A"))
    second = await handle_callback(callback_payload(ref_b, result_code=0, receipt="RCPT-B"))
    assert first.outcome == CallbackOutcome.COMPLETED
    assert second.outcome == CallbackOutcome.DUPLICATE_PAYMENT
    assert second.ack == ACK_ACCEPTED

    order = await Order.get("42")
    assert order.payment_status == "paid"
    assert order.paid_transaction_ref == ref_a
    issue = await ReconciliationIssue.find_one(ReconciliationIssue.kind == "duplicate_payment")
    assert issue.transaction_ref == ref_b
    assert issue.status == "open"


async def test_order_update_failure_is_flagged_and_retried(make_order, daraja, builder, callback_payload, monkeypatch):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)
    real_mark_paid = orders_service.mark_paid
    calls = []

    async def broken_mark_paid(*args, **kwargs):
        calls.append(args)
        raise RuntimeError("orders collection unavailable")

    monkeypatch.setattr(orders_service, "mark_paid", broken_mark_paid)
    result = await handle_callback(callback_payload(ref, result_code=0))
    assert result.outcome == CallbackOutcome.INCONSISTENT
    assert result.ack == ACK_ACCEPTED
    assert len(calls) == 3  # ORDER_UPDATE_MAX_ATTEMPTS default

    assert (await Transaction.find_one(Transaction.transaction_ref == ref)).status == "completed"
    assert (await Order.get("42")).payment_status == "pending"
    issue = await ReconciliationIssue.find_one(ReconciliationIssue.kind == "order_update_failed")
    assert issue.status == "open"
    assert issue.target_payment_status == "paid"
    assert "unavailable" in issue.reason

    # Redelivery does not double-apply; the worker retry repairs the order.
    again = await handle_callback(callback_payload(ref, result_code=0))
    assert again.outcome == CallbackOutcome.DUPLICATE

    monkeypatch.setattr(orders_service, "mark_paid", real_mark_paid)
    counts = await reconciliation.retry_open_issues()
    assert counts == {"checked": 1, "resolved": 1}
    assert (await Order.get("42")).payment_status == "paid"
    issue = await ReconciliationIssue.get(issue.id)
    assert issue.status == "resolved"


async def test_stale_failure_does_not_clobber_pending_completion(make_order, daraja, builder, callback_payload, monkeypatch):
    """A failure for attempt A arriving while B's order update is still being reconciled must not win."""
    await make_order("42", 500)
    ref_a = await _initiate(daraja, builder)
    ref_b = await _initiate(daraja, builder)

    async def broken_mark_paid(*args, **kwargs):
        raise RuntimeError("transient")

    real_mark_paid = orders_service.mark_paid
    monkeypatch.setattr(orders_service, "mark_paid", broken_mark_paid)
    await handle_callback(callback_payload(ref_b, result_code=0))
    monkeypatch.setattr(orders_service, "mark_paid", real_mark_paid)

    await handle_callback(callback_payload(ref_a, result_code=1))
    assert (await Order.get("42")).payment_status == "pending"

    await reconciliation.retry_open_issues()
    assert (await Order.get("42")).payment_status == "paid"


async def _finalize_without_order_update(ref: str, status: str, receipt: str | None = None) -> None:
    """Transaction write only, as if the process stopped before touching the Order."""
    code = "0" if status == "completed" else "1032"
    await ledger.finalize(ref, status, result_code=code, result_desc="", result_details={}, receipt_number=receipt)


async def test_redelivery_repairs_order_left_behind_by_crash(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)
    await _finalize_without_order_update(ref, "completed", receipt="NLJ7RT61SV")
    assert (await Order.get("42")).payment_status == "pending"

    result = await handle_callback(callback_payload(ref, result_code=0))
    assert result.outcome == CallbackOutcome.DUPLICATE
    assert result.ack == ACK_ACCEPTED
    order = await Order.get("42")
    assert order.payment_status == "paid"
    assert order.paid_transaction_ref == ref

    again = await handle_callback(callback_payload(ref, result_code=0))
    assert again.outcome == CallbackOutcome.DUPLICATE
    assert len([h for h in (await Order.get("42")).status_history if h.status == "confirmed"]) == 1


async def test_redelivered_failure_repairs_pending_order(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref = await _initiate(daraja, builder)
    await _finalize_without_order_update(ref, "failed")

    await handle_callback(callback_payload(ref, result_code=1032))
    assert (await Order.get("42")).payment_status == "failed"


async def test_redelivered_old_failure_leaves_newer_attempt_alone(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref_a = await _initiate(daraja, builder)
    await _finalize_without_order_update(ref_a, "failed")
    await _initiate(daraja, builder)

    await handle_callback(callback_payload(ref_a, result_code=1032))
    assert (await Order.get("42")).payment_status == "pending"


async def test_unsynced_sweep_repairs_without_redelivery(make_order, daraja, builder):
    await make_order("42", 500)
    await make_order("43", 700)
    ref = await _initiate(daraja, builder)
    synced = await _initiate(daraja, builder, order_id="43", amount=700)
    await _finalize_without_order_update(ref, "completed", receipt="RCPT-1")
    await _finalize_without_order_update(synced, "completed", receipt="RCPT-2")
    await orders_service.mark_paid("43", synced, "RCPT-2")

    counts = await reconciliation.sweep_unsynced_transactions(lookback_hours=24)
    assert counts == {"checked": 2, "repaired": 1, "inconsistent": 0}
    order = await Order.get("42")
    assert order.payment_status == "paid"
    assert order.paid_transaction_ref == ref

    counts = await reconciliation.sweep_unsynced_transactions(lookback_hours=24)
    assert counts["repaired"] == 0


async def test_unsynced_sweep_flags_lost_duplicate_payment(make_order, daraja, builder, callback_payload):
    await make_order("42", 500)
    ref_a = await _initiate(daraja, builder)
    ref_b = await _initiate(daraja, builder)
    await handle_callback(callback_payload(ref_a, result_code=0))
    await _finalize_without_order_update(ref_b, "completed", receipt="RCPT-B")

    await reconciliation.sweep_unsynced_transactions(lookback_hours=24)
    issue = await ReconciliationIssue.find_one(ReconciliationIssue.kind == "duplicate_payment")
    assert issue.transaction_ref == ref_b
    assert (await Order.get("42")).paid_transaction_ref == ref_a
