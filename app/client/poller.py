"""
Client-side polling after an STK push.

Polls GET /v1/mpesa/status/{order_id} on a fixed interval until the order is
paid, the newest transaction failed, or the attempt cap / overall timeout is
reached. A timeout is reported as "unconfirmed", not "failed": the gateway
callback may simply be late.

Usage: python -m app.client.poller ORDER_ID --base-url http://localhost:8000
"""

import argparse
import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel

from app.core.logging import configure_logging, get_logger

log = get_logger(__name__)

STATUS_PATH = "/v1/mpesa/status/{order_id}"


class PollOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


class PollResult(BaseModel):
    outcome: PollOutcome
    attempts: int
    last_status: dict[str, Any] | None = None


def classify(status: dict[str, Any]) -> PollOutcome | None:
    """Terminal outcome for one status response, or None to keep polling."""
    if status.get("paymentStatus") == "paid":
        return PollOutcome.PAID
    if status.get("transactionStatus") == "failed":
        return PollOutcome.FAILED
    return None


async def poll_payment_status(
    http: httpx.AsyncClient,
    order_id: str,
    interval_seconds: float = 3.0,
    max_attempts: int = 20,
    timeout_seconds: float | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PollResult:
    state: dict[str, Any] = {"attempts": 0, "last_status": None}

    async def _loop() -> PollOutcome:
        path = STATUS_PATH.format(order_id=order_id)
        for attempt in range(1, max_attempts + 1):
            state["attempts"] = attempt
            try:
                resp = await http.get(path)
            except httpx.TransportError as e:
                log.warning("poll_transport_error", order_id=order_id, attempt=attempt, error=str(e))
            else:
                if resp.status_code == 200:
                    try:
                        status = resp.json()
                    except ValueError:
                        status = None
                    if isinstance(status, dict):
                        state["last_status"] = status
                        outcome = classify(status)
                        if outcome is not None:
                            return outcome
                    else:
                        log.warning("poll_bad_body", order_id=order_id, attempt=attempt, body=resp.text[:200])
                else:
                    log.warning("poll_bad_status", order_id=order_id, attempt=attempt, status_code=resp.status_code)
            if attempt < max_attempts:
                await sleep(interval_seconds)
        return PollOutcome.UNCONFIRMED

    try:
        if timeout_seconds is None:
            outcome = await _loop()
        else:
            outcome = await asyncio.wait_for(_loop(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        outcome = PollOutcome.UNCONFIRMED
    log.info("poll_finished", order_id=order_id, outcome=outcome.value, attempts=state["attempts"])
    return PollResult(outcome=outcome, attempts=state["attempts"], last_status=state["last_status"])


async def _main(args: argparse.Namespace) -> PollResult:
    async with httpx.AsyncClient(base_url=args.base_url, timeout=10.0) as http:
        return await poll_payment_status(
            http,
            args.order_id,
            interval_seconds=args.interval,
            max_attempts=args.max_attempts,
            timeout_seconds=args.timeout,
        )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Poll an order's M-Pesa payment status")
    parser.add_argument("order_id")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--interval", type=float, default=3.0)
    parser.add_argument("--max-attempts", type=int, default=20)
    parser.add_argument("--timeout", type=float, default=None)
    args = parser.parse_args(argv)
    configure_logging()
    result = asyncio.run(_main(args))
    print(result.outcome.value)
    return 0 if result.outcome is PollOutcome.PAID else 1


if __name__ == "__main__":
    raise SystemExit(main())
