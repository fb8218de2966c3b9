import json
import os
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Must be set before app.core.config.get_settings() is first called.
os.environ.setdefault("MONGODB_DB_NAME", "stkpay_test")
os.environ.setdefault("MPESA_BASE_URL", "https://gateway.test")
os.environ.setdefault("MPESA_CALLBACK_URL", "https://shop.test/v1/mpesa/callback")
os.environ.setdefault("MPESA_CONSUMER_KEY", "consumer-key")
os.environ.setdefault("MPESA_CONSUMER_SECRET", "consumer-secret")
os.environ.setdefault("MPESA_SHORTCODE", "174379")
os.environ.setdefault("MPESA_PASSKEY", "passkey")
os.environ.setdefault("ADMIN_API_TOKEN", "admin-token")
os.environ.setdefault("ORDER_UPDATE_BACKOFF_SECONDS", "0")

PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
QUERY_PATH = "/mpesa/stkpushquery/v1/query"
TOKEN_PATH = "/oauth/v1/generate"


class FakeGateway:
    """Daraja stand-in served through httpx.MockTransport."""

    def __init__(self):
        self.token_calls = 0
        self.push_payloads: list[dict[str, Any]] = []
        self.query_payloads: list[dict[str, Any]] = []
        self.push_override: httpx.Response | None = None
        self.query_response: dict[str, Any] = {
            "errorCode": "500.001.1001",
            "errorMessage": "The transaction is being processed",
        }
        self.query_status = 500

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == TOKEN_PATH:
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_calls}", "expires_in": "3599"})
        if request.url.path == PUSH_PATH:
            payload = json.loads(request.content)
            self.push_payloads.append(payload)
            if self.push_override is not None:
                return self.push_override
            n = len(self.push_payloads)
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-{n}",
                    "CheckoutRequestID": f"ws_CO_{n:04d}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
            )
        if request.url.path == QUERY_PATH:
            self.query_payloads.append(json.loads(request.content))
            return httpx.Response(self.query_status, json=self.query_response)
        return httpx.Response(404, json={"errorMessage": "not found"})


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def daraja(gateway):
    from app.core.config import get_settings
    from app.services.daraja import build_daraja_client
    http = httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler))
    return build_daraja_client(get_settings(), http=http)


@pytest.fixture
def builder():
    from app.services.stk_request import PushRequestBuilder
    return PushRequestBuilder.from_settings()


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[None, None]:
    from mongomock_motor import AsyncMongoMockClient

    from app.db.init import init_db
    await init_db(client=AsyncMongoMockClient())
    yield


@pytest_asyncio.fixture
async def make_order(db):
    from app.models.order import Order

    async def _make(order_id: str = "42", total_amount: int = 500, **kwargs) -> Order:
        order = Order(id=order_id, total_amount=total_amount, **kwargs)
        await order.insert()
        return order

    return _make


def stk_callback_payload(
    checkout_request_id: str,
    result_code: int = 0,
    amount: int = 500,
    receipt: str = "NLJ7RT61SV",
    phone: int = 254712345678,
) -> dict[str, Any]:
    stk: dict[str, Any] = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        stk["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20191219102115},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": stk}}


@pytest_asyncio.fixture
async def client(db, daraja) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_daraja_client, get_redis
    from app.main import app
    app.dependency_overrides[get_daraja_client] = lambda: daraja
    app.dependency_overrides[get_redis] = lambda: None
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def callback_payload():
    return stk_callback_payload
