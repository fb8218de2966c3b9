"""Safaricom Daraja HTTP client: OAuth credential cache, STK push, STK status query."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, NamedTuple

import httpx

from app.core.config import Settings, get_settings
from app.core.exceptions import AuthFailure, GatewayRejection, NetworkFailure
from app.core.logging import get_logger
from app.services.stk_request import PushRequest, generate_password, generate_timestamp

log = get_logger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

DEFAULT_TOKEN_TTL_SECONDS = 3599


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessCredential(NamedTuple):
    token: str
    expires_at: datetime


class CredentialProvider:
    """
    Exchanges consumer key/secret for a short-lived bearer token and caches it
    until shortly before expiry. One instance per process, injected into DarajaClient.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        expiry_skew_seconds: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._auth = (consumer_key, consumer_secret)
        self._skew = timedelta(seconds=expiry_skew_seconds)
        self._clock = clock
        self._cached: AccessCredential | None = None
        self._lock = asyncio.Lock()

    def _is_fresh(self, credential: AccessCredential | None) -> bool:
        return credential is not None and self._clock() < credential.expires_at - self._skew

    async def get_access_credential(self) -> AccessCredential:
        if self._is_fresh(self._cached):
            return self._cached
        async with self._lock:
            if self._is_fresh(self._cached):
                return self._cached
            self._cached = await self._fetch()
            return self._cached

    def invalidate(self) -> None:
        self._cached = None

    async def _fetch(self) -> AccessCredential:
        url = f"{self._base_url}{TOKEN_PATH}"
        resp = None
        # Transport errors get exactly one retry; HTTP-level refusals get none.
        for attempt in (1, 2):
            try:
                resp = await self._http.get(
                    url,
                    params={"grant_type": "client_credentials"},
                    auth=self._auth,
                    headers={"Accept": "application/json"},
                )
                break
            except httpx.TransportError as e:
                log.warning("mpesa_token_transport_error", attempt=attempt, error=str(e))
                if attempt == 2:
                    raise AuthFailure(details={"reason": str(e)})
        if resp.status_code != 200:
            log.error("mpesa_token_rejected", status_code=resp.status_code, body=resp.text[:500])
            raise AuthFailure(details={"status_code": resp.status_code, "body": resp.text[:500]})
        try:
            data = resp.json()
        except ValueError:
            raise AuthFailure("M-Pesa OAuth returned non-JSON body", details={"body": resp.text[:500]})
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise AuthFailure("M-Pesa OAuth response missing access_token", details={"body": data})
        try:
            ttl = int(data.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
        except (TypeError, ValueError):
            ttl = DEFAULT_TOKEN_TTL_SECONDS
        log.info("mpesa_token_refreshed", expires_in=ttl)
        return AccessCredential(token=token, expires_at=self._clock() + timedelta(seconds=ttl))


class DarajaClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        credentials: CredentialProvider,
        base_url: str,
        shortcode: str,
        passkey: str,
        timezone_name: str = "Africa/Nairobi",
    ):
        self._http = http
        self.credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._shortcode = shortcode
        self._passkey = passkey
        self._timezone = timezone_name

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        """POST with bearer token; a 401 drops the cached token and retries once."""
        url = f"{self._base_url}{path}"
        for attempt in (1, 2):
            credential = await self.credentials.get_access_credential()
            try:
                resp = await self._http.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {credential.token}"},
                )
            except httpx.TimeoutException as e:
                raise NetworkFailure("M-Pesa request timed out", details={"path": path, "reason": str(e)})
            except httpx.TransportError as e:
                raise NetworkFailure(details={"path": path, "reason": str(e)})
            if resp.status_code == 401:
                self.credentials.invalidate()
                if attempt == 1:
                    log.warning("mpesa_token_expired_early", path=path)
                    continue
                raise AuthFailure(
                    "M-Pesa rejected a freshly issued access token",
                    details={"path": path, "status_code": resp.status_code, "body": resp.text[:500]},
                )
            return resp
        return resp

    async def stk_push(self, request: PushRequest) -> dict[str, Any]:
        """Send the push. Returns the acknowledgment body; raises GatewayRejection unless accepted."""
        resp = await self._post(STK_PUSH_PATH, request.to_payload())
        try:
            body = resp.json()
        except ValueError:
            raise GatewayRejection(details={"status_code": resp.status_code, "body": resp.text[:500]})
        if not isinstance(body, dict):
            raise GatewayRejection(details={"status_code": resp.status_code, "body": body})
        accepted = resp.status_code == 200 and str(body.get("ResponseCode")) == "0"
        if not accepted or not body.get("CheckoutRequestID"):
            message = body.get("errorMessage") or body.get("ResponseDescription") or "STK push was not accepted"
            log.warning("stk_push_rejected", status_code=resp.status_code, body=body)
            raise GatewayRejection(message, details={"status_code": resp.status_code, "body": body})
        return body

    async def query_stk_status(self, checkout_request_id: str) -> dict[str, Any]:
        """
        Ask the gateway for the outcome of a push. While the payer has not acted,
        Daraja answers with an error body and no ResultCode; that is returned as-is.
        """
        timestamp = generate_timestamp(self._timezone)
        payload = {
            "BusinessShortCode": self._shortcode,
            "Password": generate_password(self._shortcode, self._passkey, timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        resp = await self._post(STK_QUERY_PATH, payload)
        try:
            body = resp.json()
        except ValueError:
            body = {"raw": resp.text[:500]}
        if not isinstance(body, dict):
            body = {"raw": body}
        body.setdefault("http_status", resp.status_code)
        return body


def build_daraja_client(settings: Settings | None = None, http: httpx.AsyncClient | None = None) -> DarajaClient:
    s = settings or get_settings()
    http = http or httpx.AsyncClient(timeout=s.mpesa_http_timeout_seconds)
    credentials = CredentialProvider(
        http,
        s.mpesa_base_url,
        s.mpesa_consumer_key,
        s.mpesa_consumer_secret,
        expiry_skew_seconds=s.mpesa_token_expiry_skew_seconds,
    )
    return DarajaClient(
        http,
        credentials,
        s.mpesa_base_url,
        shortcode=s.mpesa_shortcode,
        passkey=s.mpesa_passkey,
        timezone_name=s.mpesa_timezone,
    )
