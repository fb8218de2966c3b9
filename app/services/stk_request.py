"""STK push request assembly: amount and phone validation, Daraja password and timestamp."""

import base64
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from app.core.config import Settings, get_settings
from app.core.exceptions import ValidationFailure
from app.models.order import Order

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
TRANSACTION_TYPE = "CustomerPayBillOnline"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str | None, country_code: str = "254") -> str:
    """
    Bring a payer phone into the gateway's MSISDN form (e.g. 2547XXXXXXXX).
    0712345678 / +254712345678 / 712345678 all become 254712345678.
    Other shapes pass through as digits; the gateway rejects them if invalid.
    """
    if phone is None or not str(phone).strip():
        raise ValidationFailure("Phone number is required")
    digits = _NON_DIGITS.sub("", str(phone))
    if not digits:
        raise ValidationFailure("Phone number must contain digits", details={"phone_number": phone})
    if digits.startswith("0"):
        return country_code + digits[1:]
    if len(digits) == 9:
        return country_code + digits
    return digits


def parse_amount(amount: Any) -> int:
    """Positive whole amount in gateway units. Rejects fractions, zero, negatives and non-numbers."""
    if amount is None:
        raise ValidationFailure("Amount is required", details={"amount": amount})
    if isinstance(amount, bool) or not isinstance(amount, (int, float, str, Decimal)):
        raise ValidationFailure("Amount must be a number", details={"amount": str(amount)})
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValidationFailure("Amount must be a number", details={"amount": amount})
    if not value.is_finite() or value != value.to_integral_value():
        raise ValidationFailure("Amount must be a whole number", details={"amount": str(amount)})
    if value <= 0:
        raise ValidationFailure("Amount must be greater than zero", details={"amount": str(amount)})
    return int(value)


def generate_timestamp(tz: str = "Africa/Nairobi", now: datetime | None = None) -> str:
    now = now or datetime.now(ZoneInfo(tz))
    return now.strftime(TIMESTAMP_FORMAT)


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """base64(shortcode + passkey + timestamp), as the Daraja protocol mandates."""
    raw = f"{shortcode}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")


class PushRequest(BaseModel):
    short_code: str
    password: str
    timestamp: str
    amount: int
    payer_phone: str
    callback_url: str
    reference: str
    description: str

    def to_payload(self) -> dict[str, Any]:
        """Daraja processrequest body."""
        return {
            "BusinessShortCode": self.short_code,
            "Password": self.password,
            "Timestamp": self.timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": self.amount,
            "PartyA": self.payer_phone,
            "PartyB": self.short_code,
            "PhoneNumber": self.payer_phone,
            "CallBackURL": self.callback_url,
            "AccountReference": self.reference,
            "TransactionDesc": self.description,
        }

    def echo(self) -> dict[str, Any]:
        """Payload without the password, for storage in payment_details."""
        payload = self.to_payload()
        payload.pop("Password")
        return payload


class PushRequestBuilder:
    def __init__(
        self,
        shortcode: str,
        passkey: str,
        callback_url: str,
        account_reference: str = "ORDER",
        country_code: str = "254",
        timezone: str = "Africa/Nairobi",
    ):
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.account_reference = account_reference
        self.country_code = country_code
        self.timezone = timezone

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PushRequestBuilder":
        s = settings or get_settings()
        return cls(
            shortcode=s.mpesa_shortcode,
            passkey=s.mpesa_passkey,
            callback_url=s.mpesa_callback_url,
            account_reference=s.mpesa_account_reference,
            country_code=s.mpesa_country_code,
            timezone=s.mpesa_timezone,
        )

    def build(
        self,
        order: Order,
        payer_phone: str,
        amount: Any,
        account_reference: str | None = None,
        now: datetime | None = None,
    ) -> PushRequest:
        value = parse_amount(amount)
        phone = normalize_phone(payer_phone, self.country_code)
        if not self.callback_url.startswith(("https://", "http://")):
            raise ValidationFailure("Callback URL must be an absolute URL", details={"callback_url": self.callback_url})
        timestamp = generate_timestamp(self.timezone, now)
        return PushRequest(
            short_code=self.shortcode,
            password=generate_password(self.shortcode, self.passkey, timestamp),
            timestamp=timestamp,
            amount=value,
            payer_phone=phone,
            callback_url=self.callback_url,
            reference=(account_reference or self.account_reference)[:12],
            description=f"Payment for Order {order.id}"[:100],
        )
