"""STK push throttle: hourly cap per payer phone via Redis."""

from datetime import datetime

from app.core.config import get_settings

KEY_PREFIX = "mpesa:stk_push_count"
TTL_SECONDS = 2 * 3600  # keeps the key around past its hour bucket


def _key(phone: str) -> str:
    hour = datetime.utcnow().strftime("%Y-%m-%dT%H")
    return f"{KEY_PREFIX}:{phone}:{hour}"


async def incr_initiations(redis, phone: str) -> int:
    """Increment and return this hour's count; 0 when Redis is unavailable (fail open)."""
    key = _key(phone)
    try:
        n = await redis.incr(key)
        if n == 1:
            await redis.expire(key, TTL_SECONDS)
        return n
    except Exception:
        return 0


def initiations_cap() -> int:
    return get_settings().initiations_per_phone_per_hour
