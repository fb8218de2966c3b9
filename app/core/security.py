import hmac

from app.core.config import get_settings
from app.core.exceptions import UnauthorizedError


def verify_admin_token(token: str | None) -> bool:
    expected = get_settings().admin_api_token
    if not expected or not token:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), token.encode("utf-8"))


def require_admin_token(token: str | None) -> str:
    if not verify_admin_token(token):
        raise UnauthorizedError("Invalid or missing admin token")
    return "operator"
