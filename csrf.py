import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


CSRF_HEADER = "X-CSRF-Token"
TOKEN_MAX_AGE_HOURS = 2


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.csrf_secret, salt="finance-csrf")


def generate_csrf_token(user_id: int = 1) -> str:
    issued = int(time.time())
    return _serializer().dumps({"u": user_id, "ts": issued})


def validate_csrf_token(
    token: Optional[str], user_id: int = 1, max_age_hours: int = TOKEN_MAX_AGE_HOURS
) -> bool:
    """A token is valid for the user it was issued to, until it ages out."""
    if not token:
        return False
    try:
        data = _serializer().loads(token, max_age=max_age_hours * 3600)
    except BadSignature:
        # SignatureExpired is a BadSignature too.
        return False
    return isinstance(data, dict) and data.get("u") == user_id
