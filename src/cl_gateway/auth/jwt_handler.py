"""Session token verification.

The wallet sign-in flow lives in the session service; it issues HS256 access
tokens whose ``sub`` is the stable user id. This service only verifies them.
``create_access_token`` exists for operator tooling and tests.
"""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from config.settings import settings
from src.cl_common.errors import UnauthorizedError

_ALGORITHM = settings.JWT_ALGORITHM  # "HS256"
_ACCESS_EXPIRE = timedelta(minutes=settings.JWT_EXPIRE_MINUTES)


def create_access_token(user_id: str, wallet_address: str | None = None) -> str:
    """Issue a session access token (default: 7 days)."""
    now = datetime.now(UTC)
    payload: dict[str, object] = {
        "sub": user_id,
        "type": "access",
        "iat": now,
        "exp": now + _ACCESS_EXPIRE,
    }
    if wallet_address:
        payload["wallet"] = wallet_address
    return str(jwt.encode(payload, settings.JWT_SECRET, algorithm=_ALGORITHM))


def decode_token(token: str) -> dict[str, str]:
    """Decode and validate an access token.

    Raises:
        UnauthorizedError: token invalid, expired, or not an access token.
    """
    try:
        payload: dict[str, str] = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[_ALGORITHM],  # Explicit list prevents algorithm confusion
        )
    except JWTError:
        raise UnauthorizedError() from None

    if payload.get("type") != "access":
        raise UnauthorizedError()

    return payload
