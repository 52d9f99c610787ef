from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from dmchat import config
from dmchat.schemas.user import TokenPayload


class InvalidTokenError(Exception):
    pass


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token for ``subject``; the auth service does this in production."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode: Dict[str, Any] = {"sub": subject, "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except JWTError as exc:
        raise InvalidTokenError(str(exc)) from exc
    # validates that sub/exp are present
    TokenPayload(**payload)
    return payload
