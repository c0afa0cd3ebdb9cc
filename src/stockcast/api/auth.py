"""JWT helpers. Tokens are issued by an external identity service; ``sub`` is the user id."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

ALGORITHM = "HS256"


def create_token(secret: str, expiry_hours: int, user_id: str) -> str:
    """Create a signed JWT for a user with an expiration claim."""
    exp = datetime.now(timezone.utc) + timedelta(hours=expiry_hours)
    return jwt.encode({"sub": user_id, "exp": exp}, secret, algorithm=ALGORITHM)


def decode_token(token: str, secret: str) -> str | None:
    """Return the user id carried by a valid token, or None."""
    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except JWTError:
        return None
    sub = claims.get("sub")
    return str(sub) if sub else None


def token_from_headers(authorization: str | None, session_cookie: str | None) -> str | None:
    """Pick a bearer token from the Authorization header, else the session cookie."""
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return session_cookie or None
