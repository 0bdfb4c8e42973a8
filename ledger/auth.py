from fastapi import Header, HTTPException
from jose import jwt, JWTError

from ledger.config import get_settings


def verify_token(authorization: str = Header(...)):
    """Return the caller's user id (the token's ``sub`` claim)."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported scheme")
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=["HS256"])
        return str(claims["sub"])
    except (ValueError, KeyError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
