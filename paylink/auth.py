from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from paylink.config import Settings, get_settings


def verify_token(authorization: str = Header(None), settings: Settings = Depends(get_settings)):
    """Agent capability check: a valid HS256 bearer token. Returns its claims."""
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported auth scheme")
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (AttributeError, ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
