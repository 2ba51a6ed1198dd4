"""
Authentication utilities for service-to-service calls
"""
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from datetime import datetime, timezone, timedelta
import os

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'sogan-diamond-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"

SERVICE_SCOPE = "diamonds:write"


def create_service_token(service_name: str, days: int = 30) -> str:
    """Issue a token for a trusted backend (purchase verifier, admin tools)."""
    payload = {
        "sub": service_name,
        "scope": SERVICE_SCOPE,
        "exp": datetime.now(timezone.utc) + timedelta(days=days)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_service_caller(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify a service JWT and return its claims"""
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("scope") != SERVICE_SCOPE:
        raise HTTPException(status_code=403, detail="Service access required")

    return payload
