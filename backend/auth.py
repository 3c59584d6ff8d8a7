"""
Bearer authentication for the settlement API.

Tokens are issued by the dealership back-office login; this service only
verifies them. The `user_id` claim is the actor recorded on ledger entries,
receipts, disbursements, rate history and audit logs.
"""
from datetime import datetime, timedelta
from typing import Optional
import os

import jwt
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dealer-settlement-dev-secret")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
ACCESS_TOKEN_TYPE = "access"

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign an access token (service-to-service callers and tests)"""
    claims = dict(data)
    claims["exp"] = datetime.utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims["type"] = ACCESS_TOKEN_TYPE
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Access token has expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise _unauthorized("Could not validate credentials")

    if payload.get("type") != ACCESS_TOKEN_TYPE:
        raise _unauthorized("Invalid token type")
    return payload


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Verified token claims. A token without user_id is rejected because
    every settlement write records its actor.
    """
    payload = decode_access_token(credentials.credentials)
    if not payload.get("user_id"):
        raise _unauthorized("Token carries no user_id")
    payload["user_id"] = str(payload["user_id"])
    return payload
