import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from passlib.hash import bcrypt

from config import Config

logger = logging.getLogger(__name__)

_hasher = bcrypt.using(rounds=Config.BCRYPT_ROUNDS)


class TokenError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, stored_hash: str) -> bool:
    if not stored_hash:
        return False
    try:
        return bcrypt.verify(password, stored_hash)
    except ValueError:
        return False


def create_access_token(user: Dict[str, Any], expires_in: Optional[int] = None) -> str:
    issued = datetime.now(timezone.utc)
    seconds = Config.JWT_EXPIRES_SECONDS if expires_in is None else expires_in
    payload = {
        "id": str(user["_id"]),
        "username": user.get("username"),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "iat": issued,
        "exp": issued + timedelta(seconds=seconds),
    }
    return jwt.encode(payload, Config.JWT_SECRET, algorithm=Config.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify a bearer credential and return its payload.

    Shared by the HTTP dependency below and the WebSocket handshake, so both
    surfaces accept exactly the same tokens.
    """
    try:
        payload = jwt.decode(token, Config.JWT_SECRET, algorithms=[Config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise TokenError("Invalid token.")
    if not payload.get("id"):
        raise TokenError("Invalid token.")
    return payload


def parse_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise TokenError("Authorization header is missing.")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1].strip():
        raise TokenError("Invalid authorization format. Use Bearer <token>.")
    return parts[1].strip()


# ---------- Dependencies ----------

def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    try:
        return decode_access_token(parse_bearer(authorization))
    except TokenError as e:
        logger.debug(f"Rejected credential: {e.message}")
        raise HTTPException(status_code=401, detail=e.message)


def require_admin(user=Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Access denied. Admins only.")
    return user


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == "admin"
