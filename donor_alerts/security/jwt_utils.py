# donor_alerts/security/jwt_utils.py
import jwt
from fastapi import HTTPException, status

from donor_alerts.config import Settings


def auth_error(message: str, kind: str = "unauthenticated", code: int = status.HTTP_401_UNAUTHORIZED) -> HTTPException:
    """HTTP error with a structured body: {"detail": {"kind": ..., "message": ...}}"""
    return HTTPException(status_code=code, detail={"kind": kind, "message": message})


def decode_token(token: str, settings: Settings) -> dict:
    """
    Decodes and validates the JWT.
    Raises 401 if it is invalid.
    """
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
    except jwt.PyJWTError:
        raise auth_error("Invalid token")


def get_current_user(authorization_header: str, settings: Settings) -> dict:
    """
    Takes the header: Authorization: Bearer <token>
    Validates it and returns the payload.
    Raises 401 if it is missing or invalid.
    """
    if not authorization_header:
        raise auth_error("User must be authenticated")

    if not authorization_header.startswith("Bearer "):
        raise auth_error("Invalid Authorization header format")

    token = authorization_header.removeprefix("Bearer ").strip()
    payload = decode_token(token, settings)

    if "sub" not in payload:
        raise auth_error("Token without subject")

    return payload
