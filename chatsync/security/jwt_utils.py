# chatsync/security/jwt_utils.py
import os
import jwt
from fastapi import HTTPException, status

JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")


def decode_token(token: str) -> dict:
    """
    Decodifica y valida el JWT (para WebSocket u otros).
    Lanza 401 si es inválido.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        return payload
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token inválido",
        )


def viewer_id_from_payload(payload: dict) -> int:
    """El 'sub' del token es el id numérico del usuario."""
    sub = payload.get("sub")
    try:
        return int(sub)
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token without numeric subject",
        )


def get_current_user(authorization_header: str) -> dict:
    """
    Toma el header: Authorization: Bearer <token>
    Lo valida y devuelve el payload.
    Lanza 401 si falta o es inválido.
    """
    if not authorization_header:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )

    if not authorization_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format",
        )

    token = authorization_header.removeprefix("Bearer ").strip()
    payload = decode_token(token)

    if "sub" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token without subject",
        )

    return payload


def get_current_viewer_id(authorization_header: str) -> int:
    return viewer_id_from_payload(get_current_user(authorization_header))


def create_token(user_id: int, **claims) -> str:
    """Firma un token con sub=user_id (herramientas de desarrollo y tests)."""
    payload = {"sub": str(user_id), **claims}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)
