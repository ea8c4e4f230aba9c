# chatsync/api/deps.py
from typing import AsyncIterator

from fastapi import HTTPException, Request, status

from chatsync.security.jwt_utils import get_current_viewer_id
from chatsync.services.errors import BackendError
from chatsync.services.session import Session


async def current_session(request: Request) -> AsyncIterator[Session]:
    """
    Sesión del viewer del JWT (Authorization: Bearer <token>).
    La abre si es la primera request de ese usuario y la retiene
    mientras dura la request.
    """
    viewer_id = get_current_viewer_id(request.headers.get("Authorization", ""))
    sessions = request.app.state.sessions
    try:
        session = await sessions.open(viewer_id)
    except BackendError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"No se pudo abrir la sesión: {e}",
        )

    sessions.acquire(session)
    try:
        yield session
    finally:
        sessions.release(session)
