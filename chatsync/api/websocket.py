# chatsync/api/websocket.py
import logging

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from chatsync.security.jwt_utils import decode_token, viewer_id_from_payload
from chatsync.services.errors import BackendError
from chatsync.services.snapshots import topic_payload
from chatsync.services.websocket_manager import ws_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/ws/sync")
async def websocket_sync(websocket: WebSocket, token: str = Query(...)):
    """
    WebSocket con el estado de los stores del viewer.
    El frontend se conecta con:
      ws://localhost:8000/ws/sync?token=JWT_AQUI
    y recibe {"topic": ..., "data": ...} cada vez que cambia algo.
    """
    # 1. Validar token
    try:
        viewer_id = viewer_id_from_payload(decode_token(token))
        session = await websocket.app.state.sessions.open(viewer_id)
    except (HTTPException, BackendError) as e:
        logger.info("[ws] conexión rechazada: %s", e)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    # 2. Registrar conexión y listeners (la sesión queda retenida hasta desconectar)
    sessions = websocket.app.state.sessions
    sessions.acquire(session)
    await ws_manager.connect(viewer_id, websocket)

    def on_change(topic: str):
        ws_manager.push(viewer_id, topic_payload(session, topic))

    session.chat.add_listener(on_change)
    session.notifications.add_listener(on_change)

    try:
        # estado inicial
        await websocket.send_json(topic_payload(session, "conversations"))
        await websocket.send_json(topic_payload(session, "notifications"))
        # 3. Mantener la conexión viva
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        session.chat.remove_listener(on_change)
        session.notifications.remove_listener(on_change)
        ws_manager.disconnect(viewer_id, websocket)
        sessions.release(session)
