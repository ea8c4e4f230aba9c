# chatsync/api/conversations.py
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from chatsync.api.deps import current_session
from chatsync.services.conversation_id import decode
from chatsync.services.errors import MalformedKeyError
from chatsync.services.session import Session
from chatsync.services.snapshots import conversations_payload, messages_payload

router = APIRouter(tags=["chat"])


class SendMessageIn(BaseModel):
    receiverId: int
    content: str


def _checked_key(session: Session, conversation_id: str) -> str:
    """400 si la clave está mal formada, 403 si el viewer no participa."""
    try:
        participants = decode(conversation_id)
    except MalformedKeyError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if session.viewer.id not in participants:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return conversation_id


@router.get("/conversations")
async def list_conversations(force: bool = False, session: Session = Depends(current_session)):
    await session.chat.fetch_conversations(session.viewer, force=force)
    return conversations_payload(session.chat)


@router.post("/conversations/more")
async def more_conversations(session: Session = Depends(current_session)):
    session.chat.fetch_more_conversations(session.viewer)
    return conversations_payload(session.chat)


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: str, force: bool = False,
                        session: Session = Depends(current_session)):
    key = _checked_key(session, conversation_id)
    await session.chat.fetch_messages(key, session.viewer.id, force=force)
    return messages_payload(session.chat, key)


@router.post("/conversations/{conversation_id}/messages/more")
async def more_messages(conversation_id: str, session: Session = Depends(current_session)):
    key = _checked_key(session, conversation_id)
    await session.chat.fetch_more_messages(key, session.viewer.id)
    return messages_payload(session.chat, key)


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(conversation_id: str, session: Session = Depends(current_session)):
    key = _checked_key(session, conversation_id)
    await session.chat.mark_messages_as_read(key, session.viewer.id)
    return {"ok": True, "unread": session.chat.get_unread_count(key, session.viewer.id)}


@router.post("/messages")
async def send_message(body: SendMessageIn, session: Session = Depends(current_session)):
    if not body.content.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Mensaje vacío")

    message = await session.chat.send_message(session.viewer.id, body.receiverId, body.content)
    if message is None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"No se pudo enviar el mensaje: {session.chat.error}",
        )
    return message.model_dump(mode="json")


@router.get("/messages/unread-count")
async def unread_messages(session: Session = Depends(current_session)):
    return {"count": session.chat.get_total_unread_messages(session.viewer.id)}
