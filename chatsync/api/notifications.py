# chatsync/api/notifications.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from chatsync.api.deps import current_session
from chatsync.models.notification import ALLOWED_TYPES
from chatsync.services.session import Session
from chatsync.services.snapshots import notifications_payload

router = APIRouter(prefix="/notifications", tags=["notifications"])


class SendNotificationIn(BaseModel):
    targetUserId: int
    type: str
    content: str
    jobId: Optional[int] = None


class ProposalViewedIn(BaseModel):
    targetUserId: int
    jobId: int
    proposalId: int


@router.get("")
async def list_notifications(force: bool = False, session: Session = Depends(current_session)):
    """Primera página de notificaciones del viewer."""
    await session.notifications.fetch_notifications(session.viewer.id, force=force)
    return notifications_payload(session.notifications)


@router.post("/more")
async def more_notifications(session: Session = Depends(current_session)):
    await session.notifications.fetch_more_notifications(session.viewer.id)
    return notifications_payload(session.notifications)


@router.get("/unread-count")
async def unread_count(session: Session = Depends(current_session)):
    """
    Cuenta las notificaciones NO leídas que hay en el cache del viewer.
    """
    return {"count": session.notifications.unread_count()}


@router.post("/mark-read/{notification_id}")
async def mark_notification_as_read(notification_id: int, session: Session = Depends(current_session)):
    """
    Marca una notificación como leída (local primero, backend en segundo plano).
    'changed' es False si no estaba en el cache o ya estaba leída.
    """
    changed = session.notifications.mark_as_read(notification_id)
    return {"ok": True, "changed": changed}


@router.post("/mark-all-read")
async def mark_all_as_read(session: Session = Depends(current_session)):
    session.notifications.mark_all_as_read(session.viewer.id)
    return {"ok": True}


@router.post("/send")
async def send_notification(body: SendNotificationIn, session: Session = Depends(current_session)):
    """
    Envía una notificación a otro usuario. Con jobId es idempotente:
    si ya existe una del mismo tipo para ese job, no se vuelve a enviar.
    """
    if body.type not in ALLOWED_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Tipo no permitido: {body.type}",
        )

    store = session.notifications
    store.error = None
    sent = await store.send_notification(body.targetUserId, body.type, body.content, job_ref=body.jobId)
    if sent is None and store.error:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=store.error)

    return {"ok": True, "sent": sent.model_dump(mode="json") if sent else None}


@router.post("/proposal-viewed")
async def proposal_viewed(body: ProposalViewedIn, session: Session = Depends(current_session)):
    sent = await session.notifications.send_job_viewed_notification(
        body.targetUserId,
        body.jobId,
        body.proposalId,
        sender_id=session.viewer.id,
    )
    return {"ok": True, "sent": sent.model_dump(mode="json") if sent else None}


# =========================
# Diagnóstico del feed de cambios (Service Bus)
# =========================
@router.get("/debug/consumer-status")
async def debug_consumer_status(request: Request):
    """
    Estado del consumer de Service Bus:
    - startedAt / lastMessageAt / lastError
    - topic / subscription
    - hasConnectionString
    """
    feed = getattr(request.app.state.backend, "feed", None)
    if feed is None:
        return {"backend": "memory"}
    return feed.status()
