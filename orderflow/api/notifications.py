from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from orderflow.application.notifications import NotificationInbox
from orderflow.application.schemas import NotificationRead
from orderflow.auth_local import current_actor
from orderflow.domain.actor import Actor
from orderflow.infrastructure.db import get_db

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/", response_model=list[NotificationRead])
def list_notifications(unread_only: bool = False, limit: int = 50,
                       actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return NotificationInbox(db).list(actor.user_id, unread_only=unread_only, limit=limit)


@router.get("/unread-count")
def unread_count(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return {"unread": NotificationInbox(db).unread_count(actor.user_id)}


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(notification_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return NotificationInbox(db).mark_read(actor.user_id, notification_id)


@router.post("/read-all")
def mark_all_read(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return {"updated": NotificationInbox(db).mark_all_read(actor.user_id)}


@router.delete("/{notification_id}", status_code=204)
def delete_notification(notification_id: int, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    NotificationInbox(db).delete(actor.user_id, notification_id)
    return None
