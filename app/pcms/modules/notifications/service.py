"""
Notification Dispatcher and inbox operations.

`NotificationDispatcher.dispatch` consumes one event: it resolves the recipient set
(explicit ids and/or every active user holding a role in a department), adds one
Notification row per recipient to the caller's unit of work, and offers each row to
the mailer when the recipient opted in to email. Email is best-effort: a failed or
raising mailer leaves `email_sent` false and is only logged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.pcms.errors import AuthorizationError, NotFoundError, ValidationError
from app.pcms.models import User
from app.pcms.utils import isoformat

from .mailer import Mailer, html_body, mailer_from_config
from .models import NOTIFICATION_TYPES, RELATED_ENTITIES, Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    type: str
    title: str
    message: str
    related_entity: str | None = None
    related_entity_id: int | None = None
    sender_id: int | None = None
    recipient_ids: tuple[int, ...] = ()
    # Fan-out filter: every active user with this role (optionally within one department)
    recipient_role: str | None = None
    recipient_department_id: int | None = None


def _validate_event(event: NotificationEvent) -> None:
    if event.type not in NOTIFICATION_TYPES:
        raise ValidationError(f"Unknown notification type: {event.type!r}", details={"type": event.type})
    if event.related_entity is not None and event.related_entity not in RELATED_ENTITIES:
        raise ValidationError(
            f"Unknown related entity: {event.related_entity!r}",
            details={"related_entity": event.related_entity},
        )
    if not event.title.strip() or not event.message.strip():
        raise ValidationError("Notification title and message are required.")


def resolve_recipients(s: Session, event: NotificationEvent) -> list[User]:
    users: dict[int, User] = {}
    if event.recipient_ids:
        for u in s.query(User).filter(User.id.in_(event.recipient_ids), User.is_active.is_(True)).all():
            users[u.id] = u
    if event.recipient_role:
        q = s.query(User).filter(User.role == event.recipient_role, User.is_active.is_(True))
        if event.recipient_department_id is not None:
            q = q.filter(User.department_id == event.recipient_department_id)
        for u in q.all():
            users[u.id] = u
    return [users[uid] for uid in sorted(users)]


class NotificationDispatcher:
    def __init__(self, mailer: Mailer) -> None:
        self.mailer = mailer

    def dispatch(self, s: Session, event: NotificationEvent) -> list[int]:
        """Create one notification per resolved recipient; returns the new ids (flushed, not committed)."""
        _validate_event(event)
        recipients = resolve_recipients(s, event)
        if not recipients:
            logger.info("Notification type=%s for %s:%s had no recipients", event.type, event.related_entity, event.related_entity_id)
            return []

        created: list[tuple[Notification, User]] = []
        for user in recipients:
            n = Notification(
                recipient_id=user.id,
                sender_id=event.sender_id,
                type=event.type,
                title=event.title,
                message=event.message,
                related_entity=event.related_entity,
                related_entity_id=event.related_entity_id,
                is_read=False,
                email_sent=False,
            )
            s.add(n)
            created.append((n, user))
        s.flush()

        for n, user in created:
            if user.email_notifications:
                self._send_email(n, user)
        return [n.id for n, _ in created]

    def _send_email(self, n: Notification, user: User) -> None:
        try:
            ok, detail = self.mailer.send(to=user.email, subject=n.title, body=n.message, html=html_body(n.message))
        except Exception:
            logger.warning("Email delivery raised for notification_id=%s user_id=%s", n.id, user.id, exc_info=True)
            return
        if not ok:
            logger.warning("Email not sent for notification_id=%s user_id=%s: %s", n.id, user.id, detail)
            return
        n.email_sent = True
        n.email_sent_at = datetime.utcnow()


def dispatcher_from_config(config: dict) -> NotificationDispatcher:
    return NotificationDispatcher(mailer=mailer_from_config(config))


def notification_to_dict(n: Notification) -> dict[str, Any]:
    return {
        "id": n.id,
        "recipient_id": n.recipient_id,
        "sender_id": n.sender_id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "related_entity": n.related_entity,
        "related_entity_id": n.related_entity_id,
        "is_read": n.is_read,
        "read_at": isoformat(n.read_at),
        "email_sent": n.email_sent,
        "created_at": isoformat(n.created_at),
    }


def list_notifications(
    s: Session,
    *,
    user: User,
    unread_only: bool = False,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Notification], int]:
    stmt = select(Notification).where(Notification.recipient_id == user.id)
    if unread_only:
        stmt = stmt.where(Notification.is_read.is_(False))
    total = s.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    items = (
        s.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        .scalars()
        .all()
    )
    return list(items), int(total)


def unread_count(s: Session, *, user: User) -> int:
    return int(
        s.execute(
            select(func.count(Notification.id)).where(
                Notification.recipient_id == user.id,
                Notification.is_read.is_(False),
            )
        ).scalar_one()
    )


def mark_as_read(s: Session, notification_id: int, *, user: User) -> Notification:
    n = s.get(Notification, notification_id)
    if n is None:
        raise NotFoundError.for_entity("Notification", notification_id)
    if n.recipient_id != user.id:
        raise AuthorizationError("Only the recipient may mark this notification as read.")
    if not n.is_read:
        n.is_read = True
        n.read_at = datetime.utcnow()
        s.commit()
    return n


def mark_all_as_read(s: Session, *, user: User) -> int:
    result = s.execute(
        update(Notification)
        .where(Notification.recipient_id == user.id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.utcnow())
    )
    s.commit()
    return int(result.rowcount or 0)
