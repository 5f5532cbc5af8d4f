import json
import logging
from typing import Any

from flask import g, has_app_context, has_request_context, request
from sqlalchemy.orm import Session

from app.pcms.models import AuditEvent, User

logger = logging.getLogger(__name__)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent | None:
    """
    Append-only audit event helper.

    The event joins the caller's unit of work and is committed with it. Building the
    event never raises into the caller: a failure is logged and None is returned.
    """
    try:
        rid = request_id
        if rid is None and has_app_context():
            rid = getattr(g, "request_id", None)
        ev = AuditEvent(
            request_id=rid,
            actor_user_id=actor.id if actor else None,
            actor_user_email=actor.email if actor else None,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            reason=reason[:512] if reason else None,
            metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
            client_ip=request.remote_addr if has_request_context() else None,
        )
        s.add(ev)
        return ev
    except Exception:
        logger.exception("Failed to record audit event action=%s entity=%s:%s", action, entity_type, entity_id)
        return None
