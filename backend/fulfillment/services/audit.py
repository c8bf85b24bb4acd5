from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fulfillment.models import FulfillmentAudit

logger = logging.getLogger("aidlink.audit")


def record(
    entity_type: str,
    entity_id: int,
    action_type: str,
    actor_id: Optional[str],
    old_value: Optional[Dict[str, Any]] = None,
    new_value: Optional[Dict[str, Any]] = None,
    notes: str = "",
) -> FulfillmentAudit:
    """Append an audit row. Call inside the transaction that made the change."""
    entry = FulfillmentAudit.objects.create(
        entity_type=entity_type,
        entity_id=entity_id,
        action_type=action_type,
        old_value=old_value,
        new_value=new_value,
        notes_text=notes or None,
        actor_user_id=actor_id,
    )
    logger.info(
        "audit.recorded",
        extra={
            "event_type": "STATE_CHANGE",
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action_type": action_type,
            "user_id": actor_id,
        },
    )
    return entry


def history(entity_type: str, entity_id: int) -> List[Dict[str, Any]]:
    return [
        {
            "audit_id": entry.audit_id,
            "action_type": entry.action_type,
            "old_value": entry.old_value,
            "new_value": entry.new_value,
            "notes_text": entry.notes_text or "",
            "actor_user_id": entry.actor_user_id,
            "action_dtime": entry.action_dtime.isoformat() if entry.action_dtime else None,
        }
        for entry in FulfillmentAudit.objects.filter(
            entity_type=entity_type, entity_id=entity_id
        ).order_by("action_dtime", "audit_id")
    ]
