"""Audit service for security-sensitive events."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from nutriclinic.models.audit import AuditEvent


class AuditService:
    """Persist immutable audit trail entries."""

    @staticmethod
    def log_event(
        db: Session,
        *,
        actor_id: Optional[str],
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True,
    ) -> AuditEvent:
        event = AuditEvent(
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            ip_address=ip_address,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False),
        )
        db.add(event)
        if commit:
            db.commit()
            db.refresh(event)
        return event


audit_service = AuditService()
