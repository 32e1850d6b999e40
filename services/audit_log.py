# services/audit_log.py
"""Append-only workflow audit trail."""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import select

from extensions import db
from models.application import STAGE_STATUS, ApplicationStatus, Stage
from models.workflow_log import WorkflowLog
from services.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogEntry:
    application_id: str
    action: str
    from_status: str
    to_status: str
    from_stage: str
    to_stage: str
    version: int
    performed_by: str
    performed_at: datetime
    notes: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    transition_id: str = field(default_factory=lambda: str(uuid.uuid4()))


class AuditLogger:
    """
    Writes one immutable WorkflowLog row per successful transition.

    ``append`` only adds the row to the current session; the caller commits it
    together with the record change it documents. No update or delete method
    exists.
    """

    def append(self, entry: LogEntry) -> WorkflowLog:
        row = WorkflowLog(
            transition_id=entry.transition_id,
            application_id=entry.application_id,
            action=entry.action,
            from_status=entry.from_status,
            to_status=entry.to_status,
            from_stage=entry.from_stage,
            to_stage=entry.to_stage,
            version=entry.version,
            performed_by=entry.performed_by,
            performed_at=entry.performed_at,
            notes=entry.notes,
            meta=dict(entry.metadata or {}),
        )
        db.session.add(row)
        db.session.flush()
        return row

    def list_for(self, application_id) -> Iterator[WorkflowLog]:
        """Oldest to newest. Each call runs a fresh read."""
        stmt = (
            select(WorkflowLog)
            .where(WorkflowLog.application_id == application_id)
            .order_by(WorkflowLog.version.asc(), WorkflowLog.id.asc())
        )
        for row in db.session.execute(stmt).scalars():
            yield row

    def find(self, transition_id) -> Optional[WorkflowLog]:
        return db.session.execute(
            select(WorkflowLog).where(WorkflowLog.transition_id == transition_id)
        ).scalar_one_or_none()

    @staticmethod
    def replay(entries):
        """
        Fold a log chain from the initial draft state.

        Returns (status, stage, version). A chain whose links do not connect
        raises ValidationError.
        """
        status, stage, version = ApplicationStatus.DRAFT.value, Stage.DRAFT.value, 0
        for e in entries:
            if e.from_status != status or (e.from_stage and e.from_stage != stage):
                raise ValidationError(
                    f"broken audit chain at version {e.version}: "
                    f"expected from {status}/{stage}, got {e.from_status}/{e.from_stage}"
                )
            if e.version != version + 1:
                raise ValidationError(f"audit chain skips from version {version} to {e.version}")
            if STAGE_STATUS[Stage(e.to_stage)].value != e.to_status:
                raise ValidationError(f"stage {e.to_stage} inconsistent with status {e.to_status}")
            status, stage, version = e.to_status, e.to_stage, e.version
        return status, stage, version

    def verify(self, application) -> bool:
        status, stage, version = self.replay(self.list_for(application.id))
        ok = (status, stage, version) == (application.status, application.current_stage, application.version)
        if not ok:
            logger.error(
                f"❌ [审计] 档案 {application.id} 回放结果 {status}/{stage}/v{version} "
                f"与记录 {application.status}/{application.current_stage}/v{application.version} 不一致"
            )
        return ok
