# models/workflow_log.py
from datetime import datetime

from sqlalchemy import event

from extensions import db


class WorkflowLog(db.Model):
    """
    审核流水（只追加）：
    - 每次成功的状态迁移写一条
    - 按 version 排序即可完整回放档案历史
    """
    __tablename__ = "workflow_logs"
    __table_args__ = (
        db.UniqueConstraint("application_id", "version", name="uq_workflow_logs_app_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    transition_id = db.Column(db.String(36), unique=True, nullable=False, index=True)
    application_id = db.Column(db.String(36), db.ForeignKey("applications.id"), nullable=False, index=True)

    action = db.Column(db.String(32), nullable=False)
    from_status = db.Column(db.String(16), nullable=False)
    to_status = db.Column(db.String(16), nullable=False)
    from_stage = db.Column(db.String(32))
    to_stage = db.Column(db.String(32))
    version = db.Column(db.Integer, nullable=False)  # 迁移后档案的 version

    performed_by = db.Column(db.String(64), nullable=False)
    performed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    notes = db.Column(db.Text)
    # "metadata" 是声明式模型的保留名
    meta = db.Column("metadata", db.JSON, default=dict)

    def to_dict(self):
        return {
            "id": self.id,
            "transition_id": self.transition_id,
            "application_id": self.application_id,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "version": self.version,
            "performed_by": self.performed_by,
            "performed_at": self.performed_at.isoformat() if self.performed_at else None,
            "notes": self.notes,
            "metadata": self.meta or {},
        }


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(WorkflowLog, "before_update")
def _block_update(mapper, connection, target):
    raise AuditLogImmutableError(f"workflow log entry {target.transition_id} is write-once")


@event.listens_for(WorkflowLog, "before_delete")
def _block_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"workflow log entry {target.transition_id} cannot be deleted")
