# models/application.py
import enum
import uuid
from datetime import datetime

from extensions import db


class ApplicationStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    VALIDATED = "validated"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({ApplicationStatus.VALIDATED, ApplicationStatus.REJECTED})


class Stage(str, enum.Enum):
    DRAFT = "draft"
    INTAKE = "intake"                         # 已提交，等待受理
    AGENT_REVIEW = "agent_review"             # 受理专员审核
    COMMISSION_REVIEW = "commission_review"   # 审核委员会
    PRESIDENT_REVIEW = "president_review"     # 主席终审
    COMPLETED = "completed"
    REJECTED = "rejected"


# 每个 stage 只对应唯一一个 status
STAGE_STATUS = {
    Stage.DRAFT: ApplicationStatus.DRAFT,
    Stage.INTAKE: ApplicationStatus.SUBMITTED,
    Stage.AGENT_REVIEW: ApplicationStatus.UNDER_REVIEW,
    Stage.COMMISSION_REVIEW: ApplicationStatus.UNDER_REVIEW,
    Stage.PRESIDENT_REVIEW: ApplicationStatus.UNDER_REVIEW,
    Stage.COMPLETED: ApplicationStatus.VALIDATED,
    Stage.REJECTED: ApplicationStatus.REJECTED,
}


class Action(str, enum.Enum):
    SUBMIT = "submit"
    BEGIN_REVIEW = "begin_review"
    AGENT_FORWARD = "agent_forward"
    COMMISSION_VALIDATE = "commission_validate"
    COMMISSION_ESCALATE = "commission_escalate"
    PRESIDENT_DECIDE = "president_decide"
    REJECT = "reject"


class Role(str, enum.Enum):
    CANDIDATE = "candidate"
    INTAKE_AGENT = "intake_agent"
    REVIEW_COMMISSION = "review_commission"
    FINAL_AUTHORITY = "final_authority"
    SYSTEM = "system"  # 文档/支付等协作服务

    @classmethod
    def parse(cls, raw):
        """Accept enum values, hyphenated spellings and legacy role names."""
        if isinstance(raw, cls):
            return raw
        key = str(raw or "").strip().lower().replace("-", "_")
        key = ROLE_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return None

    @classmethod
    def parse_many(cls, raws):
        if isinstance(raws, str):
            raws = [raws]
        roles = set()
        for r in raws or []:
            role = cls.parse(r)
            if role is not None:
                roles.add(role)
        return frozenset(roles)


# 旧系统里的角色名
ROLE_ALIASES = {
    "medecin": "candidate",
    "agent": "intake_agent",
    "commission": "review_commission",
    "approver": "review_commission",
    "president": "final_authority",
}


def _new_id():
    return str(uuid.uuid4())


class Application(db.Model):
    __tablename__ = "applications"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    candidate_id = db.Column(db.String(64), nullable=False, index=True)
    # 未终结时等于 candidate_id，终结后置空；唯一约束保证每个申请人同时只有一份在办档案
    active_candidate_id = db.Column(db.String(64), unique=True, nullable=True)
    dossier_number = db.Column(db.String(32), unique=True, nullable=True, index=True)

    status = db.Column(db.String(16), default=ApplicationStatus.DRAFT.value, nullable=False, index=True)
    current_stage = db.Column(db.String(32), default=Stage.DRAFT.value, nullable=False, index=True)
    version = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    submitted_at = db.Column(db.DateTime)
    decided_at = db.Column(db.DateTime)
    decided_by = db.Column(db.String(64))
    rejection_reason = db.Column(db.Text)

    # === 协作方信号（文档 / 支付），流程只读取布尔值 ===
    documents_complete = db.Column(db.Boolean, default=False, nullable=False)
    payment_confirmed = db.Column(db.Boolean, default=False, nullable=False)
    escalation_flag = db.Column(db.Boolean, default=False, nullable=False)

    # === 各审核环节签字 ===
    agent_validated_by = db.Column(db.String(64))
    agent_validated_at = db.Column(db.DateTime)
    commission_validated_by = db.Column(db.String(64))
    commission_validated_at = db.Column(db.DateTime)
    commission_decision = db.Column(db.String(16))  # approved | escalated | rejected
    president_validated_by = db.Column(db.String(64))
    president_validated_at = db.Column(db.DateTime)

    # 注册号：通过后由档案编号派生
    order_number = db.Column(db.String(32), unique=True, nullable=True)

    @property
    def is_terminal(self):
        return ApplicationStatus(self.status) in TERMINAL_STATUSES

    def to_dict(self):
        def iso(v):
            return v.isoformat() if v else None

        return {
            "id": self.id,
            "candidate_id": self.candidate_id,
            "dossier_number": self.dossier_number,
            "status": self.status,
            "current_stage": self.current_stage,
            "version": self.version,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "submitted_at": iso(self.submitted_at),
            "decided_at": iso(self.decided_at),
            "decided_by": self.decided_by,
            "rejection_reason": self.rejection_reason,
            "documents_complete": bool(self.documents_complete),
            "payment_confirmed": bool(self.payment_confirmed),
            "escalation_flag": bool(self.escalation_flag),
            "agent_validated_by": self.agent_validated_by,
            "agent_validated_at": iso(self.agent_validated_at),
            "commission_validated_by": self.commission_validated_by,
            "commission_validated_at": iso(self.commission_validated_at),
            "commission_decision": self.commission_decision,
            "president_validated_by": self.president_validated_by,
            "president_validated_at": iso(self.president_validated_at),
            "order_number": self.order_number,
        }
