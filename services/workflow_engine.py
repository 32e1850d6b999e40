# services/workflow_engine.py
"""
档案审核状态机。

所有对 Application 的状态修改都必须经过这里：
- 权限：services/permission_gate.py 的迁移表
- 并发：调用方带上最后看到的 version，UPDATE ... WHERE version = :expected，
  不匹配则 ConflictError（附当前快照），不写任何数据
- 原子性：记录修改 + 首次提交时的档案编号 + 审计流水在同一个事务里提交
- 通知在提交之后入队，失败只记日志，可由 redeliver_missing 补发
"""
import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, FrozenSet, Optional, TypeVar

from flask import current_app
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError

from extensions import db
from models.application import (
    STAGE_STATUS,
    TERMINAL_STATUSES,
    Action,
    Application,
    ApplicationStatus,
    Role,
    Stage,
)
from services import permission_gate
from services.audit_log import AuditLogger, LogEntry
from services.dossier_issuer import DossierIssuer
from services.errors import (
    ConflictError,
    DispatchError,
    NotFoundError,
    PermissionDeniedError,
    TerminalStateError,
    TransientStoreError,
    ValidationError,
    WorkflowError,
)
from services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


@dataclass(frozen=True)
class Actor:
    id: str
    roles: FrozenSet[Role]

    @classmethod
    def of(cls, actor_id, roles):
        return cls(str(actor_id), Role.parse_many(roles))


def _text(value):
    return value.strip() if isinstance(value, str) else ""


class WorkflowEngine:

    def __init__(self, *, gate=permission_gate, issuer=None, audit=None, dispatcher=None,
                 clock=None, require_payment=True):
        self.gate = gate
        self.issuer = issuer or DossierIssuer()
        self.audit = audit or AuditLogger()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self._clock = clock or datetime.utcnow
        self.require_payment = require_payment

    # ======================================================
    # 读取
    # ======================================================

    def _load(self, application_id) -> Application:
        app_obj = db.session.get(Application, application_id, populate_existing=True) if application_id else None
        if app_obj is None:
            raise NotFoundError(f"application {application_id} not found")
        return app_obj

    def get_state(self, application_id):
        with self._store_errors("get_state"):
            return self._load(application_id).to_dict()

    def list_audit_trail(self, application_id):
        with self._store_errors("list_audit_trail"):
            self._load(application_id)
            return [e.to_dict() for e in self.audit.list_for(application_id)]

    def list_pending(self, role, filters=None):
        """Snapshot of the cases currently waiting in ``role``'s queue."""
        filters = filters or {}
        stmt = self._queue_query(role)
        if stmt is None:
            return []

        stage = filters.get("stage")
        if stage:
            try:
                stage = Stage(stage)
            except ValueError:
                raise ValidationError(f"unknown stage {stage!r}")
            stmt = stmt.where(Application.current_stage == stage.value)
        year = filters.get("year")
        if year:
            year = int(year)
            stmt = stmt.where(
                Application.submitted_at >= datetime(year, 1, 1),
                Application.submitted_at < datetime(year + 1, 1, 1),
            )
        candidate_id = filters.get("candidate_id")
        if candidate_id:
            stmt = stmt.where(Application.candidate_id == str(candidate_id))

        stmt = stmt.order_by(Application.submitted_at.asc(), Application.created_at.asc())
        limit = filters.get("limit")
        if limit:
            stmt = stmt.limit(int(limit))

        with self._store_errors("list_pending"):
            return [a.to_dict() for a in db.session.execute(stmt).scalars()]

    def pending_counts(self, role):
        """Number of cases per queue position for ``role``."""
        parsed = Role.parse(role)
        if parsed is None:
            raise ValidationError(f"unknown role {role!r}")
        counts = {}
        with self._store_errors("pending_counts"):
            for status, stage in self.gate.actionable_positions(parsed):
                cond = Application.status == status.value
                if stage is not None:
                    cond = and_(cond, Application.current_stage == stage.value)
                key = stage.value if stage is not None else status.value
                counts[key] = db.session.execute(
                    select(func.count()).select_from(Application).where(cond)
                ).scalar_one()
        return counts

    def _queue_query(self, role):
        parsed = Role.parse(role)
        if parsed is None:
            raise ValidationError(f"unknown role {role!r}")
        positions = self.gate.actionable_positions(parsed)
        if not positions:
            return None
        conds = []
        for status, stage in positions:
            cond = Application.status == status.value
            if stage is not None:
                cond = and_(cond, Application.current_stage == stage.value)
            conds.append(cond)
        return select(Application).where(or_(*conds))

    # ======================================================
    # 创建 / 协作方信号
    # ======================================================

    def create_draft(self, candidate_id):
        candidate_id = _text(str(candidate_id)) if candidate_id is not None else ""
        if not candidate_id:
            raise ValidationError("candidate_id is required")

        with self._store_errors("create_draft"):
            active = db.session.execute(
                select(Application)
                .where(Application.candidate_id == candidate_id, Application.status.notin_(_TERMINAL_VALUES))
                .limit(1)
            ).scalar_one_or_none()
            if active is not None:
                raise ValidationError(
                    "candidate already has an application in progress", current=active.to_dict()
                )

            now = self._clock()
            app_obj = Application(
                candidate_id=candidate_id,
                active_candidate_id=candidate_id,
                status=ApplicationStatus.DRAFT.value,
                current_stage=Stage.DRAFT.value,
                version=0,
                created_at=now,
                updated_at=now,
            )
            db.session.add(app_obj)
            try:
                db.session.commit()
            except IntegrityError:
                # 并发创建：另一份草稿先占住了 active_candidate_id
                db.session.rollback()
                active = db.session.execute(
                    select(Application).where(Application.active_candidate_id == candidate_id)
                ).scalar_one_or_none()
                raise ValidationError(
                    "candidate already has an application in progress",
                    current=active.to_dict() if active is not None else None,
                )

        logger.info(f"📝 [流程] 申请人 {candidate_id} 创建草稿 {app_obj.id}")
        return app_obj.to_dict()

    def record_signal(self, application_id, *, documents_complete=None, payment_confirmed=None,
                      escalation_flag=None):
        """
        文档 / 支付协作方回写的布尔信号。
        不是状态迁移：不改 version，不写审计流水；终态档案拒绝修改。
        """
        values = {}
        if documents_complete is not None:
            values["documents_complete"] = bool(documents_complete)
        if payment_confirmed is not None:
            values["payment_confirmed"] = bool(payment_confirmed)
        if escalation_flag is not None:
            values["escalation_flag"] = bool(escalation_flag)
        if not values:
            raise ValidationError("no signal provided")

        with self._store_errors("record_signal"):
            res = db.session.execute(
                update(Application)
                .where(Application.id == application_id, Application.status.notin_(_TERMINAL_VALUES))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                db.session.rollback()
                app_obj = self._load(application_id)
                raise TerminalStateError("application is already decided", current=app_obj.to_dict())
            db.session.commit()
            return self._load(application_id).to_dict()

    # ======================================================
    # 状态迁移
    # ======================================================

    def transition(self, application_id, action, actor, expected_version, payload=None):
        try:
            action = Action(action)
        except ValueError:
            raise ValidationError(f"unknown action {action!r}")
        if not isinstance(actor, Actor) or not actor.id:
            raise ValidationError("actor with an id is required")
        if isinstance(expected_version, bool):
            raise ValidationError("expected_version must be an integer")
        if isinstance(expected_version, float) and not expected_version.is_integer():
            raise ValidationError("expected_version must be an integer")
        try:
            expected_version = int(expected_version)
        except (TypeError, ValueError):
            raise ValidationError("expected_version must be an integer")
        payload = dict(payload or {})

        try:
            with self._store_errors(f"transition {action.value}"):
                app_obj, entry = self._apply(application_id, action, actor, expected_version, payload)
        except ConflictError as e:
            if e.current is None:
                e.current = self._safe_view(application_id)
            logger.warning(f"⚠️ [流程] {action.value} 冲突 {application_id}: {e.message}")
            raise
        except WorkflowError as e:
            logger.warning(f"⚠️ [流程] {action.value} 被拒绝 {application_id} ({e.code}): {e.message}")
            raise

        logger.info(
            f"✅ [流程] {app_obj.id} {entry.from_status}/{entry.from_stage} -> "
            f"{entry.to_status}/{entry.to_stage} ({action.value} by {actor.id}, v{entry.version})"
        )
        self._notify(entry, app_obj)
        return app_obj.to_dict()

    def _apply(self, application_id, action, actor, expected_version, payload):
        app_obj = self._load(application_id)
        current = app_obj.to_dict()

        if app_obj.is_terminal:
            raise TerminalStateError(f"application is already {app_obj.status}", current=current)
        if app_obj.version != expected_version:
            raise ConflictError(
                f"stale version {expected_version}, current is {app_obj.version}", current=current
            )

        status = ApplicationStatus(app_obj.status)
        stage = Stage(app_obj.current_stage)
        decision = self.gate.evaluate_any(actor.roles, status, stage, action)
        if not decision.allowed:
            raise PermissionDeniedError(decision.reason, current=current)
        if action == Action.SUBMIT and app_obj.candidate_id != actor.id:
            raise PermissionDeniedError("only the owning candidate may submit", current=current)

        now = self._clock()
        to_stage, changes, notes = self._plan(app_obj, action, actor, decision.role, payload, now)
        to_status = STAGE_STATUS[to_stage]
        if to_status in TERMINAL_STATUSES:
            changes["decided_at"] = now
            changes["decided_by"] = actor.id
            changes["active_candidate_id"] = None

        new_version = expected_version + 1
        changes.update(
            status=to_status.value,
            current_stage=to_stage.value,
            version=new_version,
            updated_at=now,
        )

        # 先抢占记录：version 不匹配说明别人已经迁移过
        res = db.session.execute(
            update(Application)
            .where(Application.id == app_obj.id, Application.version == expected_version)
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.session.rollback()
            raise ConflictError("application was modified concurrently",
                                current=self._load(application_id).to_dict())

        dossier_number = app_obj.dossier_number
        extra = {}
        if action == Action.SUBMIT and not dossier_number:
            dossier_number = self.issuer.issue(now.year)
            extra["dossier_number"] = dossier_number
        if to_status == ApplicationStatus.VALIDATED and dossier_number:
            extra["order_number"] = self.issuer.order_number_for(dossier_number)
        if extra:
            db.session.execute(
                update(Application)
                .where(Application.id == app_obj.id)
                .values(**extra)
                .execution_options(synchronize_session=False)
            )

        metadata = dict(payload.get("metadata") or {})
        metadata.setdefault("role", decision.role.value if decision.role else None)
        if extra.get("dossier_number"):
            metadata["dossier_number"] = extra["dossier_number"]

        entry = self.audit.append(LogEntry(
            application_id=app_obj.id,
            action=action.value,
            from_status=status.value,
            to_status=to_status.value,
            from_stage=stage.value,
            to_stage=to_stage.value,
            version=new_version,
            performed_by=actor.id,
            performed_at=now,
            notes=notes,
            metadata=metadata,
            transition_id=str(uuid.uuid4()),
        ))
        db.session.commit()
        return app_obj, entry

    def _plan(self, app_obj, action, actor, role, payload, now):
        """Target stage, column changes and audit note for an allowed action."""
        notes = _text(payload.get("notes")) or None
        changes = {}

        if action == Action.SUBMIT:
            if not app_obj.documents_complete:
                raise ValidationError("mandatory documents are missing or not conforming")
            if app_obj.submitted_at is None:
                changes["submitted_at"] = now
            return Stage.INTAKE, changes, notes

        if action == Action.BEGIN_REVIEW:
            return Stage.AGENT_REVIEW, changes, notes

        if action == Action.AGENT_FORWARD:
            changes["agent_validated_by"] = actor.id
            changes["agent_validated_at"] = now
            if payload.get("escalate"):
                changes["escalation_flag"] = True
            return Stage.COMMISSION_REVIEW, changes, notes

        if action == Action.COMMISSION_VALIDATE:
            if app_obj.escalation_flag:
                raise ValidationError("case carries an open escalation flag; escalate to the president")
            if not app_obj.documents_complete:
                raise ValidationError("documents are not confirmed as complete and conforming")
            self._require_payment(app_obj)
            changes["commission_validated_by"] = actor.id
            changes["commission_validated_at"] = now
            changes["commission_decision"] = "approved"
            return Stage.COMPLETED, changes, notes

        if action == Action.COMMISSION_ESCALATE:
            note = notes or _text(payload.get("escalation_note"))
            if not note:
                raise ValidationError("an escalation note is required")
            changes["commission_validated_by"] = actor.id
            changes["commission_validated_at"] = now
            changes["commission_decision"] = "escalated"
            return Stage.PRESIDENT_REVIEW, changes, note

        if action == Action.PRESIDENT_DECIDE:
            decision = _text(payload.get("decision")).lower() or "accept"
            if decision != "accept":
                raise ValidationError("president_decide only accepts; use reject with a reason")
            self._require_payment(app_obj)
            changes["president_validated_by"] = actor.id
            changes["president_validated_at"] = now
            return Stage.COMPLETED, changes, notes

        if action == Action.REJECT:
            reason = _text(payload.get("rejection_reason"))
            if not reason:
                raise ValidationError("rejection_reason must be non-empty")
            changes["rejection_reason"] = reason
            stage = Stage(app_obj.current_stage)
            if role == Role.REVIEW_COMMISSION and stage == Stage.COMMISSION_REVIEW:
                changes["commission_validated_by"] = actor.id
                changes["commission_validated_at"] = now
                changes["commission_decision"] = "rejected"
            elif role == Role.FINAL_AUTHORITY and stage == Stage.PRESIDENT_REVIEW:
                changes["president_validated_by"] = actor.id
                changes["president_validated_at"] = now
            return Stage.REJECTED, changes, notes or reason

        raise ValidationError(f"unsupported action {action.value}")

    def _require_payment(self, app_obj):
        if self.require_payment and not app_obj.payment_confirmed:
            raise ValidationError("registration payment is not confirmed")

    def _notify(self, entry, app_obj):
        try:
            self.dispatcher.dispatch(entry, app_obj)
        except DispatchError as e:
            # 状态已提交，通知留给 redeliver_missing 补发
            logger.warning(f"⚠️ [通知] 迁移 {entry.transition_id} 入队失败: {e.message}")

    # ======================================================
    # 存储错误
    # ======================================================

    @contextmanager
    def _store_errors(self, what):
        try:
            yield
        except WorkflowError:
            db.session.rollback()
            raise
        except IntegrityError as e:
            db.session.rollback()
            raise ConflictError(f"{what}: concurrent write rejected by the store") from e
        except DBAPIError as e:
            db.session.rollback()
            logger.error(f"❌ [存储] {what} 失败: {e}")
            raise TransientStoreError(f"{what}: store unavailable") from e

    def _safe_view(self, application_id):
        try:
            return self.get_state(application_id)
        except WorkflowError:
            return None


def with_transient_retry(fn: Callable[[], T], *, attempts=3, base_delay=0.05, max_delay=1.0) -> T:
    """Retry ``fn`` on TransientStoreError only, with bounded exponential backoff."""
    attempts = max(int(attempts), 1)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except TransientStoreError as e:
            if attempt >= attempts:
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.warning(f"⚠️ [存储] 第 {attempt} 次失败，{delay:.2f}s 后重试: {e.message}")
            time.sleep(delay)


def get_engine(app=None) -> WorkflowEngine:
    app = app or current_app
    engine: Optional[WorkflowEngine] = app.extensions.get("workflow_engine")
    if engine is None:
        engine = WorkflowEngine(
            issuer=DossierIssuer(
                prefix=app.config.get("DOSSIER_PREFIX", "INS"),
                seq_width=int(app.config.get("DOSSIER_SEQ_WIDTH", 5)),
            ),
            require_payment=bool(app.config.get("WORKFLOW_REQUIRE_PAYMENT", True)),
        )
        app.extensions["workflow_engine"] = engine
    return engine
