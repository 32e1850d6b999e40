# services/notification_dispatcher.py
"""
通知分发：只决定「通知谁」和「说什么」，由迁移的 action / to_status 确定性推出。
实际投递见 services/notification_transport.py。
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models.application import Action, Application, ApplicationStatus, Role
from models.notification import Notification
from models.workflow_log import WorkflowLog
from services.errors import DispatchError

logger = logging.getLogger(__name__)


def candidate_recipient(candidate_id):
    return f"candidate:{candidate_id}"


def role_recipient(role):
    return f"role:{Role.parse(role).value}"


# template -> (title, body)，body 用 context 格式化
TEMPLATES = {
    "application_submitted": (
        "Dossier soumis",
        "Votre dossier {dossier_number} a été soumis avec succès.",
    ),
    "new_application": (
        "Nouveau dossier à vérifier",
        "Le dossier {dossier_number} attend la vérification d'un agent.",
    ),
    "review_started": (
        "Dossier en cours d'examen",
        "Votre dossier {dossier_number} est en cours de vérification.",
    ),
    "commission_review_requested": (
        "Dossier transmis à la Commission",
        "Le dossier {dossier_number} attend l'avis de la Commission.",
    ),
    "forwarded_to_commission": (
        "Dossier transmis à la Commission",
        "Votre dossier {dossier_number} a été transmis à la Commission.",
    ),
    "president_review_requested": (
        "Dossier transmis au Président",
        "Le dossier {dossier_number} requiert la décision du Président. Motif : {notes}",
    ),
    "escalated_to_president": (
        "Dossier transmis au Président",
        "Votre dossier {dossier_number} a été transmis au Président pour décision.",
    ),
    "application_validated": (
        "Dossier validé",
        "Votre dossier {dossier_number} est validé. Numéro d'Ordre : {order_number}.",
    ),
    "application_rejected": (
        "Dossier rejeté",
        "Votre dossier {dossier_number} a été rejeté. Motif : {rejection_reason}",
    ),
}


@dataclass(frozen=True)
class NotificationIntent:
    recipients: List[str]
    template: str
    context: Dict[str, Any] = field(default_factory=dict)


def render(template, context):
    title, body = TEMPLATES[template]
    values = {k: ("" if v is None else v) for k, v in (context or {}).items()}
    try:
        return title, body.format(**values)
    except KeyError as e:
        raise DispatchError(f"template {template} missing context key {e}")


class NotificationDispatcher:

    def plan(self, entry, application) -> List[NotificationIntent]:
        context = {
            "application_id": application.id,
            "dossier_number": application.dossier_number,
            "action": entry.action,
            "to_status": entry.to_status,
            "to_stage": entry.to_stage,
            "notes": entry.notes,
            "rejection_reason": application.rejection_reason,
            "order_number": application.order_number,
        }
        candidate = candidate_recipient(application.candidate_id)

        # 终态优先：通过/驳回只通知申请人
        if entry.to_status == ApplicationStatus.VALIDATED.value:
            return [NotificationIntent([candidate], "application_validated", context)]
        if entry.to_status == ApplicationStatus.REJECTED.value:
            return [NotificationIntent([candidate], "application_rejected", context)]

        action = Action(entry.action)
        if action == Action.SUBMIT:
            return [
                NotificationIntent([candidate], "application_submitted", context),
                NotificationIntent([role_recipient(Role.INTAKE_AGENT)], "new_application", context),
            ]
        if action == Action.BEGIN_REVIEW:
            return [NotificationIntent([candidate], "review_started", context)]
        if action == Action.AGENT_FORWARD:
            return [
                NotificationIntent([role_recipient(Role.REVIEW_COMMISSION)], "commission_review_requested", context),
                NotificationIntent([candidate], "forwarded_to_commission", context),
            ]
        if action == Action.COMMISSION_ESCALATE:
            return [
                NotificationIntent([role_recipient(Role.FINAL_AUTHORITY)], "president_review_requested", context),
                NotificationIntent([candidate], "escalated_to_president", context),
            ]
        return []

    def enqueue(self, transition_id, recipients, template, context, *, application_id=None):
        """
        Insert one row per recipient not yet enqueued for ``transition_id``.
        Returns the number of new rows; 0 means everything was already queued.
        """
        return self._enqueue_all(
            transition_id, [NotificationIntent(list(recipients), template, dict(context or {}))],
            application_id=application_id or (context or {}).get("application_id"),
        )

    def dispatch(self, entry, application):
        """All intents of one transition are committed together or not at all."""
        return self._enqueue_all(
            entry.transition_id, self.plan(entry, application), application_id=application.id,
        )

    def _enqueue_all(self, transition_id, intents, *, application_id):
        if not application_id:
            raise DispatchError("application_id is required")
        rendered = []
        for intent in intents:
            if intent.template not in TEMPLATES:
                raise DispatchError(f"unknown template {intent.template}")
            rendered.append((intent, render(intent.template, intent.context)))

        try:
            existing = set(
                db.session.execute(
                    select(Notification.recipient).where(Notification.transition_id == transition_id)
                ).scalars()
            )
            added = 0
            for intent, (title, body) in rendered:
                for recipient in intent.recipients:
                    if recipient in existing:
                        continue
                    db.session.add(Notification(
                        transition_id=transition_id,
                        application_id=application_id,
                        recipient=recipient,
                        template=intent.template,
                        title=title,
                        body=body,
                        context=dict(intent.context or {}),
                    ))
                    existing.add(recipient)
                    added += 1
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise DispatchError(f"enqueue failed for transition {transition_id}: {e}")

        if added:
            templates = ", ".join(i.template for i, _ in rendered)
            logger.info(f"📨 [通知] 迁移 {transition_id} 入队 {added} 条 ({templates})")
        return added

    def redeliver_missing(self, limit=200):
        """
        Re-dispatch logged transitions that have fewer notification rows than
        planned recipients. ``limit`` caps the number of transitions repaired.
        """
        queued = (
            select(Notification.transition_id, func.count(Notification.id).label("n"))
            .group_by(Notification.transition_id)
            .subquery()
        )
        stmt = (
            select(WorkflowLog, Application, func.coalesce(queued.c.n, 0))
            .join(Application, Application.id == WorkflowLog.application_id)
            .outerjoin(queued, queued.c.transition_id == WorkflowLog.transition_id)
            .order_by(WorkflowLog.id.asc())
        )
        rows = db.session.execute(stmt).all()
        total = repaired = 0
        for entry, application, have in rows:
            if repaired >= limit:
                break
            planned = {r for intent in self.plan(entry, application) for r in intent.recipients}
            if have >= len(planned):
                continue
            repaired += 1
            try:
                total += self.dispatch(entry, application)
            except DispatchError as e:
                logger.warning(f"⚠️ [通知] 补发失败 {entry.transition_id}: {e.message}")
        return total

    # ---- 读取 --------------------------------------------------------------

    def list_for_recipients(self, recipients, unread_only=False, limit=100):
        stmt = select(Notification).where(Notification.recipient.in_(list(recipients)))
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        return list(db.session.execute(stmt).scalars())

    def mark_read(self, notification_id, recipients):
        n = db.session.get(Notification, notification_id)
        if n is None or n.recipient not in set(recipients):
            return None
        if not n.is_read:
            n.is_read = True
            db.session.commit()
        return n
