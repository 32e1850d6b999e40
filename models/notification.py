# models/notification.py
from datetime import datetime

from extensions import db


class Notification(db.Model):
    """
    通知意图：
    - 由流程迁移生成，(transition_id, recipient) 唯一，重复入队不会重复通知
    - recipient 形如 candidate:<id> 或 role:<role>
    - 实际投递（短信/邮件/推送）由外部通道完成，这里只记录投递结果
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.UniqueConstraint("transition_id", "recipient", name="uq_notifications_transition_recipient"),
    )

    id = db.Column(db.Integer, primary_key=True)
    transition_id = db.Column(db.String(36), nullable=False, index=True)
    application_id = db.Column(db.String(36), db.ForeignKey("applications.id"), nullable=False, index=True)
    recipient = db.Column(db.String(96), nullable=False, index=True)

    template = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    body = db.Column(db.Text, nullable=False)
    context = db.Column(db.JSON, default=dict)

    is_read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    delivered_at = db.Column(db.DateTime)
    delivery_attempts = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.String(500))

    def to_dict(self):
        return {
            "id": self.id,
            "transition_id": self.transition_id,
            "application_id": self.application_id,
            "recipient": self.recipient,
            "template": self.template,
            "title": self.title,
            "body": self.body,
            "context": self.context or {},
            "read": bool(self.is_read),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }
