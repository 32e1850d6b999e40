# services/notification_transport.py
import logging
from datetime import datetime

import requests
from flask import current_app
from sqlalchemy import select

from extensions import db
from models.notification import Notification

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


def deliver_pending(limit=50, webhook_url=None, timeout=None):
    """
    把未投递的通知推送给外部通道（短信/邮件/推送网关的 webhook）。
    投递成败只影响通知行本身，不会回滚任何审核状态。
    """
    webhook_url = webhook_url or current_app.config.get("NOTIFY_WEBHOOK_URL")
    timeout = timeout or current_app.config.get("NOTIFY_TIMEOUT", 10)

    if not webhook_url:
        logger.warning("⚠️ [通知] 未配置 NOTIFY_WEBHOOK_URL，跳过投递")
        return {"delivered": 0, "failed": 0}

    rows = db.session.execute(
        select(Notification)
        .where(Notification.delivered_at.is_(None), Notification.delivery_attempts < MAX_ATTEMPTS)
        .order_by(Notification.id.asc())
        .limit(limit)
    ).scalars().all()

    delivered = failed = 0
    for n in rows:
        payload = {
            "id": n.id,
            "transition_id": n.transition_id,
            "recipient": n.recipient,
            "template": n.template,
            "title": n.title,
            "body": n.body,
            "context": n.context or {},
        }
        n.delivery_attempts = (n.delivery_attempts or 0) + 1
        try:
            logger.info(f"📡 [通知] 正在投递 #{n.id} 给 {n.recipient} ...")
            resp = requests.post(webhook_url, json=payload, timeout=timeout)
            if 200 <= resp.status_code < 300:
                n.delivered_at = datetime.utcnow()
                n.last_error = None
                delivered += 1
                logger.info(f"✅ [通知] #{n.id} 投递成功")
            else:
                n.last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                failed += 1
                logger.error(f"❌ [通知] 通道报错: {n.last_error}")
        except requests.RequestException as e:
            n.last_error = str(e)[:500]
            failed += 1
            logger.error(f"❌ [通知] 请求异常: {str(e)}")
        db.session.commit()

    return {"delivered": delivered, "failed": failed}
