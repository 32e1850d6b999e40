# tools/notify_worker_cli.py
# -*- coding: utf-8 -*-
"""
通知补发 + 投递（跑一轮就退出，可挂到 cron）。
- --sweep：先为没有通知记录的审核流水补入队（至少一次）
- 然后把未投递的通知推给 NOTIFY_WEBHOOK_URL
用法：
  python tools/notify_worker_cli.py --sweep --limit 100 --app-factory-path app --app-factory-func create_app
"""
import argparse


def run(app, limit=50, sweep=False):
    from services.notification_dispatcher import NotificationDispatcher
    from services.notification_transport import deliver_pending

    with app.app_context():
        queued = 0
        if sweep:
            queued = NotificationDispatcher().redeliver_missing(limit=limit)
        result = deliver_pending(limit=limit)
    return {"queued": queued, **result}


def main(argv=None):
    ap = argparse.ArgumentParser(description="Enqueue missing notifications and run one delivery pass")
    ap.add_argument("--limit", type=int, default=50, help="单轮最多处理条数")
    ap.add_argument("--sweep", action="store_true", help="先补发缺失的通知")
    ap.add_argument("--app-factory-path", default="app", help="Flask 工厂模块名（如 app）")
    ap.add_argument("--app-factory-func", default="create_app", help="Flask 工厂函数名（如 create_app）")
    args = ap.parse_args(argv)

    mod = __import__(args.app_factory_path, fromlist=[args.app_factory_func])
    create_app = getattr(mod, args.app_factory_func)
    app = create_app()

    stats = run(app, limit=args.limit, sweep=args.sweep)
    print(f"完成：补入队 {stats['queued']}，投递成功 {stats['delivered']}，失败 {stats['failed']}")
    return stats


if __name__ == "__main__":
    main()
