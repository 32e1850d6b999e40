"""Webhook delivery of queued notifications and the worker entry point."""

import pytest
import requests
from sqlalchemy import select

from conftest import CANDIDATE, advance, ready_draft
from extensions import db
from models.notification import Notification
from services import notification_transport
from services.notification_transport import MAX_ATTEMPTS, deliver_pending
from services.workflow_engine import WorkflowEngine
from tools import notify_worker_cli

HOOK = "http://hook.test/notify"


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


@pytest.fixture
def queued(engine):
    advance(engine, ready_draft(engine), ("submit", CANDIDATE))
    return list(db.session.execute(select(Notification).order_by(Notification.id)).scalars())


@pytest.fixture
def posts(monkeypatch):
    calls = []
    responses = []

    def fake_post(url, json=None, timeout=None):
        calls.append({"url": url, "json": json, "timeout": timeout})
        result = responses.pop(0) if responses else FakeResponse(200)
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(notification_transport.requests, "post", fake_post)
    return calls, responses


class TestDeliverPending:
    def test_no_webhook_configured(self, app, queued, posts) -> None:
        assert deliver_pending() == {"delivered": 0, "failed": 0}
        assert posts[0] == []

    def test_delivers_and_stamps(self, app, queued, posts) -> None:
        calls, _ = posts
        assert deliver_pending(webhook_url=HOOK, timeout=3) == {"delivered": 2, "failed": 0}

        assert [c["url"] for c in calls] == [HOOK, HOOK]
        assert calls[0]["timeout"] == 3
        assert calls[0]["json"]["recipient"] == "candidate:cand-1"
        assert calls[0]["json"]["template"] == "application_submitted"
        for n in queued:
            db.session.refresh(n)
            assert n.delivered_at is not None
            assert n.delivery_attempts == 1

        assert deliver_pending(webhook_url=HOOK) == {"delivered": 0, "failed": 0}

    def test_failures_are_recorded_per_row(self, app, queued, posts) -> None:
        _, responses = posts
        responses.extend([FakeResponse(502, "bad gateway"), requests.ConnectionError("refused")])

        assert deliver_pending(webhook_url=HOOK) == {"delivered": 0, "failed": 2}
        first, second = queued
        db.session.refresh(first)
        db.session.refresh(second)
        assert first.last_error == "HTTP 502: bad gateway"
        assert "refused" in second.last_error
        assert first.delivered_at is None

        assert deliver_pending(webhook_url=HOOK) == {"delivered": 2, "failed": 0}
        db.session.refresh(first)
        assert first.last_error is None
        assert first.delivery_attempts == 2

    def test_gives_up_after_max_attempts(self, app, queued, posts) -> None:
        for n in queued:
            n.delivery_attempts = MAX_ATTEMPTS
        db.session.commit()
        assert deliver_pending(webhook_url=HOOK) == {"delivered": 0, "failed": 0}

    def test_webhook_from_config(self, app, queued, posts) -> None:
        app.config["NOTIFY_WEBHOOK_URL"] = HOOK
        assert deliver_pending()["delivered"] == 2


class TestWorkerCli:
    def test_sweep_then_deliver(self, app, clock, posts) -> None:
        class Silent:
            def dispatch(self, entry, application):
                return 0

        engine = WorkflowEngine(dispatcher=Silent(), clock=clock)
        advance(engine, ready_draft(engine), ("submit", CANDIDATE))
        app.config["NOTIFY_WEBHOOK_URL"] = HOOK

        assert notify_worker_cli.run(app, sweep=True) == {"queued": 2, "delivered": 2, "failed": 0}
        assert notify_worker_cli.run(app, sweep=True) == {"queued": 0, "delivered": 0, "failed": 0}

    def test_without_sweep(self, app, queued, posts) -> None:
        app.config["NOTIFY_WEBHOOK_URL"] = HOOK
        assert notify_worker_cli.run(app, limit=1) == {"queued": 0, "delivered": 1, "failed": 0}
