from datetime import datetime

import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from config import Config
from extensions import db
from services.workflow_engine import Actor, WorkflowEngine
from services.dossier_issuer import DossierIssuer


class WorkflowTestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    JWT_SECRET_KEY = "test-jwt-secret-key-with-enough-length-for-hs256"
    LOG_LEVEL = "WARNING"
    NOTIFY_WEBHOOK_URL = None
    WORKFLOW_REQUIRE_PAYMENT = True
    WORKFLOW_RETRY_BASE_DELAY = 0.0


class FixedClock:
    def __init__(self, now=datetime(2026, 3, 2, 9, 30)):
        self.now = now

    def __call__(self):
        return self.now


CANDIDATE = Actor.of("cand-1", ["candidate"])
OTHER_CANDIDATE = Actor.of("cand-2", ["candidate"])
AGENT = Actor.of("agent-1", ["intake_agent"])
COMMISSION = Actor.of("comm-1", ["review_commission"])
PRESIDENT = Actor.of("pres-1", ["final_authority"])


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def app(clock):
    app = create_app(WorkflowTestConfig)
    with app.app_context():
        db.create_all()
        app.extensions["workflow_engine"] = WorkflowEngine(
            issuer=DossierIssuer(prefix="INS", seq_width=5),
            clock=clock,
            require_payment=True,
        )
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def engine(app):
    return app.extensions["workflow_engine"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    def make(identity, *roles):
        token = create_access_token(identity=identity, additional_claims={"roles": list(roles)})
        return {"Authorization": f"Bearer {token}"}
    return make


def ready_draft(engine, candidate=CANDIDATE, paid=True):
    """Draft with documents complete (and payment confirmed unless paid=False)."""
    view = engine.create_draft(candidate.id)
    return engine.record_signal(view["id"], documents_complete=True, payment_confirmed=paid or None)


def advance(engine, view, *steps):
    """Apply (action, actor, payload) steps, each with the last seen version."""
    for step in steps:
        action, actor = step[0], step[1]
        payload = step[2] if len(step) > 2 else None
        view = engine.transition(view["id"], action, actor, view["version"], payload)
    return view


def to_commission(engine, candidate=CANDIDATE, **kw):
    view = ready_draft(engine, candidate, **kw)
    return advance(
        engine, view,
        ("submit", candidate),
        ("begin_review", AGENT),
        ("agent_forward", AGENT),
    )


def to_president(engine, candidate=CANDIDATE, **kw):
    view = to_commission(engine, candidate, **kw)
    return advance(engine, view, ("commission_escalate", COMMISSION, {"notes": "Diplôme étranger"}))
