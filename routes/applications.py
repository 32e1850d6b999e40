# routes/applications.py
from functools import wraps

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import get_jwt, get_jwt_identity, jwt_required

from models.application import Role
from services.errors import PermissionDeniedError, ValidationError
from services.workflow_engine import Actor, get_engine, with_transient_retry

applications_bp = Blueprint("applications_bp", __name__, url_prefix="/api/applications")


# ---------- 工具：从 JWT 解析当前操作人 ----------
def current_actor():
    """identity 为操作人 id，roles（或 role）claim 为角色列表。"""
    ident = get_jwt_identity()
    if isinstance(ident, dict):
        ident = ident.get("id") or ident.get("user_id")
    claims = get_jwt() or {}
    roles = claims.get("roles") or claims.get("role") or []
    if isinstance(roles, str):
        roles = [roles]
    return Actor.of(ident or "", roles)


def require_roles(*need):
    need = {Role.parse(r) for r in need}

    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            actor = current_actor()
            if not (actor.roles & need):
                return jsonify({"error": "PERMISSION_DENIED", "message": "forbidden"}), 403
            return fn(*args, **kwargs)
        return wrapper
    return deco


def _is_reviewer(actor):
    return bool(actor.roles - {Role.CANDIDATE})


def _role_param(actor):
    """?role= 必须是调用者自己持有的角色；不传时取唯一的角色。"""
    raw = request.args.get("role")
    if raw:
        role = Role.parse(raw)
        if role is None:
            raise ValidationError(f"unknown role {raw!r}")
        if role not in actor.roles:
            raise PermissionDeniedError(f"caller does not hold role {role.value}")
        return role
    if len(actor.roles) == 1:
        return next(iter(actor.roles))
    raise ValidationError("role query parameter is required")


def _retrying(fn):
    cfg = current_app.config
    return with_transient_retry(
        fn,
        attempts=cfg.get("WORKFLOW_RETRY_ATTEMPTS", 3),
        base_delay=cfg.get("WORKFLOW_RETRY_BASE_DELAY", 0.05),
    )


# ======================================================
# ================ 申请人 ===============================
# ======================================================

@applications_bp.post("")
@jwt_required()
@require_roles("candidate")
def create_draft():
    actor = current_actor()
    view = _retrying(lambda: get_engine().create_draft(actor.id))
    return jsonify({"code": 0, "data": view}), 201


@applications_bp.get("/<string:app_id>")
@jwt_required()
def get_state(app_id):
    actor = current_actor()
    view = get_engine().get_state(app_id)
    # 申请人只能看自己的档案
    if not _is_reviewer(actor) and view["candidate_id"] != actor.id:
        return jsonify({"error": "NOT_FOUND", "message": f"application {app_id} not found"}), 404
    return jsonify({"code": 0, "data": view})


@applications_bp.get("/<string:app_id>/audit")
@jwt_required()
def audit_trail(app_id):
    actor = current_actor()
    engine = get_engine()
    view = engine.get_state(app_id)
    if not _is_reviewer(actor) and view["candidate_id"] != actor.id:
        return jsonify({"error": "NOT_FOUND", "message": f"application {app_id} not found"}), 404
    return jsonify({"code": 0, "data": engine.list_audit_trail(app_id)})


# ======================================================
# ================ 状态迁移 =============================
# ======================================================

@applications_bp.post("/<string:app_id>/transitions")
@jwt_required()
def transition(app_id):
    """
    请求体示例：
    {
        "action": "reject",
        "expected_version": 3,
        "rejection_reason": "Diplôme non homologué",
        "notes": "...",
        "decision": "accept",      // president_decide
        "escalate": true,          // agent_forward
        "metadata": {...}
    }
    """
    data = request.get_json(force=True, silent=True) or {}
    action = data.get("action")
    if not action:
        raise ValidationError("action is required")
    if "expected_version" not in data:
        raise ValidationError("expected_version is required")

    payload = {k: data[k] for k in ("rejection_reason", "notes", "decision", "escalate",
                                    "escalation_note", "metadata") if k in data}
    actor = current_actor()
    view = _retrying(lambda: get_engine().transition(
        app_id, action, actor, data.get("expected_version"), payload
    ))
    return jsonify({"code": 0, "data": view})


# ======================================================
# ================ 审核队列 =============================
# ======================================================

@applications_bp.get("/pending")
@jwt_required()
def list_pending():
    actor = current_actor()
    role = _role_param(actor)
    filters = {
        "stage": request.args.get("stage"),
        "year": request.args.get("year", type=int),
        "limit": request.args.get("limit", type=int),
        "candidate_id": request.args.get("candidate_id"),
    }
    if role == Role.CANDIDATE:
        filters["candidate_id"] = actor.id
    items = get_engine().list_pending(role, filters)
    return jsonify({"code": 0, "data": items})


@applications_bp.get("/pending-counts")
@jwt_required()
def pending_counts():
    actor = current_actor()
    role = _role_param(actor)
    return jsonify({"code": 0, "data": get_engine().pending_counts(role)})


# ======================================================
# ================ 协作方信号（文档 / 支付）=============
# ======================================================

@applications_bp.put("/<string:app_id>/signals")
@jwt_required()
@require_roles("intake_agent", "system")
def record_signal(app_id):
    data = request.get_json(force=True, silent=True) or {}
    view = _retrying(lambda: get_engine().record_signal(
        app_id,
        documents_complete=data.get("documents_complete"),
        payment_confirmed=data.get("payment_confirmed"),
        escalation_flag=data.get("escalation_flag"),
    ))
    return jsonify({"code": 0, "data": view})
