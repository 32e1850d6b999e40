# app.py
import logging

from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_migrate import Migrate

load_dotenv()

from config import Config  # noqa: E402  读取 .env 之后再加载配置
from extensions import db  # noqa: E402
from services.errors import WorkflowError  # noqa: E402

# ---- 导入各个蓝图 ----
from routes.applications import applications_bp  # noqa: E402
from routes.notifications import notifications_bp  # noqa: E402

logger = logging.getLogger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(
        level=getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # ---- 初始化扩展 ----
    db.init_app(app)
    from models.application import Application  # noqa: F401
    from models.workflow_log import WorkflowLog  # noqa: F401
    from models.dossier_counter import DossierCounter  # noqa: F401
    from models.notification import Notification  # noqa: F401

    JWTManager(app)
    Migrate(app, db)

    # ---- CORS ----
    CORS(
        app,
        resources={
            r"/api/*": {
                "origins": app.config.get("CORS_ORIGINS", []),
                "supports_credentials": True,
                "allow_headers": ["Content-Type", "Authorization"],
                "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            }
        },
    )

    # ---- 注册蓝图 ----
    app.register_blueprint(applications_bp)
    app.register_blueprint(notifications_bp)

    # ---- 流程错误统一返回 ----
    @app.errorhandler(WorkflowError)
    def handle_workflow_error(e):
        if e.http_status >= 500:
            logger.error(f"❌ [流程] {e.code}: {e.message}")
        return jsonify(e.to_dict()), e.http_status

    # ---- 健康检查 ----
    @app.get("/")
    def health():
        return jsonify({"status": "ok"})

    return app
