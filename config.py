# config.py
import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
INSTANCE_DIR = os.path.join(BASE_DIR, "instance")
os.makedirs(INSTANCE_DIR, exist_ok=True)  # 确保目录存在

DB_PATH = os.path.join(INSTANCE_DIR, "dossiers.sqlite3")


def _env_bool(name, default):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name, default):
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [p.strip() for p in raw.split(",") if p.strip()]


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    # 注意：绝对路径 + 3 个斜杠
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "SQLALCHEMY_DATABASE_URI",
        f"sqlite:///{DB_PATH.replace(os.sep, '/')}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # sqlite 写锁等待上限（秒），争用时短暂等待而不是无限阻塞
    SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 5}} if SQLALCHEMY_DATABASE_URI.startswith("sqlite") else {}
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-jwt")
    JSON_AS_ASCII = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS = _env_list("CORS_ORIGINS", [
        "http://localhost:8848",
        "http://127.0.0.1:8848",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ])

    # ---- 档案编号 ----
    DOSSIER_PREFIX = os.getenv("DOSSIER_PREFIX", "INS")
    DOSSIER_SEQ_WIDTH = int(os.getenv("DOSSIER_SEQ_WIDTH", "5"))

    # ---- 审核流程 ----
    WORKFLOW_REQUIRE_PAYMENT = _env_bool("WORKFLOW_REQUIRE_PAYMENT", True)
    WORKFLOW_RETRY_ATTEMPTS = int(os.getenv("WORKFLOW_RETRY_ATTEMPTS", "3"))
    WORKFLOW_RETRY_BASE_DELAY = float(os.getenv("WORKFLOW_RETRY_BASE_DELAY", "0.05"))

    # ---- 通知投递 ----
    NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL")
    NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "10"))
