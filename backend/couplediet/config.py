from __future__ import annotations

import logging
import secrets
from pathlib import Path

from dotenv import load_dotenv
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_APP_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _APP_DIR.parent
_REPO_ROOT = _BACKEND_DIR.parent

logger = logging.getLogger(__name__)


def _load_root_dotenv() -> None:
    """
    统一从仓库根目录读取 `.env`（并保证其优先级最高）。

    说明：
    - 启动脚本通常会 `cd backend`，导致工具默认只会找子目录下的 `.env`。
    - 这里显式加载：先加载 `backend/.env`，再加载根目录 `.env`，并且 `override=True`，确保根目录优先。
    """

    backend_env = _BACKEND_DIR / ".env"
    root_env = _REPO_ROOT / ".env"

    for env_file in (backend_env, root_env):
        if env_file.exists():
            load_dotenv(env_file, override=True, encoding="utf-8")


class Settings(BaseSettings):
    """Application settings"""

    # Server（供 run.py 使用）
    backend_host: str = "0.0.0.0"
    backend_port: int = 31020
    backend_reload: bool = True

    # Database
    # 优先使用 DATABASE_URL；不配置时再使用 SQLITE_DB_PATH 生成 sqlite URL
    database_url: str | None = None
    sqlite_db_path: str = "couplediet.db"

    # API
    api_prefix: str = "/api"
    debug: bool = True
    # 是否输出 SQLAlchemy 的 SQL 日志；排查事务/并发问题时再临时打开
    sql_echo: bool = False

    # CORS（逗号分隔；"*" 表示允许所有来源，此时强制关闭 allow_credentials）
    cors_allow_origins: str = "*"
    cors_allow_credentials: bool = False
    cors_allow_methods: str = "*"
    cors_allow_headers: str = "*"

    # 登录态（Bearer token）
    # - AUTH_TOKEN_SECRET：HMAC 签名密钥；生产环境必须显式配置
    # - debug 模式下未配置时会生成进程级随机密钥（重启后旧 token 全部失效）
    auth_token_secret: str | None = None
    auth_token_days: int = 30
    password_hash_iterations: int = 210_000

    # Pairing（配对状态机依赖的存储调用约束）
    # - store_timeout_seconds：单次存储调用的超时上限，超时按 Transient 返回
    # - disconnect_cleanup_*：解除配对时“清理双方 partner_id”的重试策略
    store_timeout_seconds: float = 10.0
    disconnect_cleanup_attempts: int = 3
    disconnect_cleanup_backoff_seconds: float = 0.2

    # 定时修复悬挂的 partner_id（PartialDisconnect 的兜底）
    reconcile_interval_minutes: int = 30
    reconcile_on_startup: bool = True

    @model_validator(mode="after")
    def _build_database_url_if_missing(self) -> "Settings":
        if self.database_url and self.database_url.strip():
            return self

        db_path = Path(self.sqlite_db_path)
        if not db_path.is_absolute():
            db_path = (_REPO_ROOT / db_path).resolve()

        self.database_url = f"sqlite+aiosqlite:///{db_path.as_posix()}"
        return self

    @model_validator(mode="after")
    def _normalize_auth(self) -> "Settings":
        secret = (self.auth_token_secret or "").strip()
        if not secret:
            if not self.debug:
                raise ValueError("未配置 AUTH_TOKEN_SECRET（非 debug 模式下必须显式配置）")
            secret = secrets.token_urlsafe(32)
            logger.warning("[CONFIG] AUTH_TOKEN_SECRET not set, using a per-process random secret")
        self.auth_token_secret = secret

        if int(self.auth_token_days or 0) <= 0:
            self.auth_token_days = 30

        if int(self.password_hash_iterations or 0) <= 0:
            self.password_hash_iterations = 210_000

        return self

    @model_validator(mode="after")
    def _normalize_pairing(self) -> "Settings":
        if not self.store_timeout_seconds or self.store_timeout_seconds <= 0:
            self.store_timeout_seconds = 10.0

        if int(self.disconnect_cleanup_attempts or 0) <= 0:
            self.disconnect_cleanup_attempts = 3

        if self.disconnect_cleanup_backoff_seconds < 0:
            self.disconnect_cleanup_backoff_seconds = 0.0

        if int(self.reconcile_interval_minutes or 0) <= 0:
            self.reconcile_interval_minutes = 30

        return self

    model_config = SettingsConfigDict(
        case_sensitive=False
    )


_load_root_dotenv()
settings = Settings()
