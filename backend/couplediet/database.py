from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import event, text
from .config import settings

# 针对 SQLite 做一些“更像生产”的默认优化：
# - busy_timeout：降低并发写入下的 “database is locked”
# - WAL：提升并发读写能力（多个配对请求并行时尤其明显）
# - foreign_keys：打开外键约束（SQLite 默认关闭）
_is_sqlite = str(settings.database_url or "").startswith("sqlite")
_connect_args = {"timeout": 30} if _is_sqlite else {}

# Create async engine (supports both SQLite and PostgreSQL)
engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_pre_ping=True,
    future=True,
    connect_args=_connect_args,
)

# 只有 SQLite 才需要 PRAGMA；PostgreSQL 会忽略
if _is_sqlite:
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.close()

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

# Base class for models
Base = declarative_base()


async def get_db():
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """Initialize database tables"""
    # 确保所有模型都已被导入，从而注册到 Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await _ensure_schema(conn)


async def _ensure_schema(conn) -> None:
    """做一层轻量 schema 兼容，避免旧库缺索引导致查询变慢或约束缺失。

    说明：
    - 本项目未引入 Alembic，因此对“新增索引”采用 IF NOT EXISTS 的自修复方式。
    - 部分唯一索引（WHERE status IN ...）SQLite 与 PostgreSQL 语法一致。
    """
    # 同一对用户最多只能有一条 pending/active 关系；老库可能是在加约束之前建的表
    await conn.execute(
        text(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_couples_open_pair "
            "ON couples (user_low_id, user_high_id) "
            "WHERE status IN ('pending', 'active')"
        )
    )

    # 状态查询：按用户查 pending 关系（两个方向都要查）
    await conn.execute(
        text("CREATE INDEX IF NOT EXISTS idx_couples_low_status ON couples (user_low_id, status)")
    )
    await conn.execute(
        text("CREATE INDEX IF NOT EXISTS idx_couples_high_status ON couples (user_high_id, status)")
    )

    # 食物记录列表：按用户 + 日期范围 + 创建时间倒序
    await conn.execute(
        text("CREATE INDEX IF NOT EXISTS idx_meals_user_date ON meals (user_id, meal_date)")
    )
    await conn.execute(
        text("CREATE INDEX IF NOT EXISTS idx_meals_created_at_desc ON meals (created_at DESC)")
    )
