"""Scheduler for pairing maintenance jobs"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from .config import settings
from .database import AsyncSessionLocal
from .services import reconcile_partner_references

logger = logging.getLogger(__name__)


class PairingMaintenanceScheduler:
    """配对数据修复定时任务调度器"""

    def __init__(self):
        # 关键约束：
        # - max_instances=1：避免修复任务重入（上一次未完成时不并发启动下一次）
        # - coalesce=True：如果发生 misfire，则合并为一次执行（避免堆积）
        self.scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )

    async def reconcile_partner_references(self) -> int:
        """清理悬挂的 partner_id（PartialDisconnect 的最终兜底）"""
        logger.info("[RECONCILE] Starting partner reference reconciliation...")

        async with AsyncSessionLocal() as db:
            try:
                repaired = await reconcile_partner_references(db)
            except Exception as e:
                logger.exception("[RECONCILE] Reconciliation error: %s", e)
                return 0

        logger.info("[RECONCILE] Reconciliation completed: repaired=%s", repaired)
        return repaired

    def start(self):
        """启动定时任务"""
        interval_minutes = int(getattr(settings, "reconcile_interval_minutes", 30) or 30)
        if interval_minutes <= 0:
            interval_minutes = 30

        if getattr(self.scheduler, "running", False):
            logger.info("[SCHEDULER] Scheduler already running")
            return

        self.scheduler.add_job(
            self.reconcile_partner_references,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id='reconcile_partner_references',
            name=f'Reconcile partner references every {interval_minutes} minutes',
            replace_existing=True
        )

        self.scheduler.start()
        logger.info("[SCHEDULER] Scheduler started: reconcile every %s minutes", interval_minutes)

    def shutdown(self):
        """关闭定时任务"""
        if not getattr(self.scheduler, "running", False):
            return
        self.scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Scheduler stopped")


# 全局调度器实例
scheduler = PairingMaintenanceScheduler()
