"""定时任务调度器 - 周期性回放最近的事件窗口

调度器只负责触发；回放逻辑在 EventIngestor 中，通过回调注入。
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import timedelta
from typing import Callable, Optional
from loguru import logger
from config.settings import settings
import asyncio

from .ingestor import EventIngestor, IngestResult


class Scheduler:
    """定时任务调度器

    通用的任务调度框架，不包含具体的业务逻辑
    """

    def __init__(self, timezone: Optional[str] = None):
        """初始化调度器

        Args:
            timezone: 调度时区，默认使用 settings.timezone_name
        """
        # 使用默认事件循环或创建新的事件循环
        try:
            loop = asyncio.get_event_loop()
            if loop.is_closed():
                loop = asyncio.new_event_loop()
                asyncio.set_event_loop(loop)
        except RuntimeError:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
        self.scheduler = AsyncIOScheduler(
            event_loop=loop, timezone=timezone or settings.timezone_name
        )

    def add_interval_task(
        self,
        task_func: Callable,
        minutes: int,
        task_id: str = 'interval_task',
        task_name: str = '周期任务'
    ):
        """添加固定间隔任务

        Args:
            task_func: 任务函数（async 函数）
            minutes: 间隔分钟数
            task_id: 任务ID
            task_name: 任务名称
        """
        self.scheduler.add_job(
            task_func,
            trigger=IntervalTrigger(minutes=minutes),
            id=task_id,
            name=task_name,
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )
        logger.info(f"Added interval task '{task_name}' every {minutes} minutes")

    def get_job(self, job_id: str):
        return self.scheduler.get_job(job_id)

    def start(self):
        """启动调度器"""
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self):
        """停止调度器"""
        self.scheduler.shutdown()
        logger.info("Scheduler stopped")


def make_replay_task(ingestor: EventIngestor,
                     lookback_days: Optional[int] = None) -> Callable:
    """创建回放任务：每次回放 [现在 - lookback_days, 现在] 窗口。

    回放是同步的数据库操作，放到线程池中执行，避免阻塞事件循环。

    Returns:
        async 任务函数，返回 IngestResult。
    """
    days = lookback_days if lookback_days is not None else settings.replay_lookback_days

    async def replay() -> IngestResult:
        end = ingestor.clock()
        start = end - timedelta(days=days)
        result = await asyncio.to_thread(ingestor.process, start, end)
        if result.errors:
            logger.warning(f"Scheduled replay finished with {len(result.errors)} errors")
        return result

    return replay


def schedule_replay(scheduler: Scheduler, ingestor: EventIngestor,
                    interval_minutes: Optional[int] = None,
                    lookback_days: Optional[int] = None) -> None:
    """把周期回放注册到调度器。"""
    scheduler.add_interval_task(
        make_replay_task(ingestor, lookback_days),
        minutes=interval_minutes or settings.replay_interval_minutes,
        task_id='event_replay',
        task_name='事件回放'
    )
