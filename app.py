#!/usr/bin/env python3
"""Direct 漏斗同步服务 - 应用入口

启动定时回放服务：每隔 REPLAY_INTERVAL_MINUTES 分钟回放最近
REPLAY_LOOKBACK_DAYS 天的原始事件，保持顾客记录与漏斗状态同步。

使用方式：
    python app.py

    # 指定数据库
    python app.py --db sqlite:///data/direct.db

    # 启动时先回放一次
    python app.py --replay-now

环境变量（在 .env 文件中配置，运行 python scripts/setup_env.py 生成）：
    DATABASE_URL              数据库连接地址
    LOG_LEVEL                 日志级别（默认 INFO）
    REPLAY_INTERVAL_MINUTES   回放间隔（默认 30）
    REPLAY_LOOKBACK_DAYS      回放窗口天数（默认 1）
    TIMEZONE_NAME             调度时区（默认 Europe/Kyiv）
"""
import argparse
import asyncio
import os
import signal
import sys

from loguru import logger


def setup_logging(level: str) -> None:
    """配置 loguru 输出到标准输出"""
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=level,
    )


async def _cleanup(scheduler, db):
    """统一资源清理函数。

    确保调度器和数据库连接被正确关闭。
    """
    logger.info("Cleaning up...")

    # 1. 停止调度器（不再触发新的回放）
    if scheduler is not None:
        try:
            scheduler.stop()
        except Exception as e:
            logger.warning(f"Failed to stop scheduler: {e}")

    # 2. 关闭数据库连接（释放连接池）
    if db is not None:
        try:
            db.close()
        except Exception as e:
            logger.warning(f"Failed to close database: {e}")

    logger.info("Service stopped")


async def main():
    from config.settings import settings

    parser = argparse.ArgumentParser(description="Direct 漏斗同步服务")
    parser.add_argument("--db", default=os.getenv("DATABASE_URL", None),
                        help="数据库连接 URL")
    parser.add_argument("--replay-now", action="store_true",
                        help="启动后立即回放一次")
    args = parser.parse_args()

    setup_logging(settings.log_level)

    # 用于 finally 清理的引用
    scheduler = None
    db = None

    try:
        # 初始化数据库
        from database import DatabaseManager
        db = DatabaseManager(args.db)
        db.create_tables()
        db.seed_defaults()
        logger.info(f"Database connected: {db.database_url}")

        # 回放器与调度器
        from funnel import EventIngestor
        from funnel.scheduler import Scheduler, make_replay_task, schedule_replay

        ingestor = EventIngestor(db)
        scheduler = Scheduler()
        schedule_replay(scheduler, ingestor)
        scheduler.start()

        if args.replay_now:
            await make_replay_task(ingestor)()

        print()
        print("=" * 60)
        print("  Direct 漏斗同步服务已启动!")
        print(f"  数据库: {db.database_url}")
        print(f"  回放间隔: {settings.replay_interval_minutes} 分钟"
              f"（窗口 {settings.replay_lookback_days} 天）")
        print("=" * 60)
        print("  按 Ctrl+C 停止服务")
        print()

        # 设置信号处理 —— 使用 asyncio 的信号处理确保事件循环能正确响应
        loop = asyncio.get_running_loop()
        shutdown_event = asyncio.Event()
        _shutdown_requested = False

        def signal_handler(signum):
            """处理退出信号"""
            nonlocal _shutdown_requested
            if _shutdown_requested:
                # 第二次收到信号，强制退出
                logger.warning("Second shutdown signal received, forcing exit...")
                for task in asyncio.all_tasks(loop):
                    task.cancel()
                return
            _shutdown_requested = True
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler, sig)

        # 保持运行，直到收到退出信号
        await shutdown_event.wait()

    except asyncio.CancelledError:
        logger.info("Task cancelled, cleaning up...")
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        await _cleanup(scheduler, db)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        print("\n已停止。")
