#!/usr/bin/env python3
"""手动回放一个时间窗口内的事件

使用方式：
    # 回放最近 1 天（默认 settings.replay_lookback_days）
    python scripts/run_sync.py

    # 回放最近 7 天
    python scripts/run_sync.py --days 7

    # 回放指定窗口（ISO 时间，UTC）
    python scripts/run_sync.py --start 2024-05-01T00:00:00 --end 2024-05-02T00:00:00
"""
import sys
import os

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import argparse
from datetime import timedelta

from loguru import logger

from config.settings import settings
from database import DatabaseManager
from database.models import utcnow
from funnel import EventIngestor
from funnel.errors import ParseError
from funnel.payloads import parse_datetime


def main() -> int:
    parser = argparse.ArgumentParser(description="回放原始事件日志")
    parser.add_argument("--db", default=None, help="数据库连接 URL")
    parser.add_argument("--days", type=int, default=settings.replay_lookback_days,
                        help="回放最近 N 天（未指定 --start 时生效）")
    parser.add_argument("--start", default=None, help="窗口开始（ISO 时间）")
    parser.add_argument("--end", default=None, help="窗口结束（ISO 时间，默认现在）")
    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stdout, format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
               level=settings.log_level)

    try:
        end = parse_datetime(args.end) or utcnow()
        start = parse_datetime(args.start) or end - timedelta(days=args.days)
    except ParseError as e:
        print(f"参数错误: {e}")
        return 2

    db = DatabaseManager(args.db)
    try:
        db.create_tables()
        result = EventIngestor(db).process(start, end)
    except Exception as e:
        logger.error(f"Replay failed: {e}")
        print(f"回放失败: {e}")
        return 1
    finally:
        db.close()

    print()
    print("=" * 60)
    print(f"  窗口: {start.isoformat()} ~ {end.isoformat()}")
    print(f"  处理: {result.processed}  新建: {result.created}  更新: {result.updated}")
    print(f"  跳过: {result.skipped}  合并: {result.merged}  格式错误: {result.parse_errors}")
    if result.errors:
        print(f"  部分失败（{len(result.errors)} 个事件）：")
        for message in result.errors:
            print(f"    - {message}")
    print("=" * 60)
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
