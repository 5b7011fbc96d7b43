"""初始化数据库"""
import sys
import os

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import argparse

from database import DatabaseManager
from config.funnel_config import funnel_config
from loguru import logger


def init_database(database_url=None, masters=None):
    """初始化数据库和种子数据

    Args:
        database_url: 数据库连接URL，为空时使用 settings 配置
        masters: 员工列表 [{"name", "role", "external_staff_id"}]（可选）
    """
    logger.info("Initializing database...")

    db = DatabaseManager(database_url)

    # 创建所有表
    logger.info("Creating tables...")
    db.create_tables()

    # 插入种子数据（默认工作队列状态来自 funnel_config）
    logger.info("Inserting seed data...")
    db.seed_defaults(funnel_config.get_default_statuses(), masters)

    logger.info("Database initialization completed!")
    db.close()


def _parse_master(value):
    """解析 --master 参数：name[:role[:staff_id]]"""
    parts = value.split(":")
    master = {"name": parts[0], "role": parts[1] if len(parts) > 1 and parts[1] else "master"}
    if len(parts) > 2 and parts[2]:
        master["external_staff_id"] = int(parts[2])
    return master


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="初始化 Direct Funnel 数据库")
    parser.add_argument("--db", default=None, help="数据库连接 URL")
    parser.add_argument("--master", action="append", type=_parse_master, default=[],
                        help="添加员工，格式 name[:role[:staff_id]]，可重复")
    args = parser.parse_args()
    init_database(args.db, args.master)
