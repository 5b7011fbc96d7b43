"""数据库管理器 —— 统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.clients``、``db.state_logs`` 等属性直接访问子仓库，
   返回 ORM 对象，适合需要精细控制的场景。

2. **便捷方法**（粗粒度）：
   提供扁平化的方法（如 ``append_raw_event()``、``seed_defaults()``），
   适合脚本和上层业务代码。
"""
from typing import Optional, List, Dict, Any, Union
from datetime import datetime
from sqlalchemy.orm import Session
from loguru import logger

from .connection import DatabaseConnection
from .client_repos import ClientRepository, StatusRepository, MasterRepository
from .history_repos import StateLogRepository, MessageRepository
from .system_repos import EventLogRepository, CacheRepository


class DatabaseManager:
    """数据库管理器 —— 统一门面。

    Attributes:
        conn: 数据库连接管理器。
        clients: 顾客仓库。
        statuses: 工作队列状态仓库。
        masters: 员工仓库。
        state_logs: 状态历史仓库。
        messages: 私信记录仓库。
        event_log: 原始事件日志仓库。
        cache: 键值缓存仓库。

    Example::

        db = DatabaseManager("sqlite:///data/direct.db")
        db.create_tables()
        db.seed_defaults()

        client = db.clients.get_by_handle("anna.hair")
        history = db.state_logs.get_history(client.id)
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """初始化数据库管理器。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
        """
        # 基础设施层
        self.conn = DatabaseConnection(database_url)

        # 实体仓库
        self.clients = ClientRepository(self.conn)
        self.statuses = StatusRepository(self.conn)
        self.masters = MasterRepository(self.conn)

        # 历史仓库
        self.state_logs = StateLogRepository(self.conn)
        self.messages = MessageRepository(self.conn)

        # 系统数据仓库
        self.event_log = EventLogRepository(self.conn)
        self.cache = CacheRepository(self.conn)

    # ================================================================
    # 基础设施方法
    # ================================================================

    def create_tables(self) -> None:
        """创建所有数据库表（幂等操作）。"""
        self.conn.create_tables()

    def get_session(self) -> Session:
        """获取数据库会话。"""
        return self.conn.get_session()

    @property
    def database_url(self) -> str:
        """数据库连接URL。"""
        return self.conn.database_url

    @property
    def engine(self):
        """SQLAlchemy 引擎对象。"""
        return self.conn.engine

    def close(self) -> None:
        """关闭数据库连接，释放所有资源。"""
        self.conn.close()

    # ================================================================
    # 便捷方法
    # ================================================================

    def seed_defaults(self, statuses: Optional[List[Dict[str, Any]]] = None,
                      masters: Optional[List[Dict[str, Any]]] = None) -> None:
        """写入默认工作队列状态和员工（幂等）。

        Args:
            statuses: 状态列表，为空时使用漏斗配置中的默认状态。
            masters: 员工列表（name / role / external_staff_id），可选。
        """
        if statuses is None:
            from config.funnel_config import funnel_config
            statuses = funnel_config.get_default_statuses()

        existing = {s.id for s in self.statuses.get_all_ordered()}
        for status in statuses:
            if status["id"] not in existing:
                self.statuses.save(status)
                logger.info(f"Created status: {status['id']}")

        for master in masters or []:
            self.masters.get_or_create(
                master["name"],
                role=master.get("role", "master"),
                external_staff_id=master.get("external_staff_id"),
            )

    def append_raw_event(self, log_name: str,
                         payload: Union[str, dict, list],
                         received_at: Optional[datetime] = None) -> int:
        """向原始事件日志追加一条记录，详见 EventLogRepository.append。"""
        return self.event_log.append(log_name, payload, received_at)
