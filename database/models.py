"""SQLAlchemy ORM 模型定义。

本模块定义了 Direct 漏斗的所有数据库表，包括：
- 顾客（规范身份记录）与工作队列状态、员工（master）
- 状态历史、私信记录等按顾客追加的日志
- 原始事件日志、带过期时间的键值缓存
"""
from typing import Dict, Any, List, Optional
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime,
    DECIMAL, ForeignKey, JSON
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

# SQLAlchemy declarative base，所有模型都继承自此类
# 设置 __allow_unmapped__ = True 以兼容 SQLAlchemy 2.0 的类型注解要求
Base = declarative_base()

# 为Base类添加__allow_unmapped__属性，允许使用旧式类型注解
Base.__allow_unmapped__ = True


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与数据库中存储的时间保持一致）。"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ClientStatus(Base):
    """工作队列状态表模型。

    与漏斗生命周期状态无关的独立标签轴，用于管理员的工作队列。
    任意时刻有且只有一条记录 is_default=True。

    Attributes:
        id: 主键，状态标识（如 new、consultation）。
        name: 显示名称。
        color: 显示颜色（hex）。
        order: 排序序号。
        is_default: 是否为新顾客的默认状态。
        created_at: 创建时间。
    """
    __tablename__ = "direct_statuses"

    id: str = Column(String(50), primary_key=True)
    name: str = Column(String(100), nullable=False)
    color: str = Column(String(20), default="#6b7280")
    order: int = Column(Integer, default=0)
    is_default: bool = Column(Boolean, default=False)
    created_at: datetime = Column(DateTime, default=utcnow)

    clients: List["Client"] = relationship("Client", back_populates="status")


class Master(Base):
    """员工（master）表模型。

    存储沙龙员工，预约系统里的 staff 通过姓名或外部 staff id 对应到这里。

    Attributes:
        id: 主键，自增整数。
        name: 员工姓名，唯一。
        role: 角色，可选值：master（技师）/ admin（管理员）/ direct-manager（私信经理）。
        external_staff_id: 预约系统中的 staff id，可选。
        is_active: 是否在职。
        created_at: 创建时间。
    """
    __tablename__ = "direct_masters"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    name: str = Column(String(100), nullable=False, unique=True)
    role: str = Column(String(30), default="master")  # master / admin / direct-manager
    external_staff_id: Optional[int] = Column(Integer, index=True)
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=utcnow)


class Client(Base):
    """顾客（规范身份记录）表模型。

    每个真实顾客只对应一条记录。handle 全局唯一，可能是占位值
    （missing-handle-{外部ID} / no-handle-{外部ID}），表示真实账号尚未知晓。

    Attributes:
        id: 主键，自增整数，创建后不变且永不复用。
        handle: 规范化的小写社交账号，唯一。
        external_booking_id: 预约系统中的顾客ID，可选（尽量唯一，合并时修复）。
        given_name / family_name: 名 / 姓，可选。
        phone / visit_count / total_spent: 从预约系统同步的指标。
        state: 漏斗生命周期状态，可为空。
        status_id: 工作队列状态，外键关联direct_statuses表。
        source: 广告来源（instagram / tiktok / other）。
        first_contact_at: 首次接触时间。
        consultation_*: 咨询漏斗字段（预约时间、到店三态、取消、咨询师）。
        paid_service_*: 付费服务漏斗字段（预约时间、到店三态、取消、金额、上游删除标记）。
        master_id / master_manually_set: 负责员工；管理员手动指定后不再自动分配。
        last_message_at: 最近一条私信时间。
        activity_at / activity_keys: "最近活跃"排序时间戳及触发它的字段标签。
        created_at / updated_at: 创建 / 更新时间。
    """
    __tablename__ = "direct_clients"
    __table_args__ = {"sqlite_autoincrement": True}

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    handle: str = Column(String(200), nullable=False, unique=True)
    external_booking_id: Optional[int] = Column(Integer, index=True)
    given_name: Optional[str] = Column(String(100))
    family_name: Optional[str] = Column(String(100))
    phone: Optional[str] = Column(String(30))
    visit_count: Optional[int] = Column(Integer)
    total_spent: Optional[float] = Column(DECIMAL(12, 2))
    state: Optional[str] = Column(String(40))
    status_id: Optional[str] = Column(String(50), ForeignKey("direct_statuses.id"))
    source: str = Column(String(20), default="instagram")  # instagram / tiktok / other
    first_contact_at: Optional[datetime] = Column(DateTime)

    # 咨询
    consultation_booking_at: Optional[datetime] = Column(DateTime)
    consultation_date: Optional[datetime] = Column(DateTime)
    consultation_attended: Optional[bool] = Column(Boolean)  # None = 未知
    consultation_cancelled: bool = Column(Boolean, default=False)
    consultation_master_id: Optional[int] = Column(Integer)
    consultation_master_name: Optional[str] = Column(String(100))

    # 付费服务
    paid_service_at: Optional[datetime] = Column(DateTime)
    paid_service_attended: Optional[bool] = Column(Boolean)  # None = 未知
    paid_service_cancelled: bool = Column(Boolean, default=False)
    paid_service_total_cost: Optional[float] = Column(DECIMAL(12, 2))
    paid_service_deleted_upstream: bool = Column(Boolean, default=False)
    paid_service_is_repeat: Optional[bool] = Column(Boolean)

    master_id: Optional[int] = Column(Integer, ForeignKey("direct_masters.id"))
    master_manually_set: bool = Column(Boolean, default=False)

    last_message_at: Optional[datetime] = Column(DateTime)
    activity_at: Optional[datetime] = Column(DateTime, index=True)
    activity_keys: List[str] = Column(JSON, default=list)

    created_at: datetime = Column(DateTime, default=utcnow)
    updated_at: datetime = Column(DateTime, default=utcnow)

    # Relationships
    status: Optional["ClientStatus"] = relationship("ClientStatus", back_populates="clients")
    master: Optional["Master"] = relationship("Master")

    def to_dict(self) -> Dict[str, Any]:
        """导出为普通字典（列名 -> 值），供纯函数层使用。"""
        return {
            column.name: getattr(self, column.name)
            for column in self.__table__.columns
        }


class ClientStateLog(Base):
    """顾客状态历史表模型（只追加）。

    每次可见的状态变化写入一行；state 与 previous_state 相同时不写。
    不设外键级联：顾客被合并删除前，其历史会被迁移到保留的记录上。

    Attributes:
        id: 主键，自增整数。
        client_id: 顾客ID。
        state: 新状态，可为空。
        previous_state: 旧状态，可为空。
        reason: 变化原因（短标签）。
        extra_data: 附加元数据，JSON。
        created_at: 写入时间。
    """
    __tablename__ = "direct_client_state_logs"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    client_id: int = Column(Integer, nullable=False, index=True)
    state: Optional[str] = Column(String(40), index=True)
    previous_state: Optional[str] = Column(String(40))
    reason: str = Column(String(100), default="unknown")
    extra_data: Optional[Dict[str, Any]] = Column("metadata", JSON)
    created_at: datetime = Column(DateTime, default=utcnow, index=True)


class ClientMessage(Base):
    """顾客私信记录表模型。

    Attributes:
        id: 主键，自增整数。
        client_id: 顾客ID。
        direction: 方向，incoming / outgoing。
        text: 消息内容。
        received_at: 消息时间。
    """
    __tablename__ = "direct_messages"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    client_id: int = Column(Integer, nullable=False, index=True)
    direction: str = Column(String(10), default="incoming")  # incoming / outgoing
    text: Optional[str] = Column(Text)
    received_at: datetime = Column(DateTime, default=utcnow)


class RawEventLogEntry(Base):
    """原始事件日志表模型（只追加）。

    两个有序日志共用一张表：webhook（通用 webhook 日志）和 records
    （更详细的预约记录日志）。payload 按原样保存，读取时再做多形态解析。

    Attributes:
        id: 主键，自增整数，即日志中的位置。
        log_name: 日志名，webhook / records。
        payload: 原始内容（文本）。
        received_at: 接收时间，可选。
        created_at: 写入时间。
    """
    __tablename__ = "raw_event_log"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    log_name: str = Column(String(20), nullable=False, index=True)  # webhook / records
    payload: str = Column(Text, nullable=False)
    received_at: Optional[datetime] = Column(DateTime)
    created_at: datetime = Column(DateTime, default=utcnow)


class CacheEntry(Base):
    """键值缓存表模型。

    存放小型反规范化数据（如头像URL）和租约，expires_at 为空表示永不过期。

    Attributes:
        key: 主键，缓存键。
        value: 缓存值，JSON。
        expires_at: 过期时间，可选。
        updated_at: 更新时间。
    """
    __tablename__ = "kv_cache"

    key: str = Column(String(200), primary_key=True)
    value: Any = Column(JSON)
    expires_at: Optional[datetime] = Column(DateTime)
    updated_at: datetime = Column(DateTime, default=utcnow, onupdate=utcnow)
