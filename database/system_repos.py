"""系统数据仓库 —— 原始事件日志与键值缓存的数据访问层。

原始事件日志保存 webhook 推送的原始内容，用于回放和追溯；
键值缓存保存带过期时间的小型数据（头像URL等）和跨进程租约。
"""
import json
from typing import Optional, List, Any, Union
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import RawEventLogEntry, CacheEntry, utcnow

WEBHOOK_LOG = "webhook"
RECORDS_LOG = "records"


class EventLogRepository(BaseCRUD):
    """原始事件日志 仓库。

    两个只追加的有序日志：webhook（通用 webhook 日志）和 records
    （详细预约记录日志）。条目内容不做任何校验，按原样保存。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def append(self, log_name: str, payload: Union[str, dict, list],
               received_at: Optional[datetime] = None) -> int:
        """追加一条原始事件。

        Args:
            log_name: 日志名（webhook / records）。
            payload: 原始内容，字典或列表会被序列化为 JSON 文本。
            received_at: 接收时间（可选）。

        Returns:
            条目ID（即日志中的位置）。
        """
        if log_name not in (WEBHOOK_LOG, RECORDS_LOG):
            raise ValueError(f"Unknown event log: {log_name}")

        if not isinstance(payload, str):
            payload = json.dumps(payload, ensure_ascii=False, default=str)

        with self._get_session() as session:
            entry = RawEventLogEntry(
                log_name=log_name,
                payload=payload,
                received_at=received_at,
                created_at=utcnow(),
            )
            session.add(entry)
            session.commit()
            return entry.id

    def read_recent(self, log_name: str, limit: int,
                    session: Optional[Session] = None) -> List[str]:
        """读取日志中最近的若干条原始内容（最新的在前）。

        Args:
            log_name: 日志名。
            limit: 最多读取的条数。

        Returns:
            原始内容字符串列表。
        """
        def _query(sess):
            rows = sess.query(RawEventLogEntry.payload).filter(
                RawEventLogEntry.log_name == log_name
            ).order_by(RawEventLogEntry.id.desc()).limit(limit).all()
            return [row[0] for row in rows]

        return self._run(_query, session)


class CacheRepository(BaseCRUD):
    """键值缓存 仓库。

    过期条目在读取时视为不存在。acquire/release 提供跨进程的
    键级租约：获取成功的调用方在租约到期或释放前独占该键。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get(self, key: str) -> Any:
        """读取缓存值，不存在或已过期时返回 None。"""
        with self._get_session() as session:
            entry = session.get(CacheEntry, key)
            if entry is None or self._is_expired(entry):
                return None
            return entry.value

    def set(self, key: str, value: Any,
            ttl_seconds: Optional[int] = None) -> None:
        """写入缓存值（覆盖已有值）。

        Args:
            key: 缓存键。
            value: 任意 JSON 可序列化的值。
            ttl_seconds: 有效期（秒），为空表示永不过期。
        """
        expires_at = utcnow() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        with self._get_session() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                session.add(CacheEntry(key=key, value=value, expires_at=expires_at))
            else:
                entry.value = value
                entry.expires_at = expires_at
            session.commit()

    def delete(self, key: str) -> None:
        """删除缓存键。"""
        with self._get_session() as session:
            session.query(CacheEntry).filter(CacheEntry.key == key).delete()
            session.commit()

    def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        """尝试获取键级租约。

        先清理该键已过期的租约，再插入新租约；插入因主键冲突失败
        说明其他调用方持有未过期的租约。

        Args:
            key: 租约键。
            ttl_seconds: 租约有效期（秒）。

        Returns:
            持有者令牌（释放时需要），获取失败时返回 None。
        """
        now = utcnow()
        token = uuid4().hex
        with self._get_session() as session:
            session.query(CacheEntry).filter(
                CacheEntry.key == key,
                CacheEntry.expires_at.isnot(None),
                CacheEntry.expires_at <= now
            ).delete(synchronize_session=False)
            session.add(CacheEntry(
                key=key,
                value={"token": token, "acquired_at": now.isoformat()},
                expires_at=now + timedelta(seconds=ttl_seconds),
            ))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info(f"Lease {key} is held by another worker")
                return None
            return token

    def release(self, key: str, token: str) -> bool:
        """释放租约。只有令牌匹配（仍是自己的租约）时才删除。

        Returns:
            是否删除了租约。
        """
        with self._get_session() as session:
            entry = session.get(CacheEntry, key)
            if entry is None or not isinstance(entry.value, dict) \
                    or entry.value.get("token") != token:
                logger.info(f"Lease {key} is no longer ours, leaving it in place")
                return False
            session.delete(entry)
            session.commit()
            return True

    @staticmethod
    def _is_expired(entry: CacheEntry) -> bool:
        return entry.expires_at is not None and entry.expires_at <= utcnow()
