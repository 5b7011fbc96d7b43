"""顾客服务：所有顾客写入的统一入口。

save() 负责：
- 状态与 handle 在写入边界的规范化；
- client 状态只能进入一次的守卫；
- handle 唯一冲突的恢复（新记录并入占用者，已有记录走合并流程）；
- 活跃标签计算与 activity_at 盖章；
- 状态变化时追加一条历史；
- 提交后的首次指标回填（带租约）。
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from config.settings import settings
from database import DatabaseManager
from database.models import Client, ClientMessage, ClientStateLog, Master, utcnow
from .activity import compute_activity_keys
from .booking import BookingSystemClient
from .errors import ConstraintConflict, NotFound, UpstreamUnavailable
from .merge import MergeEngine
from .state_machine import guard_client_state
from .states import (
    MISSING_HANDLE_PREFIX, NO_HANDLE_PREFIX,
    normalize_handle, normalize_state, is_real_handle, placeholder_handle,
)

CLIENT_FIELDS = frozenset(c.name for c in Client.__table__.columns)

# 冲突恢复的最大重试次数
MAX_SAVE_ATTEMPTS = 3

METRICS_LEASE_PREFIX = "metrics-sync:"


@dataclass
class StateChange:
    """状态历史中的一条记录（状态值已规范化）。"""
    id: int
    client_id: int
    state: Optional[str]
    previous_state: Optional[str]
    reason: str
    metadata: Optional[Dict[str, Any]]
    created_at: datetime

    @classmethod
    def from_log(cls, entry: ClientStateLog) -> "StateChange":
        return cls(
            id=entry.id,
            client_id=entry.client_id,
            state=normalize_state(entry.state),
            previous_state=normalize_state(entry.previous_state),
            reason=entry.reason,
            metadata=entry.extra_data,
            created_at=entry.created_at,
        )


def _normalize_record_handle(raw: Any) -> Optional[str]:
    if not raw or not isinstance(raw, str):
        return None
    text = raw.strip().lower()
    if text.startswith(MISSING_HANDLE_PREFIX) or text.startswith(NO_HANDLE_PREFIX):
        return text
    return normalize_handle(raw)


class ClientService:
    """顾客服务。

    Attributes:
        db: 数据库管理器。
        booking_client: 预约系统客户端（可选，为空时不做指标回填）。
        clock: 返回当前时间（naive UTC）的函数，测试中可替换。
        merger: 合并引擎。
    """

    def __init__(self, db: DatabaseManager,
                 booking_client: Optional[BookingSystemClient] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.booking_client = booking_client
        self.clock = clock
        self.merger = MergeEngine(db)

    # ================================================================
    # 写入
    # ================================================================

    def save(self, record: Dict[str, Any],
             reason: Optional[str] = None,
             metadata: Optional[Dict[str, Any]] = None,
             touch_activity: bool = True,
             skip_metrics_sync: bool = False,
             session: Optional[Session] = None) -> Client:
        """保存顾客（新建或更新）。

        record 中包含 id 时更新该顾客，只写入给出的字段；否则新建顾客。
        handle 与其他顾客冲突时不会抛出约束错误：新记录会并入占用该
        handle 的顾客，已有记录会与占用者合并，写入落在合并保留方上。

        Args:
            record: 顾客字段字典。
            reason: 状态变化原因（写入历史）。
            metadata: 状态变化附加元数据。
            touch_activity: 是否允许移动 activity_at（回填、管理员修正时传 False）。
            skip_metrics_sync: 是否跳过首次指标回填。
            session: 外部会话（可选）。传入时不提交，也不做指标回填，
                由调用方在提交后执行；冲突恢复会回滚该会话中尚未提交的修改。

        Returns:
            保存后的 Client 对象（可能是合并保留方）。

        Raises:
            NotFound: record 中的 id 不存在。
            ValueError: 未知字段或未知状态。
        """
        unknown = set(record) - CLIENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown client fields: {sorted(unknown)}")

        if session is not None:
            return self._save_with_recovery(record, reason, metadata, touch_activity, session)

        with self.db.get_session() as sess:
            client = self._save_with_recovery(record, reason, metadata, touch_activity, sess)
            sess.commit()

        if not skip_metrics_sync:
            self.backfill_metrics(client.id)
        return client

    def _save_with_recovery(self, record, reason, metadata, touch_activity,
                            session: Session) -> Client:
        fields = dict(record)
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._save_once(fields, reason, metadata, touch_activity, session)
            except IntegrityError as e:
                session.rollback()
                handle = _normalize_record_handle(fields.get("handle"))
                if not handle or attempt >= MAX_SAVE_ATTEMPTS:
                    raise
                holder = self.db.clients.get_by_handle(handle, session=session)
                conflict = ConstraintConflict(handle, holder.id if holder else None)
                logger.warning(f"{conflict} (concurrent write: {e.orig})")
            except ConstraintConflict as e:
                if attempt >= MAX_SAVE_ATTEMPTS:
                    raise
                conflict = e
                logger.info(str(conflict))
            fields = self._recover(fields, conflict, session)

    def _recover(self, fields: Dict[str, Any], conflict: ConstraintConflict,
                 session: Session) -> Dict[str, Any]:
        """把 handle 冲突转换为对占用者的写入或合并。"""
        if conflict.holder_id is None:
            return fields
        fields = dict(fields)
        client_id = fields.get("id")
        if client_id is None:
            logger.info(f"Routing new client onto {conflict.holder_id} holding '{conflict.handle}'")
            fields["id"] = conflict.holder_id
            return fields

        # 合并在独立会话中执行，先释放外部会话可能持有的写锁
        session.rollback()
        result = self.merger.merge(client_id, conflict.holder_id)
        if result is not None:
            fields["id"] = result.survivor_id
        return fields

    def _save_once(self, record: Dict[str, Any], reason: Optional[str],
                   metadata: Optional[Dict[str, Any]], touch_activity: bool,
                   session: Session) -> Client:
        fields = dict(record)
        client_id = fields.pop("id", None)
        current = None
        if client_id is not None:
            current = session.get(Client, client_id)
            if current is None:
                raise NotFound(f"Client {client_id} not found")

        if "state" in fields:
            fields["state"] = normalize_state(fields["state"])

        if "handle" in fields:
            handle = _normalize_record_handle(fields["handle"])
            # 真实 handle 不会被占位值或空值覆盖
            if handle is None or (current is not None and is_real_handle(current.handle)
                                  and not is_real_handle(handle)):
                fields.pop("handle")
            else:
                fields["handle"] = handle

        if "external_booking_id" in fields and current is not None \
                and current.external_booking_id is not None \
                and fields["external_booking_id"] != current.external_booking_id:
            logger.warning(
                f"Ignoring external id change for client {current.id}: "
                f"{current.external_booking_id} -> {fields['external_booking_id']}"
            )
            fields.pop("external_booking_id")

        if current is None and not fields.get("handle"):
            token = fields.get("external_booking_id") or uuid4().hex[:12]
            fields["handle"] = placeholder_handle(token)

        handle = fields.get("handle")
        if handle and (current is None or handle != current.handle):
            holder = self.db.clients.get_by_handle(handle, session=session)
            if holder is not None and (current is None or holder.id != current.id):
                raise ConstraintConflict(handle, holder.id)

        previous = current.to_dict() if current is not None else {}
        previous_state = normalize_state(previous.get("state"))
        if "state" in fields and fields["state"] == "client":
            history = self._history_states(current.id, session) if current is not None else []
            fields["state"] = guard_client_state(fields["state"], previous_state, history)

        activity_keys = compute_activity_keys(previous, fields) if touch_activity else set()
        now = self.clock()

        if current is None:
            if "status_id" not in fields:
                default = self.db.statuses.get_default(session=session)
                fields["status_id"] = default.id if default else None
            fields.setdefault("first_contact_at", now)
            fields.setdefault("created_at", now)
            client = self.db.clients.create(fields, session=session)
        else:
            client = current
            for key, value in fields.items():
                setattr(client, key, value)

        if activity_keys:
            client.activity_at = now
            client.activity_keys = sorted(activity_keys)
        client.updated_at = now
        session.flush()

        new_state = normalize_state(client.state)
        if new_state != previous_state:
            self.db.state_logs.append(
                client.id, new_state, previous_state,
                reason=reason, metadata=metadata, session=session,
            )
        return client

    def _history_states(self, client_id: int, session: Session) -> List[Optional[str]]:
        return [entry.state for entry in self.db.state_logs.get_history(client_id, session=session)]

    # ================================================================
    # 查询
    # ================================================================

    def get_state_history(self, client_id: int,
                          session: Optional[Session] = None) -> List[StateChange]:
        """获取顾客的状态历史（最新的在前，状态值已规范化）。"""
        entries = self.db.state_logs.get_history(client_id, session=session)
        return [StateChange.from_log(entry) for entry in entries]

    def history_states(self, client_id: int,
                       session: Optional[Session] = None) -> List[Optional[str]]:
        """顾客历史中出现过的全部状态（规范化后，最新的在前）。"""
        return [change.state for change in self.get_state_history(client_id, session=session)]

    # ================================================================
    # 管理操作
    # ================================================================

    def set_master(self, client_id: int, master_id: Optional[int]) -> Client:
        """管理员手动指定负责员工，之后不再自动分配。

        Raises:
            NotFound: 顾客或员工不存在。
        """
        if master_id is not None:
            if self.db.masters.get_by_id(Master, master_id) is None:
                raise NotFound(f"Master {master_id} not found")
        return self.save(
            {"id": client_id, "master_id": master_id, "master_manually_set": True},
            reason="admin-master-override",
            skip_metrics_sync=True,
        )

    def reset_deleted_upstream(self, client_id: int) -> Client:
        """管理员清除 paid_service_deleted_upstream 标记，恢复付费预约的日期写入。

        Raises:
            NotFound: 顾客不存在。
        """
        return self.save(
            {"id": client_id, "paid_service_deleted_upstream": False},
            reason="admin-reset-deleted-upstream",
            touch_activity=False, skip_metrics_sync=True,
        )

    def record_message(self, client_id: int, text: Optional[str],
                       received_at: datetime, direction: str = "incoming",
                       session: Optional[Session] = None) -> ClientMessage:
        """记录一条私信，并在消息更新时移动顾客的 last_message_at。

        Returns:
            ClientMessage 对象。
        """
        def _do(sess: Session) -> ClientMessage:
            message = self.db.messages.add(client_id, text, received_at, direction, session=sess)
            client = sess.get(Client, client_id)
            if client is None:
                raise NotFound(f"Client {client_id} not found")
            if client.last_message_at is None or received_at > client.last_message_at:
                self.save(
                    {"id": client_id, "last_message_at": received_at},
                    reason="message", session=sess,
                )
            return message

        if session is not None:
            return _do(session)
        with self.db.get_session() as sess:
            message = _do(sess)
            sess.commit()
            return message

    # ================================================================
    # 指标回填
    # ================================================================

    def backfill_metrics(self, client_id: int) -> bool:
        """首次从预约系统回填顾客指标（电话、到店次数、消费总额）。

        只对有外部ID且从未同步过指标的顾客执行。远程请求前获取
        metrics-sync:{外部ID} 租约，多个进程同时触发时只有一个会请求。

        Returns:
            是否写入了指标。
        """
        if self.booking_client is None:
            return False
        client = self.db.clients.get(client_id)
        if client is None or client.external_booking_id is None or client.visit_count is not None:
            return False

        key = f"{METRICS_LEASE_PREFIX}{client.external_booking_id}"
        token = self.db.cache.acquire(key, settings.metrics_lease_ttl_seconds)
        if token is None:
            return False
        try:
            try:
                metrics = self.booking_client.get_client_metrics(client.external_booking_id)
            except UpstreamUnavailable as e:
                logger.warning(f"Metrics backfill skipped for client {client_id}: {e}")
                return False
            fields = metrics.as_fields()
            if not fields:
                return False
            fields["id"] = client_id
            self.save(fields, reason="metrics-sync", touch_activity=False, skip_metrics_sync=True)
            logger.info(f"Backfilled metrics for client {client_id}: {sorted(fields)}")
            return True
        finally:
            self.db.cache.release(key, token)
