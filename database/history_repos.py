"""历史仓库 —— 按顾客追加的日志数据访问层。

管理状态历史和私信记录。这两类数据都只追加、不修改，
唯一的写操作例外是合并时把被合并方的记录迁移到保留方。
"""
from typing import Optional, List, Dict, Any, Iterable
from datetime import datetime
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import ClientStateLog, ClientMessage, utcnow


class StateLogRepository(BaseCRUD):
    """状态历史 仓库。

    可按顾客查询历史，也可查询"某状态是否出现过"。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def append(self, client_id: int, state: Optional[str],
               previous_state: Optional[str],
               reason: Optional[str] = None,
               metadata: Optional[Dict[str, Any]] = None,
               session: Optional[Session] = None) -> Optional[ClientStateLog]:
        """追加一条状态变化记录。

        state 与 previous_state 相同时不写入。

        Args:
            client_id: 顾客ID。
            state: 新状态。
            previous_state: 旧状态。
            reason: 变化原因（短标签），默认 "unknown"。
            metadata: 附加元数据（可选）。

        Returns:
            新写入的 ClientStateLog，未写入时返回 None。
        """
        if state == previous_state:
            return None

        def _do(sess):
            entry = ClientStateLog(
                client_id=client_id,
                state=state,
                previous_state=previous_state,
                reason=reason or "unknown",
                extra_data=metadata,
                created_at=utcnow(),
            )
            sess.add(entry)
            sess.flush()
            return entry

        entry = self._run(_do, session, commit=True)
        logger.info(
            f"Logged state change for client {client_id}: "
            f"{previous_state or 'null'} -> {state or 'null'} (reason: {reason or 'unknown'})"
        )
        return entry

    def get_history(self, client_id: int,
                    session: Optional[Session] = None) -> List[ClientStateLog]:
        """获取顾客的状态历史（最新的在前）。"""
        def _query(sess):
            return sess.query(ClientStateLog).filter(
                ClientStateLog.client_id == client_id
            ).order_by(
                ClientStateLog.created_at.desc(), ClientStateLog.id.desc()
            ).all()

        return self._run(_query, session)

    def has_ever(self, client_id: int, states: Iterable[str],
                 session: Optional[Session] = None) -> bool:
        """顾客历史中是否出现过给定状态之一。"""
        wanted = list(states)

        def _query(sess):
            return sess.query(ClientStateLog.id).filter(
                ClientStateLog.client_id == client_id,
                ClientStateLog.state.in_(wanted)
            ).first() is not None

        return self._run(_query, session)

    def count(self, client_id: int, state: Optional[str] = None,
              session: Optional[Session] = None) -> int:
        """统计顾客的历史条数（可按状态过滤）。"""
        def _query(sess):
            query = sess.query(ClientStateLog).filter(
                ClientStateLog.client_id == client_id
            )
            if state is not None:
                query = query.filter(ClientStateLog.state == state)
            return query.count()

        return self._run(_query, session)

    def reparent(self, from_client_id: int, to_client_id: int,
                 session: Optional[Session] = None) -> int:
        """把一个顾客的全部历史迁移到另一个顾客。

        Returns:
            迁移的行数。
        """
        def _do(sess):
            return sess.query(ClientStateLog).filter(
                ClientStateLog.client_id == from_client_id
            ).update(
                {ClientStateLog.client_id: to_client_id},
                synchronize_session=False
            )

        return self._run(_do, session, commit=True)

    def keep_earliest(self, client_id: int, state: str,
                      session: Optional[Session] = None) -> int:
        """只保留顾客某个状态最早的一条历史，删除其余的。

        合并后两个顾客的历史都挂在保留方上，只能进入一次的状态
        （client）可能因此出现两次。

        Returns:
            删除的行数。
        """
        def _do(sess):
            rows = sess.query(ClientStateLog).filter(
                ClientStateLog.client_id == client_id,
                ClientStateLog.state == state
            ).order_by(ClientStateLog.created_at.asc(), ClientStateLog.id.asc()).all()
            for row in rows[1:]:
                sess.delete(row)
            return max(len(rows) - 1, 0)

        return self._run(_do, session, commit=True)


class MessageRepository(BaseCRUD):
    """私信记录 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def add(self, client_id: int, text: Optional[str],
            received_at: datetime, direction: str = "incoming",
            session: Optional[Session] = None) -> ClientMessage:
        """追加一条私信。

        同一顾客、同一时间、同一内容的消息视为重复，直接返回已有记录，
        保证回放同一窗口时不会重复写入。

        Args:
            client_id: 顾客ID。
            text: 消息内容。
            received_at: 消息时间。
            direction: incoming / outgoing。

        Returns:
            ClientMessage 对象（新建或已存在的）。
        """
        def _do(sess):
            existing = sess.query(ClientMessage).filter(
                ClientMessage.client_id == client_id,
                ClientMessage.received_at == received_at,
                ClientMessage.direction == direction,
                ClientMessage.text == text
            ).first()
            if existing:
                return existing
            message = ClientMessage(
                client_id=client_id, text=text,
                received_at=received_at, direction=direction
            )
            sess.add(message)
            sess.flush()
            return message

        return self._run(_do, session, commit=True)

    def list_for_client(self, client_id: int,
                        session: Optional[Session] = None
                        ) -> List[ClientMessage]:
        """获取顾客的私信（按时间升序）。"""
        def _query(sess):
            return sess.query(ClientMessage).filter(
                ClientMessage.client_id == client_id
            ).order_by(ClientMessage.received_at.asc()).all()

        return self._run(_query, session)

    def reparent(self, from_client_id: int, to_client_id: int,
                 session: Optional[Session] = None) -> int:
        """把一个顾客的全部私信迁移到另一个顾客。"""
        def _do(sess):
            return sess.query(ClientMessage).filter(
                ClientMessage.client_id == from_client_id
            ).update(
                {ClientMessage.client_id: to_client_id},
                synchronize_session=False
            )

        return self._run(_do, session, commit=True)
