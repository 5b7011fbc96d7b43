"""实体仓库 —— 顾客、工作队列状态、员工的数据访问层。

每个仓库继承 BaseCRUD 获得通用能力，并添加领域特定的查询方法。
这里只做数据访问，不做身份解析或状态机判断。
"""
from typing import Optional, List, Dict, Any
from sqlalchemy import func
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import Client, ClientStatus, Master, utcnow


class ClientRepository(BaseCRUD):
    """顾客 仓库。

    handle 在数据库层有唯一约束；external_booking_id 只建索引，
    重复由合并流程修复。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get(self, client_id: int,
            session: Optional[Session] = None) -> Optional[Client]:
        """按ID获取顾客。"""
        return self.get_by_id(Client, client_id, session=session)

    def get_by_handle(self, handle: str,
                      session: Optional[Session] = None) -> Optional[Client]:
        """按 handle 精确查找顾客（handle 会被转为小写）。

        Args:
            handle: 社交账号。

        Returns:
            Client 对象，不存在则返回 None。
        """
        normalized = (handle or "").strip().lower()
        if not normalized:
            return None

        def _query(sess):
            return sess.query(Client).filter(
                Client.handle == normalized
            ).first()

        return self._run(_query, session)

    def list_by_external_id(self, external_id: int,
                            session: Optional[Session] = None
                            ) -> List[Client]:
        """按预约系统顾客ID查找所有顾客（按ID升序，最早创建的在前）。

        Args:
            external_id: 预约系统顾客ID。

        Returns:
            Client 列表，正常情况下最多一条。
        """
        def _query(sess):
            return sess.query(Client).filter(
                Client.external_booking_id == external_id
            ).order_by(Client.id.asc()).all()

        return self._run(_query, session)

    def find_by_name(self, given_name: str, family_name: Optional[str],
                     session: Optional[Session] = None) -> List[Client]:
        """按 (名, 姓) 忽略大小写精确匹配顾客。

        Args:
            given_name: 名。
            family_name: 姓，为空时只匹配姓同样为空的记录。

        Returns:
            匹配的 Client 列表。
        """
        def _query(sess):
            query = sess.query(Client).filter(
                func.lower(Client.given_name) == given_name.strip().lower()
            )
            if family_name:
                query = query.filter(
                    func.lower(Client.family_name) == family_name.strip().lower()
                )
            else:
                query = query.filter(
                    (Client.family_name.is_(None)) | (Client.family_name == "")
                )
            return query.order_by(Client.id.asc()).all()

        return self._run(_query, session)

    def create(self, fields: Dict[str, Any],
               session: Optional[Session] = None) -> Client:
        """创建顾客。

        Args:
            fields: 字段字典，至少包含 handle。

        Returns:
            新创建的 Client 对象。

        Raises:
            sqlalchemy.exc.IntegrityError: handle 与已有记录冲突。
        """
        def _do(sess):
            now = utcnow()
            client = Client(created_at=now, updated_at=now)
            for key, value in fields.items():
                setattr(client, key, value)
            sess.add(client)
            sess.flush()
            return client

        return self._run(_do, session, commit=True)

    def delete(self, client_id: int,
               session: Optional[Session] = None) -> bool:
        """删除顾客（仅用于合并时删除被合并方）。"""
        deleted = self.delete_by_id(Client, client_id, session=session)
        if deleted:
            logger.info(f"Deleted client {client_id}")
        return deleted

    def list_recently_active(self, limit: int = 50,
                             session: Optional[Session] = None
                             ) -> List[Client]:
        """按 activity_at 倒序获取"最近活跃"顾客。"""
        def _query(sess):
            return sess.query(Client).filter(
                Client.activity_at.isnot(None)
            ).order_by(Client.activity_at.desc()).limit(limit).all()

        return self._run(_query, session)

    def count(self, session: Optional[Session] = None) -> int:
        """顾客总数。"""
        return self._run(lambda sess: sess.query(Client).count(), session)


class StatusRepository(BaseCRUD):
    """工作队列状态 仓库。

    保证任意时刻有且只有一个默认状态。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_all_ordered(self, session: Optional[Session] = None
                        ) -> List[ClientStatus]:
        """按 order 升序获取所有状态。"""
        def _query(sess):
            return sess.query(ClientStatus).order_by(
                ClientStatus.order.asc()
            ).all()

        return self._run(_query, session)

    def get_default(self, session: Optional[Session] = None
                    ) -> Optional[ClientStatus]:
        """获取默认状态。"""
        def _query(sess):
            return sess.query(ClientStatus).filter(
                ClientStatus.is_default.is_(True)
            ).first()

        return self._run(_query, session)

    def save(self, status_data: Dict[str, Any]) -> ClientStatus:
        """保存或更新状态（幂等）。

        is_default=True 时在同一事务内清除其他状态的默认标记；
        当系统中还没有默认状态时，第一个保存的状态自动成为默认。

        Args:
            status_data: 状态字典，支持以下键：
                - id: 状态标识（必填）
                - name: 显示名称（必填）
                - color: 颜色（可选）
                - order: 排序（可选）
                - is_default: 是否默认（可选）

        Returns:
            ClientStatus 对象。
        """
        with self._get_session() as session:
            status = session.get(ClientStatus, status_data["id"])
            if status is None:
                status = ClientStatus(id=status_data["id"], created_at=utcnow())
                session.add(status)

            for key in ("name", "color", "order"):
                if key in status_data:
                    setattr(status, key, status_data[key])

            has_default = session.query(ClientStatus).filter(
                ClientStatus.is_default.is_(True),
                ClientStatus.id != status.id
            ).first() is not None

            if status_data.get("is_default") or not has_default:
                self._make_default(session, status)
            elif status.is_default is None:
                status.is_default = False

            session.commit()
            return status

    def set_default(self, status_id: str) -> ClientStatus:
        """把指定状态设为默认。

        Raises:
            ValueError: 状态不存在。
        """
        with self._get_session() as session:
            status = session.get(ClientStatus, status_id)
            if status is None:
                raise ValueError(f"Status {status_id} not found")
            self._make_default(session, status)
            session.commit()
            return status

    def delete(self, status_id: str) -> bool:
        """删除状态。

        Raises:
            ValueError: 试图删除默认状态。
        """
        with self._get_session() as session:
            status = session.get(ClientStatus, status_id)
            if status is None:
                return False
            if status.is_default:
                raise ValueError(
                    f"Status {status_id} is the default status and cannot be deleted"
                )
            session.query(Client).filter(
                Client.status_id == status_id
            ).update({Client.status_id: None})
            session.delete(status)
            session.commit()
            return True

    @staticmethod
    def _make_default(session: Session, status: ClientStatus) -> None:
        session.query(ClientStatus).filter(
            ClientStatus.id != status.id,
            ClientStatus.is_default.is_(True)
        ).update({ClientStatus.is_default: False})
        status.is_default = True


class MasterRepository(BaseCRUD):
    """员工（master） 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_or_create(self, name: str, role: str = "master",
                      external_staff_id: Optional[int] = None,
                      session: Optional[Session] = None) -> Master:
        """获取或创建员工（按姓名匹配）。

        Args:
            name: 员工姓名。
            role: 新建时的角色。
            external_staff_id: 预约系统 staff id（可选）。

        Returns:
            Master 对象。
        """
        def _do(sess):
            master = sess.query(Master).filter(Master.name == name).first()
            if not master:
                master = Master(
                    name=name, role=role,
                    external_staff_id=external_staff_id,
                    created_at=utcnow()
                )
                sess.add(master)
                sess.flush()
            return master

        return self._run(_do, session, commit=True)

    def find(self, name: Optional[str] = None,
             external_staff_id: Optional[int] = None,
             session: Optional[Session] = None) -> Optional[Master]:
        """按预约系统 staff id 或姓名查找在职员工（staff id 优先）。"""
        def _query(sess):
            if external_staff_id is not None:
                master = sess.query(Master).filter(
                    Master.external_staff_id == external_staff_id,
                    Master.is_active.is_(True)
                ).first()
                if master:
                    return master
            if name:
                return sess.query(Master).filter(
                    func.lower(Master.name) == name.strip().lower(),
                    Master.is_active.is_(True)
                ).first()
            return None

        return self._run(_query, session)
