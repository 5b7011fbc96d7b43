"""通用 CRUD 基类。

所有仓库继承 BaseCRUD，获得会话管理和按主键的通用增删改查能力。
每个方法都接受可选的外部会话：传入时在该会话内执行且不提交，
由调用方决定事务边界；不传时自动创建会话并提交。
"""
from typing import Optional, Any, Callable, Type, TypeVar
from sqlalchemy.orm import Session

from .connection import DatabaseConnection

T = TypeVar("T")


class BaseCRUD:
    """通用 CRUD 基类。

    Attributes:
        conn: 数据库连接管理器。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def _get_session(self) -> Session:
        """创建新的数据库会话。"""
        return self.conn.get_session()

    def _run(self, fn: Callable[[Session], T],
             session: Optional[Session] = None,
             commit: bool = False) -> T:
        """在外部会话或新会话中执行操作。

        Args:
            fn: 接收会话的操作函数。
            session: 外部会话（可选）。传入时不提交。
            commit: 使用新会话时是否在执行后提交。

        Returns:
            fn 的返回值。
        """
        if session is not None:
            return fn(session)

        with self._get_session() as sess:
            result = fn(sess)
            if commit:
                sess.commit()
            return result

    def get_by_id(self, model: Type[T], obj_id: Any,
                  session: Optional[Session] = None) -> Optional[T]:
        """按主键获取对象。

        Args:
            model: ORM 模型类。
            obj_id: 主键值。

        Returns:
            ORM 对象，不存在则返回 None。
        """
        return self._run(lambda sess: sess.get(model, obj_id), session)

    def delete_by_id(self, model: Type[T], obj_id: Any,
                     session: Optional[Session] = None) -> bool:
        """按主键删除对象。

        Returns:
            是否删除了对象。
        """
        def _do(sess):
            obj = sess.get(model, obj_id)
            if obj is None:
                return False
            sess.delete(obj)
            sess.flush()
            return True

        return self._run(_do, session, commit=True)
