"""身份解析：把入站事件的身份标识映射到已有顾客。

解析是只读的，不创建也不修改记录；创建新记录和合并重复记录
都由调用方根据 Resolution 决定。
"""
from dataclasses import dataclass, field
from typing import Optional, List, Tuple

from sqlalchemy.orm import Session
from loguru import logger

from database import DatabaseManager
from .events import IdentityKeys
from .states import is_real_handle, normalize_handle

STRATEGY_EXTERNAL_ID = "external-id"
STRATEGY_HANDLE = "handle"
STRATEGY_NAME = "name"


@dataclass
class Resolution:
    """身份解析结果。

    Attributes:
        client_id: 解析到的顾客ID；没有任何匹配时为 None（调用方应新建）。
        strategy: 命中的策略（external-id / handle / name），未命中为 None。
        duplicates: 需要合并的 (primary_id, secondary_id) 列表。
    """
    client_id: Optional[int] = None
    strategy: Optional[str] = None
    duplicates: List[Tuple[int, int]] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.client_id is not None

    @property
    def is_duplicate(self) -> bool:
        return bool(self.duplicates)


class IdentityResolver:
    """身份解析器。

    三种策略全部计算：
    1. 预约系统顾客ID精确匹配；
    2. 规范化后的真实 handle 精确匹配；
    3. (名, 姓) 忽略大小写匹配，仅当 1 和 2 都未命中时使用，且只接受唯一匹配。

    1 与 2 命中不同记录时判定为重复：primary 为策略 1 的记录，
    secondary 为策略 2 的记录。
    """

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    def resolve(self, keys: IdentityKeys,
                session: Optional[Session] = None) -> Resolution:
        """解析身份标识。

        Args:
            keys: 事件携带的身份标识。
            session: 外部会话（可选）。

        Returns:
            Resolution。
        """
        result = Resolution()

        by_external = None
        if keys.external_booking_id is not None:
            matches = self.db.clients.list_by_external_id(keys.external_booking_id, session=session)
            if matches:
                by_external = matches[0]
                # 同一外部ID下的多条记录都并入最早的一条
                for extra in matches[1:]:
                    result.duplicates.append((by_external.id, extra.id))

        by_handle = None
        handle = normalize_handle(keys.handle)
        if handle and is_real_handle(handle):
            by_handle = self.db.clients.get_by_handle(handle, session=session)

        if by_external is not None:
            result.client_id = by_external.id
            result.strategy = STRATEGY_EXTERNAL_ID
            if by_handle is not None and by_handle.id != by_external.id:
                result.duplicates.append((by_external.id, by_handle.id))
        elif by_handle is not None:
            result.client_id = by_handle.id
            result.strategy = STRATEGY_HANDLE
        elif keys.given_name:
            matches = self.db.clients.find_by_name(keys.given_name, keys.family_name, session=session)
            if len(matches) == 1:
                result.client_id = matches[0].id
                result.strategy = STRATEGY_NAME
            elif len(matches) > 1:
                logger.warning(
                    f"Ambiguous name match for '{keys.given_name} {keys.family_name or ''}'"
                    f" ({len(matches)} clients), treating as new"
                )

        if result.duplicates:
            logger.info(f"Duplicate clients detected: {result.duplicates}")
        return result
