"""重复顾客合并。

合并分四步，每一步在独立的会话中执行并各自容错：某一步失败只记录
日志和失败步骤名，后续步骤照常执行，尽量消除造成重复的条件。
合并不持有锁；并发合并同一对记录时，第二次调用会因被合并方已删除
而直接返回 None。
"""
from dataclasses import dataclass, field
from typing import Optional, List, Tuple, Callable

from loguru import logger

from config.settings import settings
from database import DatabaseManager
from database.models import Client
from .states import ClientState, is_real_handle, is_placeholder_handle, placeholder_handle

AVATAR_KEY_PREFIX = "avatar:"

# 合并时"保留方为空则取被合并方"的字段
ABSORBED_FIELDS = (
    "given_name", "family_name", "phone", "visit_count", "total_spent",
    "state", "status_id", "first_contact_at",
    "consultation_booking_at", "consultation_date", "consultation_attended",
    "consultation_master_id", "consultation_master_name",
    "paid_service_at", "paid_service_attended", "paid_service_total_cost",
    "paid_service_is_repeat", "master_id",
)

# 取两者中较晚时间的字段
LATEST_FIELDS = ("last_message_at", "activity_at")

# 任一方为 True 即为 True 的字段
FLAG_FIELDS = (
    "consultation_cancelled", "paid_service_cancelled",
    "paid_service_deleted_upstream", "master_manually_set",
)


@dataclass
class MergeResult:
    """合并结果。

    Attributes:
        survivor_id: 保留的顾客ID。
        loser_id: 被合并（删除）的顾客ID。
        failed_steps: 失败的步骤名。
    """
    survivor_id: int
    loser_id: int
    failed_steps: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_steps


def avatar_key(handle: str) -> str:
    return f"{AVATAR_KEY_PREFIX}{handle}"


def choose_survivor(primary: Client, secondary: Client) -> Tuple[Client, Client]:
    """选择保留方：同时具有真实 handle 和外部ID的一方，否则为 primary。

    Returns:
        (survivor, loser)
    """
    def complete(client: Client) -> bool:
        return is_real_handle(client.handle) and client.external_booking_id is not None

    if complete(secondary) and not complete(primary):
        return secondary, primary
    return primary, secondary


class MergeEngine:
    """重复顾客合并引擎。"""

    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    def merge(self, primary_id: int, secondary_id: int) -> Optional[MergeResult]:
        """合并两条顾客记录。

        Args:
            primary_id: 主记录ID（身份解析中按外部ID命中的一方）。
            secondary_id: 次记录ID。

        Returns:
            MergeResult；任一方已不存在或两者相同时返回 None。
        """
        if primary_id == secondary_id:
            return None
        primary = self.db.clients.get(primary_id)
        secondary = self.db.clients.get(secondary_id)
        if primary is None or secondary is None:
            logger.info(f"Merge {primary_id} <- {secondary_id} skipped: record already gone")
            return None

        survivor, loser = choose_survivor(primary, secondary)
        loser_handle = loser.handle
        result = MergeResult(survivor_id=survivor.id, loser_id=loser.id)
        logger.info(
            f"Merging client {loser.id} ({loser_handle}) into {survivor.id} ({survivor.handle})"
        )

        steps: List[Tuple[str, Callable[[], None]]] = [
            ("absorb-identity", lambda: self._absorb_identity(survivor.id, loser.id)),
            ("reparent-history", lambda: self._reparent(survivor.id, loser.id)),
            ("copy-cache", lambda: self._copy_cache(survivor.id, loser_handle)),
            ("delete-loser", lambda: self._delete_loser(loser.id)),
        ]
        for name, step in steps:
            try:
                step()
            except Exception:
                logger.exception(f"Merge step '{name}' failed for {survivor.id} <- {loser.id}")
                result.failed_steps.append(name)

        if result.ok:
            logger.info(f"Merged client {loser.id} into {survivor.id}")
        else:
            logger.warning(
                f"Merge {survivor.id} <- {loser.id} finished with failed steps: {result.failed_steps}"
            )
        return result

    def _absorb_identity(self, survivor_id: int, loser_id: int) -> None:
        with self.db.get_session() as session:
            survivor = session.get(Client, survivor_id)
            loser = session.get(Client, loser_id)
            if survivor is None or loser is None:
                return

            take_handle = is_real_handle(loser.handle) and is_placeholder_handle(survivor.handle)
            new_handle = loser.handle if take_handle else None
            take_external = (
                survivor.external_booking_id is None
                and loser.external_booking_id is not None
            )
            new_external = loser.external_booking_id if take_external else None

            # 先释放被合并方的 handle 和外部ID，保证唯一约束
            loser.handle = placeholder_handle(f"merged-{loser.id}")
            if take_external:
                loser.external_booking_id = None
            session.flush()

            if new_handle:
                survivor.handle = new_handle
            if new_external is not None:
                survivor.external_booking_id = new_external
            for name in ABSORBED_FIELDS:
                if getattr(survivor, name) is None and getattr(loser, name) is not None:
                    setattr(survivor, name, getattr(loser, name))
            for name in LATEST_FIELDS:
                theirs = getattr(loser, name)
                ours = getattr(survivor, name)
                if theirs is not None and (ours is None or theirs > ours):
                    setattr(survivor, name, theirs)
            for name in FLAG_FIELDS:
                if getattr(loser, name):
                    setattr(survivor, name, True)
            if loser.created_at and survivor.created_at and loser.created_at < survivor.created_at:
                survivor.created_at = loser.created_at
            session.commit()

    def _reparent(self, survivor_id: int, loser_id: int) -> None:
        with self.db.get_session() as session:
            logs = self.db.state_logs.reparent(loser_id, survivor_id, session=session)
            messages = self.db.messages.reparent(loser_id, survivor_id, session=session)
            # client 只能进入一次
            dropped = self.db.state_logs.keep_earliest(
                survivor_id, ClientState.CLIENT.value, session=session
            )
            session.commit()
        logger.info(
            f"Reparented {logs} history rows and {messages} messages from {loser_id} to {survivor_id}"
            + (f", dropped {dropped} duplicate client rows" if dropped else "")
        )

    def _copy_cache(self, survivor_id: int, loser_handle: str) -> None:
        if not is_real_handle(loser_handle):
            return
        survivor = self.db.clients.get(survivor_id)
        if survivor is None or survivor.handle == loser_handle:
            return
        value = self.db.cache.get(avatar_key(loser_handle))
        if value is None or self.db.cache.get(avatar_key(survivor.handle)) is not None:
            return
        self.db.cache.set(
            avatar_key(survivor.handle), value,
            ttl_seconds=settings.avatar_cache_ttl_seconds,
        )

    def _delete_loser(self, loser_id: int) -> None:
        self.db.clients.delete(loser_id)
