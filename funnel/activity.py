"""活跃度追踪：决定一次写入是否移动顾客的"最近活跃"时间戳。

只比较本次写入中显式给出的字段；未给出的字段永远不产生标签。
员工分配和漏斗状态变化不在追踪范围内，重新分配员工或推进状态
不会让顾客在"最近活跃"排序中上浮。
"""
from typing import Mapping, Any, Set

TRACKED_FIELDS = (
    "last_message_at",
    "paid_service_at",
    "paid_service_attended",
    "paid_service_cancelled",
    "paid_service_total_cost",
    "consultation_booking_at",
    "consultation_attended",
    "consultation_cancelled",
)


def compute_activity_keys(previous: Mapping[str, Any],
                          incoming: Mapping[str, Any]) -> Set[str]:
    """计算本次写入的活跃标签集合。

    Args:
        previous: 写入前的记录（字段名 -> 值），新建记录传空字典。
        incoming: 本次写入的部分字段。

    Returns:
        值发生变化的被追踪字段名集合；为空表示不移动 activity_at。
    """
    keys = set()
    for field in TRACKED_FIELDS:
        if field not in incoming:
            continue
        if not _same(previous.get(field), incoming[field]):
            keys.add(field)
    return keys


def _same(old: Any, new: Any) -> bool:
    if old is None or new is None:
        return old is new
    try:
        return old == new
    except TypeError:
        return str(old) == str(new)
