"""漏斗生命周期状态与 handle 规范化。

状态是扁平的：顾客任意时刻处于其中一个状态（或为空）。
历史值 lead / consultation 只在读写边界通过 normalize_state 统一改写，
业务代码中不出现对历史值的判断。
"""
import re
from enum import Enum
from typing import Optional, Iterable

from config.funnel_config import funnel_config


class ClientState(str, Enum):
    MESSAGE = "message"                                    # 私信联系
    CLIENT = "client"                                      # 预约系统中的顾客
    CONSULTATION_BOOKED = "consultation-booked"            # 已约咨询
    CONSULTATION_NO_SHOW = "consultation-no-show"          # 咨询未到店
    CONSULTATION_RESCHEDULED = "consultation-rescheduled"  # 咨询改期
    HAIR_EXTENSION = "hair-extension"                      # 接发
    OTHER_SERVICES = "other-services"                      # 其他服务
    ALL_GOOD = "all-good"
    TOO_EXPENSIVE = "too-expensive"


LEGACY_STATES = {
    "lead": ClientState.MESSAGE,
    "consultation": ClientState.CONSULTATION_BOOKED,
}

CONSULTATION_STATES = {
    ClientState.CONSULTATION_BOOKED.value,
    ClientState.CONSULTATION_NO_SHOW.value,
    ClientState.CONSULTATION_RESCHEDULED.value,
}

MISSING_HANDLE_PREFIX = "missing-handle-"
NO_HANDLE_PREFIX = "no-handle-"


def normalize_state(value) -> Optional[str]:
    """把任意状态值规范为当前状态取值（字符串），空值返回 None。

    Raises:
        ValueError: 未知状态。
    """
    if value is None or value == "":
        return None
    if isinstance(value, ClientState):
        return value.value
    text = str(value).strip().lower()
    if text in LEGACY_STATES:
        return LEGACY_STATES[text].value
    return ClientState(text).value


def normalize_handle(raw: Optional[str]) -> Optional[str]:
    """规范化社交账号：去掉 @、链接前缀、查询参数，转为小写。

    Returns:
        规范化后的 handle；无法得到有效值时返回 None。
    """
    if not raw or not isinstance(raw, str):
        return None
    handle = raw.strip().lower()
    handle = re.sub(r'^@+', '', handle)
    handle = re.sub(r'^https?://', '', handle)
    handle = re.sub(r'^www\.', '', handle)
    handle = re.sub(r'^instagram\.com/', '', handle)
    handle = handle.split('/')[0].split('?')[0].split('#')[0].strip()
    if not handle or handle in funnel_config.get_declined_handle_values():
        return None
    return handle


def is_declined_handle(raw: Optional[str]) -> bool:
    """顾客是否明确表示没有账号（如填了 "no"、"немає"）。"""
    if not raw or not isinstance(raw, str):
        return False
    return raw.strip().lower() in funnel_config.get_declined_handle_values()


def is_placeholder_handle(handle: Optional[str]) -> bool:
    """handle 是否是占位值（真实账号未知）。空值同样视为未知。"""
    if not handle:
        return True
    return handle.startswith(MISSING_HANDLE_PREFIX) or handle.startswith(NO_HANDLE_PREFIX)


def is_real_handle(handle: Optional[str]) -> bool:
    return not is_placeholder_handle(handle)


def placeholder_handle(token, declined: bool = False) -> str:
    """生成占位 handle。

    Args:
        token: 编码进占位值的标识，通常是预约系统顾客ID。
        declined: 顾客明确表示没有账号时使用 no-handle- 前缀。
    """
    prefix = NO_HANDLE_PREFIX if declined else MISSING_HANDLE_PREFIX
    return f"{prefix}{token}"


def any_state_in(states: Iterable[Optional[str]], wanted: Iterable[str]) -> bool:
    wanted = set(wanted)
    return any(normalize_state(s) in wanted for s in states if s)
