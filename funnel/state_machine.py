"""漏斗状态机 —— 纯决策逻辑。

给定顾客当前记录（字段字典）、状态历史和一个预约事件，计算下一状态
和需要更新的字段。本模块不做任何 I/O：是否写入、写入几行历史都由
调用方（ClientService.save）决定。

决策结果只包含真正发生变化的字段，因此同一事件重复回放时得到空结果，
不会产生重复的历史记录。
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Mapping, Sequence

from config.funnel_config import funnel_config
from .events import InboundEvent
from .states import ClientState, CONSULTATION_STATES, normalize_state


class Attendance(Enum):
    ATTENDED = "attended"
    PENDING = "pending"
    NO_SHOW = "no-show"


@dataclass
class StaffInfo:
    """预约事件中的员工，已在员工表中查找过。"""
    name: Optional[str] = None
    is_admin: bool = False
    master_id: Optional[int] = None


@dataclass
class Transition:
    """一次决策的结果。

    Attributes:
        changes: 需要写入的字段（只含与当前值不同的字段）。
        reason: 写入原因标签（状态变化时写入历史）。
    """
    changes: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def new_state(self) -> Optional[str]:
        return self.changes.get("state")

    def is_empty(self) -> bool:
        return not self.changes


def classify_attendance(code) -> Attendance:
    """把预约系统的到店代码归类为 到店 / 待定 / 未到。"""
    if code is None or code == "":
        return Attendance.PENDING
    try:
        code = int(code)
    except (TypeError, ValueError):
        return Attendance.PENDING
    if code in funnel_config.get_attended_codes():
        return Attendance.ATTENDED
    if code in funnel_config.get_no_show_codes():
        return Attendance.NO_SHOW
    return Attendance.PENDING


def _titles(services: Sequence[Mapping[str, Any]]) -> List[str]:
    titles = []
    for service in services or []:
        if isinstance(service, Mapping):
            title = service.get("title") or service.get("name")
        else:
            title = service
        if title:
            titles.append(str(title))
    return titles


def _matches(title: str, patterns: Sequence[str]) -> bool:
    return any(re.search(p, title, re.IGNORECASE) for p in patterns)


def has_consultation(services: Sequence[Mapping[str, Any]]) -> bool:
    patterns = funnel_config.get_consultation_keywords()
    return any(_matches(t, patterns) for t in _titles(services))


def has_hair_extension(services: Sequence[Mapping[str, Any]]) -> bool:
    patterns = funnel_config.get_hair_extension_keywords()
    return any(_matches(t, patterns) for t in _titles(services))


def determine_state(services: Sequence[Mapping[str, Any]]) -> Optional[str]:
    """根据服务列表决定付费服务状态。

    含咨询的服务列表走咨询子流程，这里返回 None；含接发的返回
    hair-extension（即使同时有其他服务）；其余非空列表返回 other-services；
    空列表返回 None（不改变状态）。
    """
    titles = _titles(services)
    if not titles:
        return None
    if has_consultation(services):
        return None
    if has_hair_extension(services):
        return ClientState.HAIR_EXTENSION.value
    return ClientState.OTHER_SERVICES.value


def guard_client_state(requested: Optional[str], current: Optional[str],
                       history_states: Sequence[Optional[str]]) -> Optional[str]:
    """client 只能进入一次。

    历史中已出现过 client 时，再次请求 client 会保持当前状态不变。

    Returns:
        实际应写入的状态。
    """
    requested = normalize_state(requested)
    if requested != ClientState.CLIENT.value:
        return requested
    if ClientState.CLIENT.value in {normalize_state(s) for s in history_states if s}:
        return normalize_state(current)
    return requested


def _services_cost(services: Sequence[Mapping[str, Any]]) -> Optional[float]:
    total = None
    for service in services or []:
        if not isinstance(service, Mapping):
            continue
        cost = service.get("cost")
        if cost is None:
            continue
        try:
            total = (total or 0.0) + float(cost)
        except (TypeError, ValueError):
            continue
    return total


class _Builder:
    """在当前记录之上累积变化，只记录与当前值不同的字段。"""

    def __init__(self, record: Mapping[str, Any]) -> None:
        self.record = record
        self.transition = Transition()

    def get(self, key: str) -> Any:
        if key in self.transition.changes:
            return self.transition.changes[key]
        return self.record.get(key)

    def put(self, key: str, value: Any) -> None:
        current = self.record.get(key)
        if current == value and (current is None) == (value is None):
            self.transition.changes.pop(key, None)
            return
        self.transition.changes[key] = value

    def because(self, reason: str) -> None:
        """记录写入原因；已有原因时保留先记录的。"""
        if self.transition.reason is None:
            self.transition.reason = reason

    def move_to(self, state: str, reason: str) -> None:
        """改变状态。状态确实变化时，原因改为状态变化的原因（历史记录的是它）。"""
        self.put("state", state)
        if "state" in self.transition.changes:
            self.transition.reason = reason


def decide_booking(record: Mapping[str, Any], event: InboundEvent,
                   history_states: Sequence[Optional[str]],
                   staff: Optional[StaffInfo], now: datetime) -> Transition:
    """根据预约事件决定顾客的状态和漏斗字段变化。

    Args:
        record: 顾客当前记录（字段字典）。
        event: 预约事件。
        history_states: 顾客历史中出现过的全部状态。
        staff: 事件中的员工（可能为空）。
        now: 当前时间，用于判断预约是否在将来。

    Returns:
        Transition；没有任何变化时 changes 为空。
    """
    if not event.services:
        return Transition()
    if has_consultation(event.services):
        if event.appointment_at is None:
            return Transition()
        return decide_consultation(record, event, history_states, staff, now)
    return decide_paid_service(record, event, staff, now)


def decide_consultation(record: Mapping[str, Any], event: InboundEvent,
                        history_states: Sequence[Optional[str]],
                        staff: Optional[StaffInfo], now: datetime) -> Transition:
    """咨询子流程。"""
    b = _Builder(record)
    when = event.appointment_at
    attendance = classify_attendance(event.attendance_code)
    state = normalize_state(record.get("state"))
    had_consultation = any(
        normalize_state(s) in CONSULTATION_STATES for s in history_states if s
    )
    stamped = record.get("consultation_booking_at")

    if attendance is Attendance.PENDING:
        if not had_consultation:
            # 新的咨询预约取代之前记录的付费服务预期
            b.move_to(ClientState.CONSULTATION_BOOKED.value, "consultation-booked")
            b.put("consultation_booking_at", when)
            b.put("paid_service_at", None)
            b.put("paid_service_attended", None)
            b.put("paid_service_cancelled", False)
            b.put("paid_service_total_cost", None)
            b.put("paid_service_is_repeat", None)
            b.because("consultation-booked")
        elif state == ClientState.CONSULTATION_NO_SHOW.value and stamped != when:
            b.move_to(ClientState.CONSULTATION_RESCHEDULED.value, "consultation-rescheduled")
            b.put("consultation_booking_at", when)
            b.put("consultation_attended", None)
            b.put("consultation_cancelled", False)
            b.because("consultation-rescheduled")
        elif state in (ClientState.CONSULTATION_BOOKED.value,
                       ClientState.CONSULTATION_RESCHEDULED.value) and stamped != when:
            b.put("consultation_booking_at", when)
            b.because("consultation-date-changed")
        elif stamped is None:
            b.put("consultation_booking_at", when)
            b.because("consultation-date-backfill")

    elif attendance is Attendance.ATTENDED:
        can_attend = (
            staff is not None and staff.name
            and not staff.is_admin
            and when <= now
            and record.get("consultation_attended") is not True
        )
        if can_attend:
            b.put("consultation_attended", True)
            b.put("consultation_cancelled", False)
            b.put("consultation_date", when)
            b.put("consultation_master_name", staff.name)
            if staff.master_id is not None:
                b.put("consultation_master_id", staff.master_id)
                if not record.get("master_manually_set"):
                    b.put("master_id", staff.master_id)
            b.because("consultation-attended")

    elif attendance is Attendance.NO_SHOW:
        if when > now:
            b.put("consultation_cancelled", True)
            b.because("consultation-cancelled")
        elif record.get("consultation_attended") is not True:
            b.put("consultation_attended", False)
            if state in (ClientState.CONSULTATION_BOOKED.value,
                         ClientState.CONSULTATION_RESCHEDULED.value):
                b.move_to(ClientState.CONSULTATION_NO_SHOW.value, "consultation-no-show")
            b.because("consultation-no-show")

    return b.transition


def decide_paid_service(record: Mapping[str, Any], event: InboundEvent,
                        staff: Optional[StaffInfo], now: datetime) -> Transition:
    """付费服务子流程（服务列表中没有咨询）。

    付费预约日期、费用和到店结果只跟踪接发服务；其他服务只影响
    状态和员工分配。
    """
    b = _Builder(record)
    when = event.appointment_at

    if (when is not None and has_hair_extension(event.services)
            and not record.get("paid_service_deleted_upstream")):
        stored = record.get("paid_service_at")
        if when > now:
            if stored != when:
                b.put("paid_service_at", when)
        elif stored is None or when > stored:
            b.put("paid_service_at", when)

        if "paid_service_at" in b.transition.changes:
            # 新的付费预约，之前预约的到店结果不再适用
            b.put("paid_service_attended", None)
            b.put("paid_service_cancelled", False)
            b.because("paid-service-booked")

        if b.get("paid_service_at") == when:
            cost = _services_cost(event.services)
            if cost is not None and _differs(record.get("paid_service_total_cost"), cost):
                b.put("paid_service_total_cost", cost)
            attendance = classify_attendance(event.attendance_code)
            if attendance is Attendance.ATTENDED and when <= now:
                b.put("paid_service_attended", True)
                b.because("paid-service-attended")
            elif attendance is Attendance.NO_SHOW:
                if when > now:
                    b.put("paid_service_cancelled", True)
                    b.because("paid-service-cancelled")
                else:
                    b.put("paid_service_attended", False)
                    b.because("paid-service-no-show")

    if (staff is not None and not staff.is_admin and staff.master_id is not None
            and not record.get("master_manually_set")):
        b.put("master_id", staff.master_id)

    new_state = determine_state(event.services)
    if new_state and new_state != normalize_state(record.get("state")):
        b.move_to(new_state, "paid-service-state")

    return b.transition


def decide_booking_deleted(record: Mapping[str, Any], event: InboundEvent) -> Transition:
    """预约在预约系统中被删除。

    被删除的预约正是当前记录的付费预约时，清除付费预约字段并标记
    paid_service_deleted_upstream，之后的预约事件不再写入付费日期，
    直到管理员重置该标记。其他预约的删除不产生变化。
    """
    b = _Builder(record)
    when = event.appointment_at
    if when is None or record.get("paid_service_at") != when:
        return b.transition
    b.put("paid_service_deleted_upstream", True)
    b.put("paid_service_at", None)
    b.put("paid_service_attended", None)
    b.put("paid_service_cancelled", False)
    b.put("paid_service_total_cost", None)
    b.because("paid-service-deleted-upstream")
    return b.transition


def _differs(old: Any, new: Any) -> bool:
    if old is None:
        return True
    try:
        return float(old) != float(new)
    except (TypeError, ValueError):
        return True
