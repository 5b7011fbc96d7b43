"""入站事件的统一结构。

原始日志中的条目形态各异，解析后统一为 InboundEvent；它只在一次
回放中存在，不会被持久化。
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

KIND_IDENTITY = "identity"
KIND_BOOKING = "booking"
KIND_BOOKING_DELETED = "booking-deleted"

SOURCE_BOOKING_SYSTEM = "booking-system"
SOURCE_MESSAGING = "messaging"
SOURCE_MANUAL = "manual"


@dataclass
class IdentityKeys:
    """一个事件携带的身份标识（任意组合，可能都为空）。"""
    external_booking_id: Optional[int] = None
    handle: Optional[str] = None
    handle_declined: bool = False
    given_name: Optional[str] = None
    family_name: Optional[str] = None

    def has_any(self) -> bool:
        return bool(self.external_booking_id is not None or self.handle or self.given_name)


@dataclass
class InboundEvent:
    """规范化后的入站事件。

    Attributes:
        received_at: 事件接收时间。
        kind: identity（身份信息）/ booking（预约记录）/ booking-deleted（预约被删除）。
        source: booking-system / messaging / manual。
        identity: 身份标识。
        services: 服务列表，每项至少含 title，可含 cost。
        attendance_code: 到店代码（1/2 到店，0/空 待定，-1 未到）。
        appointment_at: 预约时间（预约系统中的 datetime）。
        staff_name / staff_id: 预约系统中的员工。
        status: 预约系统事件状态（create / update / delete）。
        message_text: 私信内容（消息平台事件）。
    """
    received_at: datetime
    kind: str = KIND_IDENTITY
    source: str = SOURCE_BOOKING_SYSTEM
    identity: IdentityKeys = field(default_factory=IdentityKeys)
    services: List[Dict[str, Any]] = field(default_factory=list)
    attendance_code: Optional[int] = None
    appointment_at: Optional[datetime] = None
    staff_name: Optional[str] = None
    staff_id: Optional[int] = None
    status: Optional[str] = None
    message_text: Optional[str] = None

    @property
    def effective_at(self) -> datetime:
        """用于窗口过滤的日期：预约事件取预约时间，否则取接收时间。"""
        if self.kind == KIND_BOOKING and self.appointment_at is not None:
            return self.appointment_at
        return self.received_at
