"""预约系统客户端接口。

引擎只依赖这里定义的抽象接口；具体的 HTTP 实现（端点、鉴权、分页）
由部署方提供。接口失败时抛出 UpstreamUnavailable，调用方降级为空值，
不会阻塞保存。
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

from loguru import logger

from .errors import UpstreamUnavailable
from .state_machine import Attendance, classify_attendance, has_consultation


@dataclass
class ClientMetrics:
    """预约系统中的顾客指标。"""
    phone: Optional[str] = None
    visit_count: Optional[int] = None
    total_spent: Optional[float] = None

    def as_fields(self) -> Dict[str, Any]:
        """转换为顾客字段（只含非空值）。"""
        fields = {
            "phone": self.phone,
            "visit_count": self.visit_count,
            "total_spent": self.total_spent,
        }
        return {k: v for k, v in fields.items() if v is not None}


@dataclass
class BookingRecord:
    """预约系统中的一条预约记录。"""
    appointment_at: datetime
    services: List[Dict[str, Any]] = field(default_factory=list)
    attendance_code: Optional[int] = None


class BookingSystemClient(ABC):
    """预约系统只读接口"""

    @abstractmethod
    def get_client_metrics(self, external_id: int) -> ClientMetrics:
        """获取顾客指标（电话、到店次数、消费总额）

        Raises:
            UpstreamUnavailable: 接口不可用。
        """
        pass

    @abstractmethod
    def get_client_records(self, external_id: int) -> List[BookingRecord]:
        """获取顾客的全部预约记录

        Raises:
            UpstreamUnavailable: 接口不可用。
        """
        pass


def had_completed_paid_visit_before(client: BookingSystemClient, external_id: int,
                                    before: datetime) -> Optional[bool]:
    """顾客在给定时间之前是否有过已到店的付费（非咨询）预约。

    Returns:
        True / False；预约系统不可用时返回 None。
    """
    try:
        records = client.get_client_records(external_id)
    except UpstreamUnavailable as e:
        logger.warning(f"Booking system unavailable while checking visits of {external_id}: {e}")
        return None
    for record in records:
        if record.appointment_at is None or record.appointment_at >= before:
            continue
        if has_consultation(record.services) or not record.services:
            continue
        if classify_attendance(record.attendance_code) is Attendance.ATTENDED:
            return True
    return False
