"""
漏斗配置接口 - 支持可替换的漏斗词表

新门店可以实现自己的漏斗配置（服务关键词、到店代码、默认状态等），替换默认配置。
"""
from abc import ABC, abstractmethod
from typing import List, Dict, Any


class FunnelConfig(ABC):
    """漏斗配置抽象基类"""

    @abstractmethod
    def get_consultation_keywords(self) -> List[str]:
        """获取"咨询"类服务关键词（正则，忽略大小写）"""
        pass

    @abstractmethod
    def get_hair_extension_keywords(self) -> List[str]:
        """获取"接发"类服务关键词（正则，忽略大小写）"""
        pass

    @abstractmethod
    def get_attended_codes(self) -> List[int]:
        """获取表示"已到店"的到店代码"""
        pass

    @abstractmethod
    def get_no_show_codes(self) -> List[int]:
        """获取表示"未到店"的到店代码"""
        pass

    @abstractmethod
    def get_declined_handle_values(self) -> List[str]:
        """获取表示"顾客明确没有账号"的取值"""
        pass

    @abstractmethod
    def get_admin_roles(self) -> List[str]:
        """获取管理类员工角色（不参与咨询到店判定）"""
        pass

    @abstractmethod
    def get_default_statuses(self) -> List[Dict[str, Any]]:
        """获取默认工作队列状态列表"""
        pass


class SalonFunnelConfig(FunnelConfig):
    """接发美容沙龙漏斗配置"""

    def get_consultation_keywords(self) -> List[str]:
        return [r'консультац', r'consultation']

    def get_hair_extension_keywords(self) -> List[str]:
        return [r'нарощування.*волосся', r'hair\s*extension']

    def get_attended_codes(self) -> List[int]:
        # 1 = 到店, 2 = 顾客已确认并到店
        return [1, 2]

    def get_no_show_codes(self) -> List[int]:
        return [-1]

    def get_declined_handle_values(self) -> List[str]:
        return ['no', 'none', 'null', 'undefined', 'n/a', '-', 'немає', 'нема', 'ні']

    def get_admin_roles(self) -> List[str]:
        return ['admin', 'direct-manager']

    def get_default_statuses(self) -> List[Dict[str, Any]]:
        return [
            {"id": "new", "name": "Новий", "color": "#3b82f6", "order": 1, "is_default": True},
            {"id": "consultation", "name": "Консультація", "color": "#fbbf24", "order": 2},
            {"id": "visited", "name": "Прийшов в салон", "color": "#10b981", "order": 3},
            {"id": "paid-service", "name": "Записався на послугу", "color": "#059669", "order": 4},
            {"id": "cancelled", "name": "Відмінив", "color": "#ef4444", "order": 5},
            {"id": "rescheduled", "name": "Перенесено", "color": "#f97316", "order": 6},
            {"id": "no-response", "name": "Не відповідає", "color": "#6b7280", "order": 7},
        ]


# 全局漏斗配置实例（可以在 app.py 中替换）
funnel_config: FunnelConfig = SalonFunnelConfig()
