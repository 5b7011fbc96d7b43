"""database 模块：Direct 漏斗的持久化层。"""
from .manager import DatabaseManager

__all__ = ["DatabaseManager"]
