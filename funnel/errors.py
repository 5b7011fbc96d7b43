"""漏斗引擎异常定义。

NotFound 与 ParseError 在事件回放中属于非致命错误；
ConstraintConflict 在 save 内部被恢复（转入合并流程），不会抛给调用方；
UpstreamUnavailable 由预约系统客户端抛出，调用方降级为空指标。
"""


class FunnelError(Exception):
    """漏斗引擎异常基类"""


class NotFound(FunnelError):
    """找不到顾客记录"""


class ConstraintConflict(FunnelError):
    """handle 唯一约束冲突（与并发创建竞争）"""

    def __init__(self, handle: str, holder_id=None):
        super().__init__(f"Handle '{handle}' is already taken by client {holder_id}")
        self.handle = handle
        self.holder_id = holder_id


class UpstreamUnavailable(FunnelError):
    """预约系统接口不可用"""


class ParseError(FunnelError):
    """原始事件格式错误"""
