"""funnel 模块：顾客身份解析与漏斗状态同步引擎。"""
from .errors import FunnelError, NotFound, ConstraintConflict, UpstreamUnavailable, ParseError
from .states import ClientState, normalize_state, normalize_handle
from .identity import IdentityResolver, Resolution
from .merge import MergeEngine, MergeResult
from .service import ClientService, StateChange
from .ingestor import EventIngestor, IngestResult
from .booking import BookingSystemClient, ClientMetrics, BookingRecord

__all__ = [
    "FunnelError", "NotFound", "ConstraintConflict", "UpstreamUnavailable", "ParseError",
    "ClientState", "normalize_state", "normalize_handle",
    "IdentityResolver", "Resolution",
    "MergeEngine", "MergeResult",
    "ClientService", "StateChange",
    "EventIngestor", "IngestResult",
    "BookingSystemClient", "ClientMetrics", "BookingRecord",
]
