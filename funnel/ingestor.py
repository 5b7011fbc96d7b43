"""事件回放：从两个原始日志重放一个时间窗口内的事件。

流程：读取日志 -> 解析为 InboundEvent -> 窗口过滤 -> 按接收时间排序 ->
逐个事件执行 身份解析 -> （重复则先合并）-> 新建/更新 -> 状态机 -> 保存。

每个事件在一个会话中处理并一次提交；事件之间互不影响，任何异常
只记录到结果中，不会中断整批回放。重放同一窗口是幂等的。
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session
from loguru import logger

from config.funnel_config import funnel_config
from config.settings import settings
from database import DatabaseManager
from database.models import Client, utcnow
from database.system_repos import WEBHOOK_LOG, RECORDS_LOG
from .booking import BookingSystemClient, had_completed_paid_visit_before
from .errors import ParseError
from .events import (
    InboundEvent, KIND_BOOKING, KIND_BOOKING_DELETED,
    SOURCE_BOOKING_SYSTEM, SOURCE_MESSAGING,
)
from .identity import IdentityResolver
from .payloads import parse_webhook_entry, parse_records_entry
from .service import ClientService
from .state_machine import StaffInfo, decide_booking, decide_booking_deleted
from .states import (
    ClientState, MISSING_HANDLE_PREFIX,
    is_real_handle, placeholder_handle,
)


@dataclass
class IngestResult:
    """一次回放的统计结果。"""
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    merged: int = 0
    parse_errors: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "merged": self.merged,
            "parse_errors": self.parse_errors,
            "errors": list(self.errors),
        }


class EventIngestor:
    """事件回放器。

    Attributes:
        db: 数据库管理器。
        service: 顾客服务（所有写入都经过它）。
        resolver: 身份解析器。
        clock: 返回当前时间的函数。
    """

    def __init__(self, db: DatabaseManager,
                 service: Optional[ClientService] = None,
                 booking_client: Optional[BookingSystemClient] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 webhook_depth: Optional[int] = None,
                 records_depth: Optional[int] = None) -> None:
        self.db = db
        self.service = service or ClientService(db, booking_client, clock or utcnow)
        self.clock = clock or self.service.clock
        self.resolver = IdentityResolver(db)
        self.webhook_depth = webhook_depth or settings.ingest_webhook_log_depth
        self.records_depth = records_depth or settings.ingest_records_log_depth

    @property
    def booking_client(self) -> Optional[BookingSystemClient]:
        return self.service.booking_client

    # ================================================================
    # 读取与过滤
    # ================================================================

    def load_events(self, result: IngestResult) -> List[InboundEvent]:
        """读取并解析两个日志中最近的条目（按日志中的先后顺序）。"""
        sources: List[Tuple[str, int, Callable[[Any], Optional[InboundEvent]]]] = [
            (WEBHOOK_LOG, self.webhook_depth, parse_webhook_entry),
            (RECORDS_LOG, self.records_depth, parse_records_entry),
        ]
        events = []
        for log_name, depth, parser in sources:
            raws = self.db.event_log.read_recent(log_name, depth)
            for raw in reversed(raws):
                try:
                    event = parser(raw)
                except ParseError as e:
                    result.skipped += 1
                    result.parse_errors += 1
                    logger.warning(f"Skipping malformed {log_name} entry: {e}")
                    continue
                except Exception as e:
                    result.skipped += 1
                    result.parse_errors += 1
                    logger.warning(f"Skipping unreadable {log_name} entry: {e!r}")
                    continue
                if event is None:
                    result.skipped += 1
                    continue
                events.append(event)
        return events

    @staticmethod
    def in_window(event: InboundEvent, window_start: datetime,
                  window_end: datetime, now: datetime) -> bool:
        """事件是否属于窗口。

        有效日期（预约时间或接收时间）落在窗口内即属于窗口；此外，
        在窗口内接收到的将来日期预约也属于窗口。
        """
        if window_start <= event.effective_at <= window_end:
            return True
        return (
            event.kind == KIND_BOOKING
            and event.appointment_at is not None
            and event.appointment_at > now
            and window_start <= event.received_at <= window_end
        )

    # ================================================================
    # 回放
    # ================================================================

    def process(self, window_start: datetime, window_end: datetime) -> IngestResult:
        """回放窗口 [window_start, window_end] 内的事件。

        Args:
            window_start: 窗口开始（naive UTC，含）。
            window_end: 窗口结束（naive UTC，含）。

        Returns:
            IngestResult。
        """
        result = IngestResult()
        now = self.clock()
        events = [
            e for e in self.load_events(result)
            if self.in_window(e, window_start, window_end, now)
        ]
        events.sort(key=lambda e: e.received_at)
        logger.info(
            f"Replaying {len(events)} events from {window_start.isoformat()} "
            f"to {window_end.isoformat()}"
        )

        for event in events:
            if not event.identity.has_any():
                result.skipped += 1
                continue
            try:
                self._process_event(event, result, now)
            except Exception as e:
                logger.exception(f"Failed to process event received at {event.received_at}")
                result.errors.append(
                    f"{event.received_at.isoformat()} {event.source}/{event.kind}: {e}"
                )

        logger.info(
            f"Replay finished: processed={result.processed} created={result.created} "
            f"updated={result.updated} skipped={result.skipped} merged={result.merged} "
            f"parse_errors={result.parse_errors} errors={len(result.errors)}"
        )
        return result

    def _process_event(self, event: InboundEvent, result: IngestResult, now: datetime) -> None:
        resolution = self.resolver.resolve(event.identity)
        if resolution.is_duplicate:
            for primary_id, secondary_id in resolution.duplicates:
                if self.service.merger.merge(primary_id, secondary_id) is not None:
                    result.merged += 1
            resolution = self.resolver.resolve(event.identity)

        if event.kind == KIND_BOOKING_DELETED:
            self._apply_booking_deleted(resolution.client_id, event, result)
            return

        metadata = {
            "source": event.source,
            "received_at": event.received_at.isoformat(),
            "external_booking_id": event.identity.external_booking_id,
        }

        with self.db.get_session() as session:
            if resolution.client_id is None:
                client = self.service.save(
                    self._new_client_fields(event),
                    reason=f"first-contact-{event.source}",
                    metadata=metadata, session=session,
                )
                created = True
            else:
                client = session.get(Client, resolution.client_id)
                updates = self._identity_updates(client, event)
                if updates:
                    updates["id"] = client.id
                    client = self.service.save(
                        updates, reason="identity-update",
                        metadata=metadata, session=session,
                    )
                created = False

            if event.kind == KIND_BOOKING:
                client = self._apply_booking(client, event, metadata, now, session)

            if event.source == SOURCE_MESSAGING:
                self._apply_message(client, event, session)

            session.commit()
            client_id = client.id

        result.processed += 1
        if created:
            result.created += 1
        else:
            result.updated += 1

        if self.booking_client is not None:
            self.service.backfill_metrics(client_id)

    # ================================================================
    # 字段构造
    # ================================================================

    @staticmethod
    def _new_client_fields(event: InboundEvent) -> Dict[str, Any]:
        keys = event.identity
        token = keys.external_booking_id if keys.external_booking_id is not None else uuid4().hex[:12]
        if keys.handle and is_real_handle(keys.handle):
            handle = keys.handle
        else:
            handle = placeholder_handle(token, declined=keys.handle_declined)
        state = ClientState.CLIENT if event.source == SOURCE_BOOKING_SYSTEM else ClientState.MESSAGE
        return {
            "handle": handle,
            "external_booking_id": keys.external_booking_id,
            "given_name": keys.given_name,
            "family_name": keys.family_name,
            "state": state.value,
            "first_contact_at": event.received_at,
        }

    @staticmethod
    def _identity_updates(client: Client, event: InboundEvent) -> Dict[str, Any]:
        """已有顾客上需要更新的身份字段。"""
        keys = event.identity
        updates: Dict[str, Any] = {}

        if keys.handle and is_real_handle(keys.handle) and keys.handle != client.handle:
            updates["handle"] = keys.handle
        elif keys.handle_declined and client.handle.startswith(MISSING_HANDLE_PREFIX):
            token = client.external_booking_id or keys.external_booking_id or client.id
            updates["handle"] = placeholder_handle(token, declined=True)

        if client.external_booking_id is None and keys.external_booking_id is not None:
            updates["external_booking_id"] = keys.external_booking_id

        # 预约系统中的姓名为准；消息平台的显示名只补空
        if keys.given_name:
            authoritative = event.source == SOURCE_BOOKING_SYSTEM
            if authoritative or not client.given_name:
                if keys.given_name != client.given_name:
                    updates["given_name"] = keys.given_name
                if keys.family_name and keys.family_name != client.family_name:
                    updates["family_name"] = keys.family_name
        return updates

    def _staff(self, event: InboundEvent, session: Session) -> Optional[StaffInfo]:
        if not event.staff_name and event.staff_id is None:
            return None
        master = self.db.masters.find(event.staff_name, event.staff_id, session=session)
        if master is None:
            return StaffInfo(name=event.staff_name)
        return StaffInfo(
            name=master.name,
            is_admin=master.role in funnel_config.get_admin_roles(),
            master_id=master.id,
        )

    def _apply_booking(self, client: Client, event: InboundEvent,
                       metadata: Dict[str, Any], now: datetime,
                       session: Session) -> Client:
        history = self.service.history_states(client.id, session=session)
        staff = self._staff(event, session)
        transition = decide_booking(client.to_dict(), event, history, staff, now)
        if transition.is_empty():
            return client

        changes = dict(transition.changes)
        new_paid_at = changes.get("paid_service_at")
        if new_paid_at is not None and self.booking_client is not None \
                and client.external_booking_id is not None:
            changes["paid_service_is_repeat"] = had_completed_paid_visit_before(
                self.booking_client, client.external_booking_id, new_paid_at
            )
        changes["id"] = client.id
        return self.service.save(
            changes, reason=transition.reason or "booking",
            metadata=metadata, session=session,
        )

    def _apply_message(self, client: Client, event: InboundEvent, session: Session) -> None:
        if event.message_text:
            self.service.record_message(
                client.id, event.message_text, event.received_at, session=session
            )
        elif client.last_message_at is None or event.received_at > client.last_message_at:
            self.service.save(
                {"id": client.id, "last_message_at": event.received_at},
                reason="message", session=session,
            )

    def _apply_booking_deleted(self, client_id: Optional[int], event: InboundEvent,
                               result: IngestResult) -> None:
        """预约删除只作用于已有顾客，不会新建顾客。"""
        if client_id is None:
            result.skipped += 1
            return
        with self.db.get_session() as session:
            client = session.get(Client, client_id)
            if client is None:
                result.skipped += 1
                return
            transition = decide_booking_deleted(client.to_dict(), event)
            if not transition.is_empty():
                changes = dict(transition.changes)
                changes["id"] = client.id
                self.service.save(
                    changes, reason=transition.reason, touch_activity=False,
                    metadata={
                        "source": event.source,
                        "received_at": event.received_at.isoformat(),
                        "external_booking_id": event.identity.external_booking_id,
                    },
                    session=session,
                )
            session.commit()
        result.processed += 1
        result.updated += 1
