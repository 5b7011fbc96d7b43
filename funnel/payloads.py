"""原始事件解析：把日志中的多形态条目转换为 InboundEvent。

日志条目可能是：
- JSON 文本，或已解析的字典；
- ``{"value": "<json>"}`` 形式的二次包装；
- webhook 信封 ``{receivedAt, body: {resource, status, resource_id, data}}``；
- records 日志的扁平记录（先转换为 webhook 信封）；
- 消息平台（ManyChat）推送的扁平字典，或 ``{receivedAt, rawBody}``。

身份字段通过有序的提取函数表获取，按顺序尝试，第一个非空结果生效。
新的上游形态只需在表尾追加函数，不影响已有优先级。
"""
import json
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable, Tuple

from .errors import ParseError
from .events import (
    InboundEvent, IdentityKeys,
    KIND_IDENTITY, KIND_BOOKING, KIND_BOOKING_DELETED,
    SOURCE_BOOKING_SYSTEM, SOURCE_MESSAGING,
)
from .states import normalize_handle, is_declined_handle

RESOURCE_CLIENT = "client"
RESOURCE_RECORD = "record"
STATUS_DELETE = "delete"

# 消息平台推送中出现的特征字段
MESSAGING_KEYS = (
    "ig_username", "instagram_username", "username", "subscriber",
    "subscriber_id", "last_input_text", "full_name",
)

Extractor = Callable[[Dict[str, Any]], Any]


# ================================================================
# 基础解析
# ================================================================

def unwrap(raw: Any) -> Any:
    """解开 JSON 文本和 ``{"value": "<json>"}`` 包装。

    Raises:
        ParseError: 内容不是合法 JSON。
    """
    value = raw
    for _ in range(5):
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8", errors="replace")
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise ParseError(f"Malformed event payload: {e}") from e
            continue
        if isinstance(value, dict) and set(value.keys()) == {"value"} \
                and isinstance(value["value"], (str, dict)):
            value = value["value"]
            continue
        break
    if not isinstance(value, dict):
        raise ParseError(f"Unexpected event payload type: {type(value).__name__}")
    return value


def parse_datetime(value: Any) -> Optional[datetime]:
    """解析 ISO 时间（支持 Z 和时区偏移），统一转换为 naive UTC。

    Raises:
        ParseError: 非空但无法解析。
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        try:
            dt = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ParseError(f"Unparsable timestamp: {value!r}") from e
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ParseError(f"Unparsable datetime: {value!r}") from e
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _clean_name(value: Any) -> Optional[str]:
    """去掉空白；模板占位符（如 {{full_name}}）视为空。"""
    if not value or not isinstance(value, str):
        return None
    text = " ".join(value.split())
    if not text or "{{" in text or "}}" in text:
        return None
    return text


def _object(value: Any, what: str) -> Dict[str, Any]:
    """取嵌套对象：空值视为空字典，非字典结构视为格式错误。

    Raises:
        ParseError: value 不是对象。
    """
    if value is None or value == "":
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"Event field '{what}' is not an object: {type(value).__name__}")
    return value


def split_full_name(full_name: Any) -> Tuple[Optional[str], Optional[str]]:
    """把全名拆为 (名, 姓)：第一个词为名，其余为姓。"""
    text = _clean_name(full_name)
    if not text:
        return None, None
    parts = text.split(" ", 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


# ================================================================
# 信封转换
# ================================================================

def records_entry_to_envelope(entry: Dict[str, Any]) -> Dict[str, Any]:
    """把 records 日志的扁平记录转换为 webhook 信封形态。

    已经是信封形态（含 body）的条目原样返回。
    """
    if isinstance(entry.get("body"), dict):
        return entry

    data = _object(entry.get("data"), "data")
    client = dict(_object(data.get("client"), "client"))
    if client.get("id") is None and entry.get("clientId") is not None:
        client["id"] = entry["clientId"]
    if not (client.get("name") or client.get("display_name")) and entry.get("clientName"):
        client["name"] = entry["clientName"]

    staff = _object(data.get("staff"), "staff")
    if not staff and (entry.get("staffId") is not None or entry.get("staffName")):
        staff = {"id": entry.get("staffId"), "name": entry.get("staffName")}

    services = data.get("services") or entry.get("services") or []
    if not services and entry.get("serviceName"):
        services = [{"id": entry.get("serviceId"), "title": entry["serviceName"]}]

    attendance = data.get("attendance")
    if attendance is None:
        attendance = entry.get("attendance", entry.get("visit_attendance"))

    return {
        "receivedAt": entry.get("receivedAt"),
        "body": {
            "resource": RESOURCE_RECORD,
            "status": entry.get("status"),
            "resource_id": entry.get("recordId") or entry.get("visitId"),
            "data": {
                "datetime": data.get("datetime") or entry.get("datetime"),
                "services": services,
                "staff": staff,
                "client": client,
                "attendance": attendance,
            },
        },
    }


def _messaging_body(entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """识别消息平台推送，返回扁平的推送内容；不是消息平台形态时返回 None。"""
    if isinstance(entry.get("rawBody"), str):
        body = unwrap(entry["rawBody"])
    elif isinstance(entry.get("body"), dict):
        body = entry["body"]
    else:
        body = entry
    if "resource" in body:
        return None
    if any(key in body for key in MESSAGING_KEYS):
        return body
    return None


# ================================================================
# 提取函数表（按优先级排列，第一个非空结果生效）
# ================================================================

def _client_object(body: Dict[str, Any]) -> Dict[str, Any]:
    data = _object(body.get("data"), "data")
    if body.get("resource") == RESOURCE_CLIENT:
        return data
    return _object(data.get("client"), "client")


def _record_client_id(body):
    if body.get("resource") != RESOURCE_RECORD:
        return None
    data = _object(body.get("data"), "data")
    return _to_int(_client_object(body).get("id")) or _to_int(data.get("client_id"))


def _client_resource_id(body):
    if body.get("resource") != RESOURCE_CLIENT:
        return None
    return _to_int(body.get("resource_id")) or _to_int(_client_object(body).get("id"))


EXTERNAL_ID_EXTRACTORS: List[Extractor] = [
    _record_client_id,
    _client_resource_id,
]


def _custom_fields_list(body):
    fields = _client_object(body).get("custom_fields")
    if not isinstance(fields, list):
        return None
    for item in fields:
        if not isinstance(item, dict):
            continue
        label = " ".join(
            str(item.get(k) or "") for k in ("code", "title", "name")
        ).lower()
        if "instagram" in label and item.get("value"):
            return item["value"]
    return None


def _custom_fields_dict(body):
    fields = _client_object(body).get("custom_fields")
    if not isinstance(fields, dict):
        return None
    for key, value in fields.items():
        if "instagram" in str(key).lower() and value:
            return value
    return None


def _client_handle_field(body):
    client = _client_object(body)
    return client.get("instagram_username") or client.get("handle")


BOOKING_HANDLE_EXTRACTORS: List[Extractor] = [
    _custom_fields_list,
    _custom_fields_dict,
    _client_handle_field,
]


def _client_display_name(body):
    client = _client_object(body)
    name = _clean_name(client.get("name")) or _clean_name(client.get("display_name"))
    if not name:
        return None
    given, family = split_full_name(name)
    surname = _clean_name(client.get("surname"))
    if surname and not family:
        family = surname
    return given, family


def _client_first_last(body):
    client = _client_object(body)
    given = _clean_name(client.get("first_name"))
    if not given:
        return None
    return given, _clean_name(client.get("last_name"))


BOOKING_NAME_EXTRACTORS: List[Extractor] = [
    _client_display_name,
    _client_first_last,
]


def _messaging_username(body):
    for key in ("ig_username", "instagram_username", "username", "user_name", "handle"):
        if body.get(key):
            return body[key]
    return None


def _messaging_subscriber_username(body):
    subscriber = body.get("subscriber")
    if isinstance(subscriber, dict):
        return subscriber.get("ig_username") or subscriber.get("username")
    return None


MESSAGING_HANDLE_EXTRACTORS: List[Extractor] = [
    _messaging_username,
    _messaging_subscriber_username,
]


def _messaging_first_last(body):
    given = _clean_name(body.get("first_name"))
    if not given:
        return None
    return given, _clean_name(body.get("last_name"))


def _messaging_full_name(body):
    for key in ("full_name", "fullName", "name"):
        given, family = split_full_name(body.get(key))
        if given:
            return given, family
    return None


MESSAGING_NAME_EXTRACTORS: List[Extractor] = [
    _messaging_first_last,
    _messaging_full_name,
]


def first_match(extractors: List[Extractor], body: Dict[str, Any]) -> Any:
    """按顺序执行提取函数，返回第一个非空结果。"""
    for extractor in extractors:
        value = extractor(body)
        if value:
            return value
    return None


def extract_identity(body: Dict[str, Any],
                     handle_extractors: List[Extractor],
                     name_extractors: List[Extractor],
                     external_id_extractors: Optional[List[Extractor]] = None
                     ) -> IdentityKeys:
    """用给定的提取函数表从推送内容中提取身份标识。"""
    keys = IdentityKeys()
    if external_id_extractors:
        keys.external_booking_id = first_match(external_id_extractors, body)

    raw_handle = first_match(handle_extractors, body)
    if isinstance(raw_handle, str):
        if is_declined_handle(raw_handle):
            keys.handle_declined = True
        else:
            keys.handle = normalize_handle(raw_handle)

    names = first_match(name_extractors, body)
    if names:
        keys.given_name, keys.family_name = names
    return keys


# ================================================================
# 条目 -> InboundEvent
# ================================================================

def _services(data: Dict[str, Any]) -> List[Dict[str, Any]]:
    raw = data.get("services")
    if not raw and isinstance(data.get("service"), dict):
        raw = [data["service"]]
    if raw and not isinstance(raw, list):
        raise ParseError(f"Event field 'services' is not a list: {type(raw).__name__}")
    services = []
    for item in raw or []:
        if isinstance(item, dict):
            title = item.get("title") or item.get("name")
            if title:
                services.append({"title": str(title), "cost": item.get("cost")})
        elif isinstance(item, str) and item:
            services.append({"title": item, "cost": None})
    return services


def _received_at(entry: Dict[str, Any]) -> datetime:
    received_at = parse_datetime(entry.get("receivedAt") or entry.get("received_at"))
    if received_at is None:
        raise ParseError("Event has no receivedAt")
    return received_at


def parse_envelope(entry: Dict[str, Any]) -> Optional[InboundEvent]:
    """把预约系统 webhook 信封转换为 InboundEvent。

    预约的 delete 事件转换为 booking-deleted 事件（只带身份和预约时间）；
    客户的 delete 事件和非 client/record 资源返回 None（忽略）。

    Raises:
        ParseError: 信封结构错误（data、client、staff 不是对象等）。
    """
    body = entry.get("body")
    if not isinstance(body, dict):
        raise ParseError("Webhook envelope has no body")
    resource = body.get("resource")
    status = body.get("status")
    if resource not in (RESOURCE_CLIENT, RESOURCE_RECORD):
        return None
    if resource == RESOURCE_CLIENT and status == STATUS_DELETE:
        return None
    data = _object(body.get("data"), "data")
    staff = _object(data.get("staff"), "staff")

    event = InboundEvent(
        received_at=_received_at(entry),
        source=SOURCE_BOOKING_SYSTEM,
        status=status,
        identity=extract_identity(
            body, BOOKING_HANDLE_EXTRACTORS, BOOKING_NAME_EXTRACTORS,
            EXTERNAL_ID_EXTRACTORS,
        ),
    )
    if resource == RESOURCE_RECORD and status == STATUS_DELETE:
        event.kind = KIND_BOOKING_DELETED
        event.appointment_at = parse_datetime(data.get("datetime"))
    elif resource == RESOURCE_RECORD:
        event.kind = KIND_BOOKING
        event.services = _services(data)
        event.appointment_at = parse_datetime(data.get("datetime"))
        attendance = data.get("attendance")
        if attendance is None:
            attendance = data.get("visit_attendance")
        event.attendance_code = _to_int(attendance)
        event.staff_id = _to_int(staff.get("id")) or _to_int(data.get("staff_id"))
        event.staff_name = _clean_name(staff.get("name"))
    else:
        event.kind = KIND_IDENTITY
    return event


def parse_messaging(entry: Dict[str, Any], body: Dict[str, Any]) -> InboundEvent:
    """把消息平台推送转换为 InboundEvent（身份事件，携带消息内容）。"""
    text = None
    for key in ("text", "message", "last_input_text", "input"):
        if isinstance(body.get(key), str) and body[key].strip():
            text = body[key]
            break
    received_at = parse_datetime(entry.get("receivedAt") or body.get("receivedAt"))
    if received_at is None:
        raise ParseError("Messaging event has no receivedAt")
    return InboundEvent(
        received_at=received_at,
        kind=KIND_IDENTITY,
        source=SOURCE_MESSAGING,
        identity=extract_identity(body, MESSAGING_HANDLE_EXTRACTORS, MESSAGING_NAME_EXTRACTORS),
        message_text=text,
    )


def parse_webhook_entry(raw: Any) -> Optional[InboundEvent]:
    """解析 webhook 日志中的一条原始内容。

    Returns:
        InboundEvent，或 None（条目被忽略）。

    Raises:
        ParseError: 条目格式错误。
    """
    entry = unwrap(raw)
    messaging = _messaging_body(entry)
    if messaging is not None:
        return parse_messaging(entry, messaging)
    return parse_envelope(entry)


def parse_records_entry(raw: Any) -> Optional[InboundEvent]:
    """解析 records 日志中的一条原始内容（先转换为 webhook 信封）。"""
    entry = unwrap(raw)
    return parse_envelope(records_entry_to_envelope(entry))
