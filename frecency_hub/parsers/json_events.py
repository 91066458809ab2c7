# 原始事件 JSON 解析器
# 一行一个事件（JSONL），字段：
#   type: 事件类型（snake_case，或扩展 API 的 onFocus / onAutocompleteSuggestionSelected 写法）
#   timestamp: UTC毫秒，或 ISO 字符串
#   key: 键盘事件的按键（key_down / key_press）
#   ui_state: 弹窗状态 {search_string, search_string_length, num_suggestions_displayed,
#             suggestions: [{url, style}], rank_selected}

import json
import logging
from typing import Any, Dict, List

from ..models import Event, EventType, KeyInfo, UIState, suggestions_from
from ..utils import now_ms, to_ms

logger = logging.getLogger(__name__)

# 扩展 API 的事件名 -> EventType
_API_EVENT_NAMES = {
    "onFocus": EventType.FOCUS,
    "onBlur": EventType.BLUR,
    "onKeyDown": EventType.KEY_DOWN,
    "onKeyPress": EventType.KEY_PRESS,
    "onInput": EventType.INPUT,
    "onAutocompleteSuggestionsHidden": EventType.SUGGESTIONS_HIDDEN,
    "onAutocompleteSuggestionsUpdated": EventType.SUGGESTIONS_UPDATED,
    "onAutocompleteSuggestionSelected": EventType.SUGGESTION_SELECTED,
}


def parse_event_type(raw: str) -> EventType:
    if raw in _API_EVENT_NAMES:
        return _API_EVENT_NAMES[raw]
    return EventType(raw)


def parse_ui_state(obj: Dict[str, Any]) -> UIState:
    """
    弹窗状态解析；长度/数量缺省时从内容推出

    参数:
        obj: ui_state 字段（snake_case 或 camelCase 均可）
    """
    search_string = obj.get("search_string", obj.get("searchString", "")) or ""
    suggestions = suggestions_from(obj.get("suggestions") or [])
    length = obj.get("search_string_length", obj.get("searchStringLength"))
    displayed = obj.get("num_suggestions_displayed", obj.get("numSuggestionsDisplayed"))
    rank = obj.get("rank_selected", obj.get("rankSelected"))
    return UIState(
        search_string=search_string,
        search_string_length=int(length) if length is not None else len(search_string),
        num_suggestions_displayed=int(displayed) if displayed is not None else len(suggestions),
        suggestions=suggestions,
        rank_selected=int(rank) if rank is not None and int(rank) >= 0 else None,
    )


def parse_event(obj: Dict[str, Any]) -> Event:
    """
    参数:
        obj: 一条原始事件 dict

    返回:
        Event；type 不认识抛 ValueError
    """
    if not isinstance(obj, dict):
        raise ValueError(f"event must be an object, got {type(obj).__name__}")
    event_type = parse_event_type(obj.get("type", ""))

    ts_raw = obj.get("timestamp")
    timestamp = to_ms(ts_raw) if ts_raw is not None else now_ms()

    key = obj.get("key")
    if key is None and isinstance(obj.get("keyEvent"), dict):
        key = obj["keyEvent"].get("key")

    ui_raw = obj.get("ui_state", obj.get("awesomeBarState"))
    ui_state = parse_ui_state(ui_raw) if isinstance(ui_raw, dict) else None

    return Event(
        type=event_type,
        timestamp=timestamp,
        key_info=KeyInfo(key=str(key)) if key is not None else None,
        ui_state=ui_state,
    )


def parse_jsonl(text: str) -> List[Event]:
    """解析 JSONL；坏行记日志后跳过"""
    events: List[Event] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            events.append(parse_event(json.loads(line)))
        except (ValueError, TypeError) as e:
            logger.warning("skipping event line %d: %s", lineno, e)
    return events
