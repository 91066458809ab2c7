# -*- coding: utf-8 -*-
"""
models.py
定义地址栏交互事件、训练样本、远端模型等数据模型。
时间统一用 UTC 毫秒整数（和 utils.now_ms 一致）。
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

# 这些 style token 表示“非书签/历史”来源的建议
NON_BOOKMARK_OR_HISTORY_STYLES = frozenset({
    "switchtab",
    "remotetab",
    "searchengine",
    "visiturl",
    "extension",
    "suggestion",
    "keyword",
})


class EventType(str, enum.Enum):
    FOCUS = "focus"
    BLUR = "blur"
    KEY_DOWN = "key_down"
    KEY_PRESS = "key_press"
    INPUT = "input"
    SUGGESTIONS_HIDDEN = "suggestions_hidden"
    SUGGESTIONS_UPDATED = "suggestions_updated"
    SUGGESTION_SELECTED = "suggestion_selected"


def is_bookmark_or_history_style(style: str) -> bool:
    """style 串里不含任何排除 token 即视为书签/历史"""
    styles = set(style.split())
    return not (styles & NON_BOOKMARK_OR_HISTORY_STYLES)


@dataclass(frozen=True)
class Suggestion:
    url: str
    # 空格分隔的 token，如 "bookmark tag" / "action searchengine"
    style: str = ""

    @property
    def is_bookmark_or_history(self) -> bool:
        return is_bookmark_or_history_style(self.style)


@dataclass(frozen=True)
class UIState:
    """建议弹窗的状态快照，只挂在带弹窗状态的事件上"""

    search_string: str = ""
    search_string_length: int = 0
    num_suggestions_displayed: int = 0
    suggestions: Tuple[Suggestion, ...] = ()
    rank_selected: Optional[int] = None

    @property
    def selected_suggestion(self) -> Optional[Suggestion]:
        if self.rank_selected is None:
            return None
        if 0 <= self.rank_selected < len(self.suggestions):
            return self.suggestions[self.rank_selected]
        return None

    def contains_url(self, url: str) -> bool:
        return any(s.url == url for s in self.suggestions)


@dataclass(frozen=True)
class KeyInfo:
    key: str


@dataclass(frozen=True)
class Event:
    type: EventType
    timestamp: int  # UTC 毫秒
    key_info: Optional[KeyInfo] = None
    ui_state: Optional[UIState] = None


# ------------------------------------------------------------
# 会话分类结果（一次 focus..blur 只算一次）
# ------------------------------------------------------------

@dataclass(frozen=True)
class Dropped:
    """没捕获到 focus（浏览器刚启动或研究中途启用），整段交互丢弃"""


@dataclass(frozen=True)
class NoResults:
    focus: Event


@dataclass(frozen=True)
class UpdatedNoSelection:
    focus: Event
    ui_state: UIState


@dataclass(frozen=True)
class Selected:
    focus: Event
    ui_state: UIState


SessionOutcome = Union[Dropped, NoResults, UpdatedNoSelection, Selected]


@dataclass(frozen=True)
class TrainingExample:
    """
    一次交互生成的训练样本。
    None 表示“不适用/未采集”，只有在序列化成上报 payload 时才转成 -1 / ""。
    """

    num_suggestions_displayed: int
    rank_selected: Optional[int]
    bookmark_and_history_urls: Tuple[str, ...]
    bookmark_and_history_rank_selected: Optional[int]
    num_key_down_events_at_selecteds_first_entry: Optional[int]
    num_key_down_events: int
    interaction_duration_ms: int
    time_at_selecteds_first_entry: Optional[int]
    search_string_length: int
    selected_style: Optional[str]
    selected_url_was_same_as_search_string: Optional[bool]
    enter_was_pressed: bool

    def as_payload_fields(self) -> Dict[str, Any]:
        return {
            "num_suggestions_displayed": self.num_suggestions_displayed,
            "rank_selected": _or_sentinel(self.rank_selected),
            "bookmark_and_history_num_suggestions_displayed": len(self.bookmark_and_history_urls),
            "bookmark_and_history_rank_selected": _or_sentinel(self.bookmark_and_history_rank_selected),
            "num_key_down_events_at_selecteds_first_entry": _or_sentinel(
                self.num_key_down_events_at_selecteds_first_entry
            ),
            "num_key_down_events": self.num_key_down_events,
            # 时间以交互开始为原点
            "time_start_interaction": 0,
            "time_end_interaction": self.interaction_duration_ms,
            "time_at_selecteds_first_entry": _or_sentinel(self.time_at_selecteds_first_entry),
            "search_string_length": self.search_string_length,
            "selected_style": self.selected_style if self.selected_style is not None else "",
            "selected_url_was_same_as_search_string": _or_sentinel(
                None
                if self.selected_url_was_same_as_search_string is None
                else int(self.selected_url_was_same_as_search_string)
            ),
            "enter_was_pressed": int(self.enter_was_pressed),
        }


def _or_sentinel(value: Optional[int]) -> int:
    return -1 if value is None else value


@dataclass
class ModelUpdate:
    """优化器一步的产出，交给同步器上报"""

    frecency_scores: List[int]
    loss: float
    weights: List[float]
    example: TrainingExample


# ------------------------------------------------------------
# 远端模型 / 本地模型状态
# ------------------------------------------------------------

@dataclass(frozen=True)
class RemoteModel:
    iteration: int
    model: Tuple[int, ...]

    @classmethod
    def from_json(cls, obj: Any, expected_length: int) -> "RemoteModel":
        """
        校验远端 JSON：{"iteration": int>=0, "model": [int, ...]}

        参数:
            obj: json.loads 之后的对象
            expected_length: 权重参数个数，model 必须等长

        返回:
            RemoteModel；格式不对抛 ValueError
        """
        if not isinstance(obj, dict):
            raise ValueError(f"remote model must be an object, got {type(obj).__name__}")
        iteration = obj.get("iteration")
        model = obj.get("model")
        if not _is_int(iteration) or iteration < 0:
            raise ValueError(f"invalid iteration: {iteration!r}")
        if not isinstance(model, list) or not all(_is_int(v) for v in model):
            raise ValueError("model must be a list of integers")
        if len(model) != expected_length:
            raise ValueError(f"model has {len(model)} weights, expected {expected_length}")
        return cls(iteration=iteration, model=tuple(model))


def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


class SyncState(str, enum.Enum):
    UNSYNCED = "unsynced"
    SYNCED = "synced"


@dataclass
class ModelState:
    version: int = -1
    applied_weights: Dict[str, int] = field(default_factory=dict)
    last_fetch_scheduled_at: Optional[int] = None  # UTC 毫秒
    state: SyncState = SyncState.UNSYNCED


def suggestions_from(items: Sequence[Union[Suggestion, Dict[str, Any]]]) -> Tuple[Suggestion, ...]:
    """dict 或 Suggestion 混合列表 -> Suggestion 元组"""
    out = []
    for item in items:
        if isinstance(item, Suggestion):
            out.append(item)
        else:
            out.append(Suggestion(url=item.get("url", ""), style=item.get("style", "") or ""))
    return tuple(out)
