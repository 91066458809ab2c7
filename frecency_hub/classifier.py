# -*- coding: utf-8 -*-
"""
classifier.py
会话关闭（blur）后，把事件日志归为三种情况之一并生成训练样本：
1. 用户从弹窗里选中了某条建议
2. 弹窗显示过建议，但没有选中
3. 弹窗没有显示任何建议
没捕获到 focus 的会话直接丢弃。
"""

from __future__ import annotations

import logging
from typing import List, Sequence

from .errors import NoFirstEntryFound, NotFound
from .eventlog import first_containing
from .models import (
    Dropped,
    Event,
    EventType,
    NoResults,
    Selected,
    SessionOutcome,
    TrainingExample,
    UpdatedNoSelection,
)
from .utils import normalize_for_match

logger = logging.getLogger(__name__)

ENTER = "Enter"


def _most_recent(events: Sequence[Event], event_type: EventType):
    # 只认带弹窗状态的事件
    for event in reversed(events):
        if event.ui_state is not None and event.type is event_type:
            return event
    return None


def classify(events: Sequence[Event]) -> SessionOutcome:
    """
    按优先级判定会话结果：选中 > 有更新无选中 > 无结果

    参数:
        events: 本次会话的事件（focus 在前）

    返回:
        Dropped / Selected / UpdatedNoSelection / NoResults 之一
    """
    focus = _most_recent(events, EventType.FOCUS)
    if focus is None:
        logger.debug("no focus event captured, dropping interaction (%d events)", len(events))
        return Dropped()

    selection = _most_recent(events, EventType.SUGGESTION_SELECTED)
    if selection is not None:
        return Selected(focus=focus, ui_state=selection.ui_state)

    update = _most_recent(events, EventType.SUGGESTIONS_UPDATED)
    if update is not None:
        return UpdatedNoSelection(focus=focus, ui_state=update.ui_state)

    return NoResults(focus=focus)


def num_key_down_events(events: Sequence[Event]) -> int:
    """key down 次数，不含 Enter"""
    return sum(
        1
        for e in events
        if e.type is EventType.KEY_DOWN and e.key_info is not None and e.key_info.key != ENTER
    )


def enter_was_pressed(events: Sequence[Event]) -> bool:
    return any(
        e.type is EventType.KEY_PRESS and e.key_info is not None and e.key_info.key == ENTER
        for e in events
    )


def selected_url_was_same_as_search_string(search_string: str, selected_url: str) -> int:
    """规范化后完全相等返回 1，否则 0"""
    return 1 if normalize_for_match(search_string) == normalize_for_match(selected_url) else 0


def events_at_selecteds_first_entry(events: Sequence[Event]) -> List[Event]:
    """
    截取到“最终被选中的 URL 第一次出现在建议列表里”的那个事件为止（含）

    返回:
        事件前缀列表；没有选中事件或选中 URL 从没出现过抛 NoFirstEntryFound
    """
    selection = _most_recent(events, EventType.SUGGESTION_SELECTED)
    if selection is None:
        raise NoFirstEntryFound("No selection event observed")
    selected = selection.ui_state.selected_suggestion
    if selected is None:
        raise NoFirstEntryFound(
            f"Selection event has no suggestion at rank {selection.ui_state.rank_selected}"
        )
    try:
        index = first_containing(events, lambda url: url == selected.url)
    except NotFound as exc:
        raise NoFirstEntryFound("No event with the selected url observed") from exc
    return list(events[: index + 1])


def build_training_example(outcome: SessionOutcome, events: Sequence[Event]) -> TrainingExample:
    """
    从分类结果和完整事件日志生成训练样本

    参数:
        outcome: classify() 的结果，不能是 Dropped
        events: 本次会话的事件

    返回:
        TrainingExample
    """
    if isinstance(outcome, Dropped):
        raise ValueError("cannot build a training example from a dropped session")

    focus = outcome.focus
    blur = _most_recent(events, EventType.BLUR)
    end_ts = blur.timestamp if blur is not None else events[-1].timestamp
    duration = end_ts - focus.timestamp

    key_downs = num_key_down_events(events)
    enter = enter_was_pressed(events)

    if isinstance(outcome, Selected):
        state = outcome.ui_state
        selected = state.selected_suggestion
        if selected is None:
            raise NoFirstEntryFound(f"Selection event has no suggestion at rank {state.rank_selected}")

        bh_urls = tuple(s.url for s in state.suggestions if s.is_bookmark_or_history)
        bh_rank = bh_urls.index(selected.url) if selected.url in bh_urls else None

        prefix = events_at_selecteds_first_entry(events)
        first_entry = prefix[-1]

        return TrainingExample(
            num_suggestions_displayed=state.num_suggestions_displayed,
            rank_selected=state.rank_selected,
            bookmark_and_history_urls=bh_urls,
            bookmark_and_history_rank_selected=bh_rank,
            num_key_down_events_at_selecteds_first_entry=num_key_down_events(prefix),
            num_key_down_events=key_downs,
            interaction_duration_ms=duration,
            time_at_selecteds_first_entry=first_entry.timestamp - focus.timestamp,
            search_string_length=state.search_string_length,
            selected_style=selected.style,
            selected_url_was_same_as_search_string=bool(
                selected_url_was_same_as_search_string(state.search_string, selected.url)
            ),
            enter_was_pressed=enter,
        )

    if isinstance(outcome, UpdatedNoSelection):
        state = outcome.ui_state
        return TrainingExample(
            num_suggestions_displayed=state.num_suggestions_displayed,
            rank_selected=None,
            bookmark_and_history_urls=tuple(
                s.url for s in state.suggestions if s.is_bookmark_or_history
            ),
            bookmark_and_history_rank_selected=None,
            num_key_down_events_at_selecteds_first_entry=None,
            num_key_down_events=key_downs,
            interaction_duration_ms=duration,
            time_at_selecteds_first_entry=None,
            search_string_length=state.search_string_length,
            selected_style=None,
            selected_url_was_same_as_search_string=None,
            enter_was_pressed=enter,
        )

    # NoResults
    return TrainingExample(
        num_suggestions_displayed=0,
        rank_selected=None,
        bookmark_and_history_urls=(),
        bookmark_and_history_rank_selected=None,
        num_key_down_events_at_selecteds_first_entry=None,
        num_key_down_events=key_downs,
        interaction_duration_ms=duration,
        time_at_selecteds_first_entry=None,
        search_string_length=focus.ui_state.search_string_length,
        selected_style=None,
        selected_url_was_same_as_search_string=None,
        enter_was_pressed=enter,
    )
