# -*- coding: utf-8 -*-
"""
eventlog.py
一次地址栏交互（focus -> ... -> blur）的原始事件缓冲。
focus 到来时先清空再记录，所以 focus 总在下标 0。
"""

from __future__ import annotations

from typing import Callable, Iterator, List, Optional, Tuple

from .errors import NotFound
from .models import Event, EventType

EventPredicate = Callable[[Event], bool]


class EventLog:
    """按到达顺序追加的事件日志"""

    def __init__(self) -> None:
        self._events: List[Event] = []

    def append(self, event: Event) -> None:
        if event.type is EventType.FOCUS:
            self._events = []
        self._events.append(event)

    def reset(self) -> None:
        self._events = []

    @property
    def events(self) -> Tuple[Event, ...]:
        return tuple(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self._events)

    def most_recent(self, predicate: EventPredicate) -> Optional[Event]:
        """从尾部往前找第一个匹配的事件"""
        for event in reversed(self._events):
            if predicate(event):
                return event
        return None

    def all(self, predicate: EventPredicate) -> List[Event]:
        return [e for e in self._events if predicate(e)]

    def first_containing(self, url_predicate: Callable[[str], bool]) -> int:
        """
        从头找第一个建议列表里含有满足条件 URL 的事件

        返回:
            该事件的下标；找不到抛 NotFound
        """
        return first_containing(self._events, url_predicate)


def first_containing(events, url_predicate: Callable[[str], bool]) -> int:
    for index, event in enumerate(events):
        if event.ui_state is None:
            continue
        if any(url_predicate(s.url) for s in event.ui_state.suggestions):
            return index
    raise NotFound("No event with a matching suggestion url observed")
