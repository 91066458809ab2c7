# -*- coding: utf-8 -*-
"""
observer.py
地址栏事件的记录入口：
- 每个事件先过隐私检查，隐私浏览时整条丢弃（不缓存）
- focus 标志一次交互开始，先清空日志
- blur 结束交互：分类 -> 生成训练样本 -> 优化器一步 -> 问卷计数
交互结束后会触发模型更新的三种情况：
1. 从弹窗选中了一条建议
2. 弹窗显示过建议但没有选中
3. 弹窗没有显示任何建议
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from .classifier import build_training_example, classify
from .eventlog import EventLog
from .models import Dropped, Event, EventType, KeyInfo, UIState
from .optimizer import FrecencyOptimizer
from .survey import MidStudySurvey
from .utils import now_ms

logger = logging.getLogger(__name__)

PrivacyGate = Callable[[], Awaitable[bool]]


class ConfigPrivacyGate:
    """从配置读取“当前是否有隐私窗口”，可在运行时切换"""

    def __init__(self, private_browsing: bool = False):
        self.private_browsing = private_browsing

    @classmethod
    def from_cfg(cls, cfg: Dict[str, Any]) -> "ConfigPrivacyGate":
        return cls(bool((cfg.get("privacy") or {}).get("private_browsing", False)))

    async def __call__(self) -> bool:
        return self.private_browsing


class AwesomeBarObserver:
    def __init__(
        self,
        optimizer: FrecencyOptimizer,
        privacy_gate: PrivacyGate,
        survey: Optional[MidStudySurvey] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.optimizer = optimizer
        self.privacy_gate = privacy_gate
        self.survey = survey
        self.clock = clock
        self.log = EventLog()

    async def observe(self, event: Event) -> bool:
        """
        记录一个事件；blur 时处理整段交互

        返回:
            事件是否被记录（隐私浏览时为 False）
        """
        if event.type is EventType.FOCUS:
            # 交互开始，无论是否记录都先清空
            self.log.reset()
        if await self.privacy_gate():
            # 隐私浏览：不做任何训练
            return False
        self.log.append(event)
        if event.type is EventType.BLUR:
            await self.after_interaction()
        return True

    async def after_interaction(self) -> bool:
        """
        返回:
            是否产生了模型更新（丢弃的交互为 False）
        """
        events = self.log.events
        logger.debug("after interaction: %d events since last focus", len(events))
        try:
            outcome = classify(events)
            if isinstance(outcome, Dropped):
                logger.debug("Dropping awesome bar interaction metadata since no focus event was captured")
                return False
            example = build_training_example(outcome, events)
            await self.optimizer.step(example)
        except Exception:
            logger.exception("failed to process awesome bar interaction (%d events)", len(events))
            raise

        if self.survey is not None:
            await self.survey.fire_if_relevant()
        return True

    # --------------- 各类事件入口（以当前时间打时间戳） ---------------

    async def _record(
        self,
        event_type: EventType,
        ui_state: Optional[UIState] = None,
        key: Optional[str] = None,
    ) -> bool:
        key_info = KeyInfo(key=key) if key is not None else None
        return await self.observe(
            Event(type=event_type, timestamp=self.clock(), key_info=key_info, ui_state=ui_state)
        )

    async def on_focus(self, ui_state: UIState) -> bool:
        return await self._record(EventType.FOCUS, ui_state=ui_state)

    async def on_blur(self, ui_state: UIState) -> bool:
        return await self._record(EventType.BLUR, ui_state=ui_state)

    async def on_key_down(self, key: str) -> bool:
        return await self._record(EventType.KEY_DOWN, key=key)

    async def on_key_press(self, key: str) -> bool:
        return await self._record(EventType.KEY_PRESS, key=key)

    async def on_input(self, ui_state: UIState) -> bool:
        return await self._record(EventType.INPUT, ui_state=ui_state)

    async def on_suggestions_hidden(self, ui_state: UIState) -> bool:
        return await self._record(EventType.SUGGESTIONS_HIDDEN, ui_state=ui_state)

    async def on_suggestions_updated(self, ui_state: UIState) -> bool:
        return await self._record(EventType.SUGGESTIONS_UPDATED, ui_state=ui_state)

    async def on_suggestion_selected(self, ui_state: UIState) -> bool:
        return await self._record(EventType.SUGGESTION_SELECTED, ui_state=ui_state)
