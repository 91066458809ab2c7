# -*- coding: utf-8 -*-
"""
survey.py
研究中期问卷：进入问卷期后，第 N 次地址栏交互时延迟几秒打开问卷页面，只触发一次。
计数器存在 LocalStorage 里，跨会话保留。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union
from urllib.parse import urlencode

from .storage import LocalStorage

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 3600 * 1000

OpenUrl = Callable[[str], Union[None, Awaitable[None]]]


def _log_open_url(url: str) -> None:
    logger.info("mid-study survey url: %s", url)


class MidStudySurvey:
    def __init__(
        self,
        kv: LocalStorage,
        url: str,
        open_url: OpenUrl = _log_open_url,
        *,
        interactions: int = 2,
        delay_sec: float = 5,
    ):
        self._kv = kv
        self._url = url
        self._open_url = open_url
        self._interactions = interactions
        self._delay_sec = delay_sec
        self._pending: Optional[asyncio.Task] = None

    @property
    def survey_url(self) -> str:
        sep = "&" if "?" in self._url else "?"
        return f"{self._url}{sep}{urlencode({'reason': 'mid-study-survey'})}"

    async def start_period_if_due(self, first_run_ms: int, now_ms: int, after_days: int) -> bool:
        """首次运行满 after_days 天后进入问卷期；返回当前是否处于问卷期"""
        if await self._kv.get("midStudySurveyPeriodStarted"):
            return True
        if now_ms - first_run_ms >= after_days * MS_PER_DAY:
            await self._kv.set("midStudySurveyPeriodStarted", True)
            logger.info("mid-study survey period started")
            return True
        return False

    async def fire_if_relevant(self) -> bool:
        """
        每次交互结束后调用

        返回:
            本次是否计入了问卷期交互
        """
        if not await self._kv.get("midStudySurveyPeriodStarted"):
            return False
        if await self._kv.get("midStudySurveyFired"):
            return False

        count = int(await self._kv.get("previousInteractionsWithinMidStudySurveyPeriod", 0)) + 1
        logger.info("awesome bar interactions within the mid-study survey period: %d", count)
        if count >= self._interactions:
            logger.info("firing mid-study survey in %s seconds", self._delay_sec)
            await self._kv.set("midStudySurveyFired", True)
            self._pending = asyncio.get_running_loop().create_task(self._open_later())
        else:
            await self._kv.set("previousInteractionsWithinMidStudySurveyPeriod", count)
        return True

    async def _open_later(self) -> None:
        await asyncio.sleep(self._delay_sec)
        logger.info("firing mid-study survey")
        result = self._open_url(self.survey_url)
        if asyncio.iscoroutine(result):
            await result

    async def wait_pending(self) -> None:
        """等待已排队的问卷打开（测试/退出前用）"""
        if self._pending is not None:
            await self._pending
            self._pending = None

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
