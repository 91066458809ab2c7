# -*- coding: utf-8 -*-
"""
frecency.py
按当前权重参数计算 URL 的 frecency（频率 + 最近程度）。
算法参照 Firefox places：取最近 10 次访问，按访问类型给加分、按距今天数分桶加权。
每次计算都实时读取 prefs，所以优化器扰动权重后立刻生效。
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Dict, List, Tuple

import aiosqlite

from .storage import (
    PrefsWeightStore,
    TRANSITION_BOOKMARK,
    TRANSITION_DOWNLOAD,
    TRANSITION_EMBED,
    TRANSITION_FRAMED_LINK,
    TRANSITION_LINK,
    TRANSITION_REDIRECT_PERMANENT,
    TRANSITION_REDIRECT_TEMPORARY,
    TRANSITION_RELOAD,
    TRANSITION_TYPED,
)
from .utils import now_ms

logger = logging.getLogger(__name__)

PREF_PREFIX = "places.frecency."
NUM_VISITS_SAMPLED = 10
MS_PER_DAY = 24 * 3600 * 1000

# 参与训练的 22 个参数及 Firefox 默认值（顺序即远端模型的位置顺序）
FRECENCY_PREFS: Dict[str, int] = {
    PREF_PREFIX + "firstBucketCutoff": 4,
    PREF_PREFIX + "secondBucketCutoff": 14,
    PREF_PREFIX + "thirdBucketCutoff": 31,
    PREF_PREFIX + "fourthBucketCutoff": 90,
    PREF_PREFIX + "firstBucketWeight": 100,
    PREF_PREFIX + "secondBucketWeight": 70,
    PREF_PREFIX + "thirdBucketWeight": 50,
    PREF_PREFIX + "fourthBucketWeight": 30,
    PREF_PREFIX + "defaultBucketWeight": 10,
    PREF_PREFIX + "embedVisitBonus": 0,
    PREF_PREFIX + "framedLinkVisitBonus": 0,
    PREF_PREFIX + "linkVisitBonus": 100,
    PREF_PREFIX + "typedVisitBonus": 2000,
    PREF_PREFIX + "bookmarkVisitBonus": 75,
    PREF_PREFIX + "downloadVisitBonus": 0,
    PREF_PREFIX + "permRedirectVisitBonus": 0,
    PREF_PREFIX + "tempRedirectVisitBonus": 0,
    PREF_PREFIX + "redirectSourceVisitBonus": 25,
    PREF_PREFIX + "defaultVisitBonus": 0,
    PREF_PREFIX + "unvisitedBookmarkBonus": 140,
    PREF_PREFIX + "unvisitedTypedBonus": 200,
    PREF_PREFIX + "reloadVisitBonus": 0,
}

_TRANSITION_BONUS = {
    TRANSITION_LINK: "linkVisitBonus",
    TRANSITION_TYPED: "typedVisitBonus",
    TRANSITION_BOOKMARK: "bookmarkVisitBonus",
    TRANSITION_EMBED: "embedVisitBonus",
    TRANSITION_REDIRECT_PERMANENT: "permRedirectVisitBonus",
    TRANSITION_REDIRECT_TEMPORARY: "tempRedirectVisitBonus",
    TRANSITION_DOWNLOAD: "downloadVisitBonus",
    TRANSITION_FRAMED_LINK: "framedLinkVisitBonus",
    TRANSITION_RELOAD: "reloadVisitBonus",
}

_REDIRECTS = (TRANSITION_REDIRECT_PERMANENT, TRANSITION_REDIRECT_TEMPORARY)


class FrecencyCalculator:
    """外部打分函数的本地实现：calculate_by_url / update_all_frecencies"""

    def __init__(
        self,
        db: aiosqlite.Connection,
        store: PrefsWeightStore,
        now: Callable[[], int] = now_ms,
    ):
        self._db = db
        self._store = store
        self._now = now

    async def _weights(self) -> Dict[str, int]:
        # 不在 store 里的参数（配置只训练一部分时）按默认值算
        merged = dict(FRECENCY_PREFS)
        merged.update(await self._store.get_all())
        return {name[len(PREF_PREFIX):]: v for name, v in merged.items() if name.startswith(PREF_PREFIX)}

    async def calculate_by_url(self, url: str) -> int:
        """
        计算单个 URL 的 frecency；历史里没有这个 URL 返回 0
        """
        async with self._db.execute(
            "SELECT id, visit_count, typed, bookmarked FROM places WHERE url = ?;", (url,)
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            return 0
        return await self._calculate(row, await self._weights())

    async def update_all_frecencies(self) -> int:
        """
        用当前权重重算所有 place 的缓存 frecency

        返回:
            更新的条数
        """
        weights = await self._weights()
        async with self._db.execute("SELECT id, visit_count, typed, bookmarked FROM places;") as cur:
            rows = await cur.fetchall()
        updates: List[Tuple[int, int]] = []
        for row in rows:
            updates.append((await self._calculate(row, weights), row[0]))
        await self._db.executemany("UPDATE places SET frecency = ? WHERE id = ?;", updates)
        await self._db.commit()
        logger.info("updated frecency for %d places", len(updates))
        return len(updates)

    async def _calculate(self, row, w: Dict[str, int]) -> int:
        place_id, visit_count, typed, bookmarked = row
        async with self._db.execute(
            "SELECT visit_date, transition FROM visits WHERE place_id = ? "
            "ORDER BY visit_date DESC LIMIT ?;",
            (place_id, NUM_VISITS_SAMPLED),
        ) as cur:
            visits = await cur.fetchall()

        if not visits:
            # 没访问过：只看书签 / 手输加分
            bonus = 0
            if bookmarked:
                bonus += w["unvisitedBookmarkBonus"]
            if typed:
                bonus += w["unvisitedTypedBonus"]
            if bonus <= 0:
                return 0
            return math.ceil(w["firstBucketWeight"] * bonus / 100)

        now = self._now()
        points = 0.0
        for visit_date, transition in visits:
            bonus = w.get(_TRANSITION_BONUS.get(transition, "defaultVisitBonus"), 0)
            if transition in _REDIRECTS:
                bonus += w["redirectSourceVisitBonus"]
            if bookmarked and transition != TRANSITION_BOOKMARK:
                bonus += w["bookmarkVisitBonus"]
            points += self._bucket_weight(now - visit_date, w) * bonus / 100

        return math.ceil(visit_count * math.ceil(points) / len(visits))

    @staticmethod
    def _bucket_weight(age_ms: int, w: Dict[str, int]) -> int:
        age_days = age_ms / MS_PER_DAY
        if age_days <= w["firstBucketCutoff"]:
            return w["firstBucketWeight"]
        if age_days <= w["secondBucketCutoff"]:
            return w["secondBucketWeight"]
        if age_days <= w["thirdBucketCutoff"]:
            return w["thirdBucketWeight"]
        if age_days <= w["fourthBucketCutoff"]:
            return w["fourthBucketWeight"]
        return w["defaultBucketWeight"]
