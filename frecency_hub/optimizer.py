# -*- coding: utf-8 -*-
"""
optimizer.py
frecency 权重的在线优化：
- PairwiseLossEstimator：成对 hinge loss（SVM 风格）
- FrecencyOptimizer：逐个参数 ±eps 扰动做有限差分，得到梯度估计后交给同步器上报
扰动后的参数无论成功失败都必须恢复原值。
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from .errors import InvalidIndex
from .models import ModelUpdate, TrainingExample
from .storage import PrefsWeightStore

logger = logging.getLogger(__name__)

ScoreFn = Callable[[str], Awaitable[int]]


class PairwiseLossEstimator:
    """
    loss = Σ max(0, score[i] - score[correct])
    correct 已经是最高分（并列也算）时 loss 为 0。
    """

    def __init__(self, score_fn: ScoreFn):
        self._score_fn = score_fn

    async def scores(self, urls: Sequence[str]) -> List[int]:
        return [await self._score_fn(url) for url in urls]

    async def loss(self, urls: Sequence[str], correct: Optional[int]) -> float:
        """
        参数:
            urls: 书签/历史候选 URL，按展示顺序
            correct: 用户选中的那个在 urls 里的下标；None / -1 表示没有选中项

        返回:
            非负 loss；没有可比较的对象时为 0
        """
        if not urls:
            return 0
        if correct is None or correct == -1:
            # 没选中书签/历史项，不存在“正确”的那一个
            return 0
        if not 0 <= correct < len(urls):
            raise InvalidIndex(f"correct index {correct} out of range for {len(urls)} candidates")

        frecencies = await self.scores(urls)
        correct_frecency = frecencies[correct]
        loss = 0
        for frecency in frecencies:
            if frecency > correct_frecency:
                loss += frecency - correct_frecency
        return loss


class FrecencyOptimizer:
    """对一条训练样本做一步有限差分梯度估计"""

    def __init__(
        self,
        synchronizer,
        loss_estimator: PairwiseLossEstimator,
        store: PrefsWeightStore,
        eps: int = 1,
    ):
        if not isinstance(eps, int) or eps <= 0:
            raise ValueError(f"eps must be a positive integer, got {eps!r}")
        self.synchronizer = synchronizer
        self.loss_estimator = loss_estimator
        self.store = store
        self.eps = eps

    async def step(self, example: TrainingExample) -> None:
        """
        计算当前 loss 和梯度，连同样本上下文交给同步器上报。
        出错时记录日志并重新抛出，不上报任何东西。
        """
        urls = list(example.bookmark_and_history_urls)
        correct = example.bookmark_and_history_rank_selected
        logger.debug(
            "optimizer step: num_suggestions_displayed=%s rank_selected=%s bh_urls=%s bh_rank=%s",
            example.num_suggestions_displayed,
            example.rank_selected,
            urls,
            correct,
        )
        try:
            # 分数、loss、梯度在同一组权重下算出
            async with self.store.lock:
                frecency_scores = await self.loss_estimator.scores(urls)
                loss = await self.loss_estimator.loss(urls, correct)
                weights = await self._gradient(urls, correct)
        except Exception:
            logger.exception("optimizer step failed: urls=%s correct=%s", urls, correct)
            raise

        await self.synchronizer.on_local_model_update(
            ModelUpdate(
                frecency_scores=frecency_scores,
                loss=loss,
                weights=weights,
                example=example,
            )
        )

    async def compute_gradient(self, urls: Sequence[str], correct: Optional[int]) -> List[float]:
        """
        对每个参数 p：v-eps 和 v+eps 各算一次 loss，分量 = (loss_low - loss_high) / (2*eps)

        整个过程持有 store.lock，远端模型的覆盖写不会插进来。
        """
        async with self.store.lock:
            return await self._gradient(urls, correct)

    async def _gradient(self, urls: Sequence[str], correct: Optional[int]) -> List[float]:
        # 调用方已持有 store.lock
        gradient: List[float] = []
        for pref in self.store.names:
            current = await self.store.get_int_pref(pref)

            async with self.store.perturbed(pref, current - self.eps):
                loss_low = await self.loss_estimator.loss(urls, correct)

            async with self.store.perturbed(pref, current + self.eps):
                loss_high = await self.loss_estimator.loss(urls, correct)

            gradient.append((loss_low - loss_high) / (2 * self.eps))
        return gradient
