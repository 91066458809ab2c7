# -*- coding: utf-8 -*-
"""
synchronizer.py
本地模型与中心模型的同步：
- 每 MINUTES_PER_ITERATION 分钟（从整点起对齐）拉一次远端模型并应用
- 每次触发都按墙钟重新计算到下一个边界的延迟，不累计，不漂移
- 把优化器算出的训练信号打包上报
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import aiosqlite
import httpx

from .frecency import FrecencyCalculator
from .models import ModelState, ModelUpdate, RemoteModel, SyncState
from .storage import PrefsWeightStore
from .study import StudyInfo
from .telemetry import TelemetrySender

logger = logging.getLogger(__name__)

URL_ENDPOINT_TEMPLATE = (
    "https://public-data.telemetry.mozilla.org/federated-learning-v2/{modelNumber}/latest.json"
)
MINUTES_PER_ITERATION = 5  # 必须能整除 60


def ms_until_next_iteration(now: datetime, minutes_per_iteration: int = MINUTES_PER_ITERATION) -> int:
    """
    到下一个迭代边界的毫秒数。边界 = 从整点开始每 minutes_per_iteration 分钟一个。
    正好落在边界上时返回一个完整周期。

    例: 14:07:30.500, 5 分钟 -> 到 14:10:00.000 的 149500ms
    """
    if minutes_per_iteration <= 0 or 60 % minutes_per_iteration:
        raise ValueError(f"minutes_per_iteration must divide 60, got {minutes_per_iteration}")
    period_ms = minutes_per_iteration * 60 * 1000
    elapsed_ms = (
        ((now.minute % minutes_per_iteration) * 60 + now.second) * 1000
        + now.microsecond // 1000
    )
    return period_ms - elapsed_ms


class ModelSynchronizer:
    def __init__(
        self,
        study: StudyInfo,
        store: PrefsWeightStore,
        frecency: FrecencyCalculator,
        telemetry: TelemetrySender,
        cfg: Optional[Dict[str, Any]] = None,
        *,
        model_url_endpoint_override: str = "",
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        cfg = cfg or {}
        self.study = study
        self.branch = study.branch
        self.store = store
        self.frecency = frecency
        self.telemetry = telemetry
        self.url_endpoint_template = cfg.get("url_endpoint_template") or URL_ENDPOINT_TEMPLATE
        self.minutes_per_iteration = int(cfg.get("minutes_per_iteration", MINUTES_PER_ITERATION))
        # 提前校验周期
        ms_until_next_iteration(datetime(2000, 1, 1), self.minutes_per_iteration)
        self.model_url_endpoint_override = model_url_endpoint_override or ""
        self.state = ModelState()

        self._timeout = float(cfg.get("timeout_sec", 15.0))
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._timer: Optional[asyncio.TimerHandle] = None
        self._fetch_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def iteration(self) -> int:
        return self.state.version

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    def _client_get(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, headers={"User-Agent": "frecency-hub/1.0"}
            )
        return self._client

    # --------------- 调度 ---------------

    def start(self) -> Optional[asyncio.Task]:
        """control 分支不拉模型；其它分支立刻拉一次，之后自我重排。返回首次拉取的 task"""
        if self.branch.model_number is None:
            # control 分支即使设置了 endpoint 覆盖也不拉
            logger.info("branch %s has no remote model, synchronization disabled", self.branch.name)
            return None
        self._running = True
        self._fetch_task = asyncio.get_running_loop().create_task(self.fetch_remote_model())
        return self._fetch_task

    async def stop(self) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        task = self._fetch_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._fetch_task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def set_timer(self) -> float:
        """按墙钟算到下一个边界的延迟并挂上一次性定时器，返回秒数"""
        now = self._clock()
        delay_ms = ms_until_next_iteration(now, self.minutes_per_iteration)
        self.state.last_fetch_scheduled_at = int(now.timestamp() * 1000) + delay_ms
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(delay_ms / 1000, self._on_timer)
        logger.debug("next model fetch in %d ms", delay_ms)
        return delay_ms / 1000

    def _on_timer(self) -> None:
        self._timer = None
        if not self._running:
            return
        self._fetch_task = asyncio.get_running_loop().create_task(self.fetch_remote_model())

    # --------------- 拉取 / 应用 ---------------

    def resolve_endpoint(self) -> str:
        if self.model_url_endpoint_override:
            return self.model_url_endpoint_override
        return self.url_endpoint_template.replace("{modelNumber}", str(self.branch.model_number))

    async def fetch_remote_model(self) -> bool:
        """
        拉取并应用远端模型。网络/解析失败只放弃本轮，状态不变；
        无论成败都重新挂定时器（本周期内不重试）。

        返回:
            是否成功应用
        """
        endpoint = self.resolve_endpoint()
        logger.info("Fetching model from %s", endpoint)
        try:
            resp = await self._client_get().get(endpoint)
            resp.raise_for_status()
            remote = RemoteModel.from_json(resp.json(), len(self.store.names))
            await self.apply_remote_model(remote)
            return True
        except (httpx.HTTPError, ValueError, aiosqlite.Error) as e:
            logger.warning("model fetch from %s failed, keeping version %d: %r", endpoint, self.state.version, e)
            return False
        finally:
            if self._running:
                self.set_timer()

    async def apply_remote_model(self, remote: RemoteModel) -> None:
        """按位置写入权重参数，版本号更新为 iteration，然后重算所有 frecency"""
        logger.debug("remote model: iteration=%d model=%s", remote.iteration, list(remote.model))
        names = self.store.names
        if len(remote.model) != len(names):
            raise ValueError(f"model has {len(remote.model)} weights, expected {len(names)}")

        logger.info("Applying frecency weights (iteration %d)", remote.iteration)
        async with self.store.lock:
            await self.store.set_many(dict(zip(names, remote.model)))
            self.state.version = remote.iteration
            self.state.applied_weights = dict(zip(names, remote.model))
            self.state.state = SyncState.SYNCED

        logger.info("Updating all frecencies")
        await self.frecency.update_all_frecencies()

    # --------------- 上报 ---------------

    def build_payload(self, update: ModelUpdate) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model_version": self.state.version,
            "frecency_scores": list(update.frecency_scores),
            "loss": update.loss,
            "update": list(update.weights),
        }
        payload.update(update.example.as_payload_fields())
        payload["study_variation"] = self.study.variation
        payload["study_addon_version"] = self.study.addon_version
        return payload

    async def on_local_model_update(self, update: ModelUpdate) -> bool:
        logger.info("Local model was updated (loss=%s)", update.loss)
        payload = self.build_payload(update)
        return await self.telemetry.send_telemetry(
            payload, submit=self.branch.submit_frecency_update
        )
