"""
frecency_hub/telemetry.py
上报模块：把每次交互的训练信号发到遥测接收端（或回退到日志）
- 上报前校验 payload 字段齐全
- 分支关闭 submit 时只在本地训练，不上报
- HTTP 通道：429/5xx/网络错误按指数退避 + 抖动重试
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

TELEMETRY_KEYS = (
    "model_version",
    "frecency_scores",
    "loss",
    "update",
    "num_suggestions_displayed",
    "rank_selected",
    "bookmark_and_history_num_suggestions_displayed",
    "bookmark_and_history_rank_selected",
    "num_key_down_events_at_selecteds_first_entry",
    "num_key_down_events",
    "time_start_interaction",
    "time_end_interaction",
    "time_at_selecteds_first_entry",
    "search_string_length",
    "selected_style",
    "selected_url_was_same_as_search_string",
    "enter_was_pressed",
    "study_variation",
    "study_addon_version",
)

PING_TYPE = "shield-study-addon"


# ------------------------------------------------------------
# 渠道适配器
# ------------------------------------------------------------

class _HttpAdapter:
    def __init__(self, endpoint: str, retry: Dict[str, int], client: Optional[httpx.AsyncClient] = None):
        self._endpoint = endpoint
        self._retry = retry
        self._client = client
        self._owns_client = client is None

    def _client_get(self) -> httpx.AsyncClient:
        # 复用连接池，读系统代理
        if self._client is None:
            timeout = httpx.Timeout(connect=5.0, read=10.0, write=10.0, pool=30.0)
            self._client = httpx.AsyncClient(timeout=timeout, trust_env=True)
        return self._client

    async def send(self, ping: Dict[str, Any]) -> bool:
        """尊重 429/5xx；最终失败才记一条 warning"""
        max_times = int(self._retry.get("max_times", 3))
        backoff = float(self._retry.get("backoff_sec", 2))

        last_err = None
        for attempt in range(1, max_times + 1):
            try:
                r = await self._client_get().post(self._endpoint, json=ping)
                if 200 <= r.status_code < 300:
                    return True

                if r.status_code == 429 or 500 <= r.status_code < 600:
                    retry_after = 0
                    try:
                        retry_after = int(r.headers.get("Retry-After", 0))
                    except ValueError:
                        pass
                    sleep_sec = retry_after or (backoff * (2 ** (attempt - 1)))
                    sleep_sec = min(sleep_sec, 30) + random.uniform(0, 0.6)
                    last_err = f"http {r.status_code}"
                    if attempt < max_times:
                        await asyncio.sleep(sleep_sec)
                    continue

                # 其他 4xx：直接失败
                last_err = f"http {r.status_code}: {(r.text or '')[:300]}"
                break

            except httpx.HTTPError as e:
                last_err = repr(e)
                if attempt < max_times:
                    sleep_sec = backoff * (2 ** (attempt - 1)) + random.uniform(0, 0.6)
                    await asyncio.sleep(min(sleep_sec, 20))

        logger.warning("telemetry send failed after %d attempts: %s", max_times, last_err)
        return False

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


class _LogAdapter:
    async def send(self, ping: Dict[str, Any]) -> bool:
        logger.info("telemetry ping: %s", json.dumps(ping, ensure_ascii=False))
        return True

    async def close(self) -> None:
        return


# ------------------------------------------------------------
# TelemetrySender 主体
# ------------------------------------------------------------

class TelemetrySender:
    def __init__(
        self,
        cfg: Dict[str, Any],
        *,
        study_name: str = "",
        testing: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._cfg = cfg
        self._study_name = study_name
        # 任一测试覆盖生效时保留 testing 标记
        self._testing = testing or not bool(cfg.get("remove_testing_flag", True))

        endpoint = (cfg.get("endpoint") or "").strip()
        channels = cfg.get("notify_channels") or []
        if "http" in channels and endpoint:
            self._adapter = _HttpAdapter(endpoint, cfg.get("retry") or {}, client)
            self.channel = "http"
        else:
            self._adapter = _LogAdapter()
            self.channel = "log"
            if "http" in channels:
                logger.warning("telemetry endpoint 缺失，自动降级为日志输出")

    @property
    def testing(self) -> bool:
        return self._testing

    async def send_telemetry(self, payload: Dict[str, Any], submit: bool) -> bool:
        """
        参数:
            payload: 扁平的训练信号记录，字段见 TELEMETRY_KEYS
            submit: 分支是否允许上报

        返回:
            是否真正发出
        """
        missing = [k for k in TELEMETRY_KEYS if k not in payload]
        if missing:
            raise ValueError(f"telemetry payload missing keys: {missing}")
        if not submit:
            logger.debug("branch does not submit frecency updates, skipping telemetry")
            return False
        ping = {
            "type": PING_TYPE,
            "study_name": self._study_name,
            "testing": self._testing,
            "payload": payload,
        }
        return await self._adapter.send(ping)

    async def close(self) -> None:
        await self._adapter.close()
