# -*- coding: utf-8 -*-
"""
study.py
研究（实验）配置：分支选择、入组资格、过期判断、测试覆盖项。
分支决定同步哪个远端模型、是否上报训练信号。
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .storage import LocalStorage
from .utils import now_ms, to_ms

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 3600 * 1000


@dataclass(frozen=True)
class BranchConfiguration:
    name: str
    model_number: Optional[int]
    submit_frecency_update: bool


@dataclass(frozen=True)
class StudyInfo:
    variation: str
    branch: BranchConfiguration
    allow_enroll: bool
    testing: bool
    expired: bool
    first_run_timestamp: int
    addon_version: str
    study_name: str


def branch_configuration(cfg: Dict[str, Any], variation: str) -> BranchConfiguration:
    branches = cfg["study"].get("branches") or {}
    if variation not in branches:
        raise KeyError(f"unknown study variation: {variation}")
    raw = branches[variation] or {}
    model_number = raw.get("model_number")
    return BranchConfiguration(
        name=variation,
        model_number=int(model_number) if model_number is not None else None,
        submit_frecency_update=bool(raw.get("submit_frecency_update", True)),
    )


def choose_variation(weighted_variations: List[Dict[str, Any]], client_id: str) -> str:
    """
    按权重确定性地选分支：client_id 的 sha256 映射到 [0, 1)

    参数:
        weighted_variations: [{"name": ..., "weight": ...}, ...]
        client_id: 客户端标识

    返回:
        分支名
    """
    if not weighted_variations:
        raise ValueError("no weighted variations configured")
    digest = hashlib.sha256(client_id.encode("utf-8")).hexdigest()
    fraction = int(digest[:12], 16) / float(16 ** 12)
    total = sum(float(v.get("weight", 0)) for v in weighted_variations)
    if total <= 0:
        raise ValueError("variation weights must sum to a positive number")
    acc = 0.0
    for v in weighted_variations:
        acc += float(v.get("weight", 0)) / total
        if fraction < acc:
            return v["name"]
    return weighted_variations[-1]["name"]


def is_currently_eligible(cfg: Dict[str, Any]) -> bool:
    study = cfg["study"]
    permissions = study.get("data_permissions") or {}
    allowed = bool(permissions.get(study.get("study_type", "shield"), False))
    # 永久隐私浏览的用户不入组
    if study.get("permanent_private_browsing"):
        logger.info("permanent private browsing, not eligible")
        allowed = False
    return allowed


async def was_eligible_at_first_run(kv: LocalStorage, cfg: Dict[str, Any]) -> bool:
    """首次运行时算一次并缓存，之后直接用缓存的 True"""
    if await kv.get("allowedEnrollOnFirstRun") is True:
        return True
    allowed = is_currently_eligible(cfg)
    await kv.set("allowedEnrollOnFirstRun", allowed)
    return allowed


async def setup_study(cfg: Dict[str, Any], kv: LocalStorage, now: Optional[int] = None) -> StudyInfo:
    """
    组装研究信息：资格、分支、首次运行时间、过期、测试标记
    """
    now = now_ms() if now is None else now
    study = cfg["study"]
    testing_cfg = cfg.get("testing") or {}
    testing = False

    allow_enroll = await was_eligible_at_first_run(kv, cfg)

    # 首次运行时间
    first_run = testing_cfg.get("first_run_timestamp")
    if first_run is not None:
        logger.info("Note: firstRunTimestamp is set to %r for testing purposes", first_run)
        first_run = to_ms(first_run)
        testing = True
    else:
        first_run = await kv.get("firstRunTimestamp")
        if first_run is None:
            first_run = now
            await kv.set("firstRunTimestamp", first_run)

    # 分支
    variation = testing_cfg.get("variation_name")
    if variation:
        logger.info('Note: the branch/variation is overridden for testing purposes ("%s")', variation)
        testing = True
    else:
        variation = await kv.get("variation")
        if variation is None:
            client_id = study.get("client_id") or await _client_id(kv)
            variation = choose_variation(study.get("weighted_variations") or [], client_id)
            await kv.set("variation", variation)
    branch = branch_configuration(cfg, variation)

    # 过期
    expired = testing_cfg.get("expired")
    if expired is not None:
        logger.info("Note: the expired flag is set to %r for testing purposes", expired)
        expired = bool(expired)
        testing = True
    else:
        expired = now - first_run > int(study.get("expire_days", 28)) * MS_PER_DAY

    override = testing_cfg.get("model_url_endpoint_override") or ""
    if override:
        logger.info('Note: the model url endpoint is overridden for testing purposes ("%s")', override)
        testing = True

    info = StudyInfo(
        variation=variation,
        branch=branch,
        allow_enroll=allow_enroll,
        testing=testing,
        expired=expired,
        first_run_timestamp=first_run,
        addon_version=str(study.get("addon_version", "")),
        study_name=str(study.get("name", "")),
    )
    logger.info(
        "study setup: variation=%s allow_enroll=%s expired=%s testing=%s",
        info.variation, info.allow_enroll, info.expired, info.testing,
    )
    return info


async def _client_id(kv: LocalStorage) -> str:
    client_id = await kv.get("clientId")
    if client_id is None:
        client_id = str(uuid.uuid4())
        await kv.set("clientId", client_id)
    return client_id
