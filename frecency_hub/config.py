# frecency_hub/config.py
# 默认配置 + ops/config.yml 合并

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .frecency import FRECENCY_PREFS

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parents[1]
CONFIG_ENV = "FRECENCY_HUB_CONFIG"

DEFAULT_CFG: Dict[str, Dict[str, Any]] = {
    "storage": {
        "db_path": "frecency.db",
    },
    "study": {
        "name": "federated-learning-v2",
        "addon_version": "2.0.0",
        "study_type": "shield",
        "expire_days": 28,
        "client_id": "",
        "data_permissions": {"shield": True, "pioneer": False},
        "permanent_private_browsing": False,
        "weighted_variations": [
            {"name": "control", "weight": 0.2},
            {"name": "model1", "weight": 0.2},
            {"name": "model2", "weight": 0.2},
            {"name": "model3-submitting", "weight": 0.1},
            {"name": "model3-not-submitting", "weight": 0.1},
            {"name": "model4-submitting", "weight": 0.1},
            {"name": "model4-not-submitting", "weight": 0.1},
        ],
        # model_number 为空表示不同步远端模型
        "branches": {
            "control": {"model_number": None, "submit_frecency_update": True},
            "model1": {"model_number": 1, "submit_frecency_update": True},
            "model2": {"model_number": 2, "submit_frecency_update": True},
            "model3-submitting": {"model_number": 3, "submit_frecency_update": True},
            "model3-not-submitting": {"model_number": 3, "submit_frecency_update": False},
            "model4-submitting": {"model_number": 4, "submit_frecency_update": True},
            "model4-not-submitting": {"model_number": 4, "submit_frecency_update": False},
        },
        "mid_study_survey": {
            "url": "https://qsurvey.mozilla.com/s3/URL-bar-satisfaction-survey/",
            "after_days": 7,
            "interactions": 2,
            "delay_sec": 5,
        },
    },
    # 测试覆盖项；任意一项设置后上报会带 testing 标记
    "testing": {
        "variation_name": None,
        "first_run_timestamp": None,
        "expired": None,
        "model_url_endpoint_override": "",
    },
    "synchronization": {
        "url_endpoint_template": (
            "https://public-data.telemetry.mozilla.org/federated-learning-v2/{modelNumber}/latest.json"
        ),
        "minutes_per_iteration": 5,
        "timeout_sec": 15.0,
    },
    "optimizer": {
        "eps": 1,
    },
    "frecency": {
        "prefs": dict(FRECENCY_PREFS),
    },
    "telemetry": {
        "notify_channels": ["log"],
        "endpoint": "",
        "remove_testing_flag": True,
        "retry": {"max_times": 3, "backoff_sec": 2},
    },
    "privacy": {
        "private_browsing": False,
    },
    "logging": {
        "level": "INFO",
    },
}


def load_cfg(path: Optional[Union[str, Path]] = None) -> Dict[str, Dict[str, Any]]:
    """
    读取配置；优先参数 path，其次环境变量，最后 ops/config.yml。
    文件不存在就用默认，读失败记日志后也用默认。
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV) or ROOT / "ops" / "config.yml"
    cfg_path = Path(path)
    out = {section: dict(values) for section, values in DEFAULT_CFG.items()}
    if not cfg_path.exists():
        return out
    try:
        data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("读取 %s 失败，使用默认配置。err=%s", cfg_path, e)
        return out
    # 按段浅合并，避免过度魔法
    for section, values in data.items():
        if isinstance(values, dict) and section in out:
            out[section] = {**out[section], **values}
        else:
            out[section] = values
    return out
