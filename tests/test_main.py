# -*- coding: utf-8 -*-
"""
tests/test_main.py
主流程：启动阶段出错时也要取消任务、关闭连接。
"""

import asyncio

import pytest

from frecency_hub.config import load_cfg
from frecency_hub.main import main


def test_main_cleans_up_when_event_file_missing(tmp_path):
    cfg = load_cfg(tmp_path / "missing.yml")
    cfg["storage"]["db_path"] = str(tmp_path / "frecency.db")
    cfg["testing"]["variation_name"] = "control"

    async def run():
        with pytest.raises(FileNotFoundError):
            await main(run_seconds=1, events_path=tmp_path / "nope.jsonl", cfg=cfg)
        current = asyncio.current_task()
        return [t for t in asyncio.all_tasks() if t is not current and not t.done()]

    assert asyncio.run(run()) == []


def test_main_replays_events_and_exits(tmp_path):
    cfg = load_cfg(tmp_path / "missing.yml")
    cfg["storage"]["db_path"] = str(tmp_path / "frecency.db")
    cfg["testing"]["variation_name"] = "control"
    events = tmp_path / "events.jsonl"
    events.write_text(
        '{"type": "focus", "timestamp": 0, "ui_state": {"search_string": "ab"}}\n'
        '{"type": "key_down", "timestamp": 5, "key": "a"}\n'
        '{"type": "blur", "timestamp": 9}\n',
        encoding="utf-8",
    )

    asyncio.run(main(run_seconds=1, events_path=events, cfg=cfg))
    assert (tmp_path / "frecency.db").exists()
