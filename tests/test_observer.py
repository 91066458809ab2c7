# -*- coding: utf-8 -*-
"""
tests/test_observer.py
端到端：事件 -> 分类 -> 优化器 -> 上报
- 一次选中交互产生一条完整上报
- 隐私浏览时不记录
- 没有 focus 的交互不上报
- 单次交互出错不会让事件循环退出
"""

import asyncio

from frecency_hub.frecency import FRECENCY_PREFS, FrecencyCalculator
from frecency_hub.main import run_observer_loop
from frecency_hub.models import Event, EventType, KeyInfo, Suggestion, UIState
from frecency_hub.observer import AwesomeBarObserver, ConfigPrivacyGate
from frecency_hub.optimizer import FrecencyOptimizer, PairwiseLossEstimator
from frecency_hub.storage import PrefsWeightStore, TRANSITION_TYPED, add_visit, init_db
from frecency_hub.study import BranchConfiguration, StudyInfo
from frecency_hub.synchronizer import ModelSynchronizer
from frecency_hub.telemetry import TELEMETRY_KEYS

NOW = 1_700_000_000_000

SUGGESTIONS = (
    Suggestion("moz-action:searchengine,{}", "action searchengine"),
    Suggestion("https://example.com/", "favicon"),
    Suggestion("https://example.org/", "bookmark"),
)


class RecordingTelemetry:
    def __init__(self):
        self.sent = []

    async def send_telemetry(self, payload, submit):
        self.sent.append(payload)
        return submit


async def _observer(private=False):
    db = await init_db(":memory:")
    store = PrefsWeightStore(db, FRECENCY_PREFS)
    await store.ensure_defaults()
    frecency = FrecencyCalculator(db, store, now=lambda: NOW)
    await add_visit(db, "https://example.org/", NOW - 1000, TRANSITION_TYPED)
    telemetry = RecordingTelemetry()
    study = StudyInfo(
        variation="model1",
        branch=BranchConfiguration("model1", 1, True),
        allow_enroll=True,
        testing=False,
        expired=False,
        first_run_timestamp=0,
        addon_version="2.0.0",
        study_name="federated-learning-v2",
    )
    sync = ModelSynchronizer(study, store, frecency, telemetry, {})
    optimizer = FrecencyOptimizer(sync, PairwiseLossEstimator(frecency.calculate_by_url), store)
    observer = AwesomeBarObserver(optimizer, ConfigPrivacyGate(private))
    return db, store, telemetry, observer


def _selection_session():
    typed = UIState(search_string="example.com", search_string_length=11,
                    num_suggestions_displayed=3, suggestions=SUGGESTIONS)
    return [
        Event(EventType.FOCUS, 1000, ui_state=UIState()),
        Event(EventType.KEY_DOWN, 1100, key_info=KeyInfo("e")),
        Event(EventType.INPUT, 1110, ui_state=UIState(search_string="e", search_string_length=1)),
        Event(EventType.SUGGESTIONS_UPDATED, 1150, ui_state=typed),
        Event(EventType.KEY_DOWN, 1800, key_info=KeyInfo("Enter")),
        Event(EventType.KEY_PRESS, 1801, key_info=KeyInfo("Enter")),
        Event(EventType.SUGGESTION_SELECTED, 1802, ui_state=UIState(
            search_string="example.com", search_string_length=11,
            num_suggestions_displayed=3, suggestions=SUGGESTIONS, rank_selected=1)),
        Event(EventType.BLUR, 2000, ui_state=UIState()),
    ]


def test_selection_interaction_is_reported():
    async def run():
        db, store, telemetry, observer = await _observer()
        recorded = [await observer.observe(e) for e in _selection_session()]
        weights = await store.get_all()
        await db.close()
        return recorded, telemetry.sent, weights

    recorded, sent, weights = asyncio.run(run())
    assert all(recorded)
    assert len(sent) == 1
    payload = sent[0]
    assert set(payload) == set(TELEMETRY_KEYS)
    assert payload["model_version"] == -1
    assert payload["num_suggestions_displayed"] == 3
    assert payload["rank_selected"] == 1
    assert payload["bookmark_and_history_num_suggestions_displayed"] == 2
    assert payload["bookmark_and_history_rank_selected"] == 0
    assert payload["num_key_down_events"] == 1
    assert payload["num_key_down_events_at_selecteds_first_entry"] == 1
    assert payload["time_end_interaction"] == 1000
    assert payload["time_at_selecteds_first_entry"] == 150
    assert payload["selected_url_was_same_as_search_string"] == 1
    assert payload["enter_was_pressed"] == 1
    assert payload["selected_style"] == "favicon"
    # example.com 没有历史得 0 分，example.org 有一次 typed 访问
    assert payload["frecency_scores"] == [0, 2000]
    assert payload["loss"] == 2000
    assert len(payload["update"]) == len(FRECENCY_PREFS)
    assert weights == FRECENCY_PREFS


def test_private_browsing_records_nothing():
    async def run():
        db, _, telemetry, observer = await _observer(private=True)
        recorded = [await observer.observe(e) for e in _selection_session()]
        await db.close()
        return recorded, len(observer.log), telemetry.sent

    recorded, log_len, sent = asyncio.run(run())
    assert not any(recorded)
    assert log_len == 0
    assert sent == []


def test_session_without_focus_not_reported():
    async def run():
        db, _, telemetry, observer = await _observer()
        for e in _selection_session()[1:]:
            await observer.observe(e)
        await db.close()
        return telemetry.sent

    assert asyncio.run(run()) == []


def test_convenience_handlers_use_clock():
    async def run():
        db, _, telemetry, observer = await _observer()
        ticks = iter(range(0, 1000, 100))
        observer.clock = lambda: next(ticks)
        await observer.on_focus(UIState(search_string="ab", search_string_length=2))
        await observer.on_key_down("c")
        await observer.on_key_press("c")
        await observer.on_input(UIState(search_string="abc", search_string_length=3))
        await observer.on_blur(UIState())
        await db.close()
        return telemetry.sent

    sent = asyncio.run(run())
    assert len(sent) == 1
    assert sent[0]["num_suggestions_displayed"] == 0
    assert sent[0]["search_string_length"] == 2
    assert sent[0]["time_end_interaction"] == 400


class FailingOptimizer:
    async def step(self, example):
        raise RuntimeError("optimizer broke")


def test_loop_survives_failed_interaction():
    async def run():
        observer = AwesomeBarObserver(FailingOptimizer(), ConfigPrivacyGate(False))
        q = asyncio.Queue()
        task = asyncio.create_task(run_observer_loop(q, observer))
        for e in _selection_session() + _selection_session():
            await q.put(e)
        await q.join()
        alive = not task.done()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return alive

    assert asyncio.run(run()) is True
