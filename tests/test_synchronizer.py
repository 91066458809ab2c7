# -*- coding: utf-8 -*-
"""
tests/test_synchronizer.py
模型同步：
- 到下一个迭代边界的延迟
- 拉取远端模型（httpx.MockTransport）并按位置写入权重
- 失败时版本不变、照样重排下一次拉取
- 上报 payload 字段与分支的 submit 开关
"""

import asyncio
from datetime import datetime

import httpx
import pytest

from frecency_hub.frecency import FRECENCY_PREFS, FrecencyCalculator
from frecency_hub.models import ModelUpdate, RemoteModel, SyncState, TrainingExample
from frecency_hub.optimizer import FrecencyOptimizer, PairwiseLossEstimator
from frecency_hub.storage import PrefsWeightStore, init_db
from frecency_hub.study import BranchConfiguration, StudyInfo
from frecency_hub.synchronizer import ModelSynchronizer, ms_until_next_iteration
from frecency_hub.telemetry import TELEMETRY_KEYS

CLOCK = datetime(2024, 1, 1, 14, 7, 30, 500000)


class RecordingTelemetry:
    def __init__(self):
        self.sent = []

    async def send_telemetry(self, payload, submit):
        self.sent.append((payload, submit))
        return submit


def _study(model_number=1, submit=True, variation="model1"):
    return StudyInfo(
        variation=variation,
        branch=BranchConfiguration(name=variation, model_number=model_number, submit_frecency_update=submit),
        allow_enroll=True,
        testing=False,
        expired=False,
        first_run_timestamp=0,
        addon_version="2.0.0",
        study_name="federated-learning-v2",
    )


def _example():
    return TrainingExample(
        num_suggestions_displayed=3,
        rank_selected=1,
        bookmark_and_history_urls=("https://a/", "https://b/"),
        bookmark_and_history_rank_selected=0,
        num_key_down_events_at_selecteds_first_entry=2,
        num_key_down_events=4,
        interaction_duration_ms=1234,
        time_at_selecteds_first_entry=300,
        search_string_length=4,
        selected_style="favicon",
        selected_url_was_same_as_search_string=False,
        enter_was_pressed=True,
    )


async def _build(handler, study=None, override=""):
    db = await init_db(":memory:")
    store = PrefsWeightStore(db, FRECENCY_PREFS)
    await store.ensure_defaults()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    telemetry = RecordingTelemetry()
    sync = ModelSynchronizer(
        study or _study(),
        store,
        FrecencyCalculator(db, store),
        telemetry,
        {},
        model_url_endpoint_override=override,
        client=client,
        clock=lambda: CLOCK,
    )
    return db, store, client, telemetry, sync


# ---------- 调度 ----------

def test_ms_until_next_iteration_mid_period():
    assert ms_until_next_iteration(CLOCK, 5) == 149500


def test_ms_until_next_iteration_on_boundary_is_full_period():
    assert ms_until_next_iteration(datetime(2024, 1, 1, 14, 10, 0), 5) == 300000
    assert ms_until_next_iteration(datetime(2024, 1, 1, 14, 0, 0), 15) == 900000


def test_ms_until_next_iteration_just_before_boundary():
    assert ms_until_next_iteration(datetime(2024, 1, 1, 14, 59, 59, 999000), 5) == 1


def test_ms_until_next_iteration_rejects_bad_period():
    with pytest.raises(ValueError):
        ms_until_next_iteration(CLOCK, 7)
    with pytest.raises(ValueError):
        ms_until_next_iteration(CLOCK, 0)


# ---------- 拉取 / 应用 ----------

def test_fetch_applies_remote_model():
    seen = []
    model = list(range(22))

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"iteration": 7, "model": model})

    async def run():
        db, store, client, _, sync = await _build(handler)
        ok = await sync.fetch_remote_model()
        values = await store.get_all()
        await client.aclose()
        await db.close()
        return ok, sync, values

    ok, sync, values = asyncio.run(run())
    assert ok is True
    assert sync.iteration == 7
    assert sync.state.state is SyncState.SYNCED
    assert list(values.values()) == model
    assert sync.state.applied_weights == dict(zip(FRECENCY_PREFS, model))
    assert seen == ["https://public-data.telemetry.mozilla.org/federated-learning-v2/1/latest.json"]


def test_endpoint_override_wins():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"iteration": 1, "model": [0] * 22})

    async def run():
        db, _, client, _, sync = await _build(handler, override="https://models.example/test.json")
        await sync.fetch_remote_model()
        await client.aclose()
        await db.close()

    asyncio.run(run())
    assert seen == ["https://models.example/test.json"]


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"iteration": 3, "model": [1, 2, 3]}),
        httpx.Response(200, json={"iteration": -1, "model": [0] * 22}),
    ],
)
def test_failed_fetch_keeps_state_and_rearms_timer(response):
    async def run():
        db, store, client, _, sync = await _build(lambda request: response)
        task = sync.start()
        ok = await task
        armed = sync.timer_armed
        values = await store.get_all()
        await sync.stop()
        disarmed = not sync.timer_armed
        await client.aclose()
        await db.close()
        return ok, armed, disarmed, sync, values

    ok, armed, disarmed, sync, values = asyncio.run(run())
    assert ok is False
    assert armed and disarmed
    assert sync.iteration == -1
    assert sync.state.state is SyncState.UNSYNCED
    assert values == FRECENCY_PREFS
    assert sync.state.last_fetch_scheduled_at == int(CLOCK.timestamp() * 1000) + 149500


def test_network_error_is_not_raised():
    def handler(request):
        raise httpx.ConnectError("offline", request=request)

    async def run():
        db, _, client, _, sync = await _build(handler)
        ok = await sync.fetch_remote_model()
        await client.aclose()
        await db.close()
        return ok, sync.iteration

    assert asyncio.run(run()) == (False, -1)


def test_control_branch_does_not_fetch():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    async def run():
        db, _, client, _, sync = await _build(handler, study=_study(model_number=None, variation="control"))
        task = sync.start()
        await sync.stop()
        await client.aclose()
        await db.close()
        return task, sync.timer_armed

    assert asyncio.run(run()) == (None, False)
    assert calls == []


def test_control_branch_ignores_endpoint_override():
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(200, json={"iteration": 9, "model": [1] * 22})

    async def run():
        db, store, client, _, sync = await _build(
            handler,
            study=_study(model_number=None, variation="control"),
            override="https://models.example/x.json",
        )
        task = sync.start()
        await sync.stop()
        values = await store.get_all()
        await client.aclose()
        await db.close()
        return task, sync.iteration, values

    task, version, values = asyncio.run(run())
    assert task is None
    assert calls == []
    assert version == -1
    assert values == FRECENCY_PREFS


def test_failed_write_leaves_no_partial_model():
    names = list(FRECENCY_PREFS)

    def handler(request):
        return httpx.Response(200, json={"iteration": 4, "model": list(range(22))})

    async def run():
        db, store, client, _, sync = await _build(handler)
        # 第 6 个参数写不进去
        await db.execute(
            f"CREATE TRIGGER reject_pref BEFORE UPDATE ON prefs WHEN NEW.name = '{names[5]}' "
            "BEGIN SELECT RAISE(ABORT, 'pref is read-only'); END;"
        )
        await db.commit()
        ok = await sync.fetch_remote_model()
        values = await store.get_all()
        await client.aclose()
        await db.close()
        return ok, sync, values

    ok, sync, values = asyncio.run(run())
    assert ok is False
    assert sync.iteration == -1
    assert sync.state.state is SyncState.UNSYNCED
    assert values == FRECENCY_PREFS


@pytest.mark.parametrize("eps", [1, 3, 50])
def test_remote_apply_waits_for_gradient(eps):
    names = list(FRECENCY_PREFS)
    remote = RemoteModel(iteration=5, model=tuple(range(100, 122)))

    async def run():
        db, store, client, _, sync = await _build(lambda r: httpx.Response(404))
        entered = asyncio.Event()
        release = asyncio.Event()

        async def score(url):
            if not entered.is_set():
                entered.set()
                await release.wait()
            return await store.get_int_pref(names[11])

        opt = FrecencyOptimizer(sync, PairwiseLossEstimator(score), store, eps=eps)
        grad_task = asyncio.create_task(opt.compute_gradient(["a", "b"], 0))
        await entered.wait()

        # 第一个参数正处于扰动中
        apply_task = asyncio.create_task(sync.apply_remote_model(remote))
        await asyncio.sleep(0.05)
        during = (apply_task.done(), sync.iteration, await store.get_int_pref(names[0]))

        release.set()
        await grad_task
        await apply_task
        values = await store.get_all()
        await client.aclose()
        await db.close()
        return during, sync.iteration, values

    during, version, values = asyncio.run(run())
    assert during == (False, -1, FRECENCY_PREFS[names[0]] - eps)
    assert version == 5
    assert values == dict(zip(names, remote.model))


# ---------- 上报 ----------

def test_build_payload_has_all_fields():
    async def run():
        db, _, client, _, sync = await _build(lambda r: httpx.Response(404))
        payload = sync.build_payload(ModelUpdate([10, 20], 10, [0.5] * 22, _example()))
        await client.aclose()
        await db.close()
        return payload

    payload = asyncio.run(run())
    assert set(payload) == set(TELEMETRY_KEYS)
    assert payload["model_version"] == -1
    assert payload["frecency_scores"] == [10, 20]
    assert payload["bookmark_and_history_num_suggestions_displayed"] == 2
    assert payload["time_start_interaction"] == 0
    assert payload["time_end_interaction"] == 1234
    assert payload["selected_url_was_same_as_search_string"] == 0
    assert payload["enter_was_pressed"] == 1
    assert payload["study_variation"] == "model1"
    assert payload["study_addon_version"] == "2.0.0"


@pytest.mark.parametrize("submit", [True, False])
def test_local_update_respects_submit_flag(submit):
    async def run():
        db, _, client, telemetry, sync = await _build(
            lambda r: httpx.Response(404), study=_study(model_number=3, submit=submit)
        )
        sent = await sync.on_local_model_update(ModelUpdate([], 0, [0.0] * 22, _example()))
        await client.aclose()
        await db.close()
        return sent, telemetry.sent

    sent, calls = asyncio.run(run())
    assert sent is submit
    assert len(calls) == 1
    assert calls[0][1] is submit
