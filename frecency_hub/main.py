# frecency_hub/main.py
# 串起：事件源 -> observer(分类 + 优化器) -> synchronizer(上报) ；synchronizer 定时拉远端模型

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .config import load_cfg
from .frecency import FrecencyCalculator
from .models import Event
from .observer import AwesomeBarObserver, ConfigPrivacyGate
from .optimizer import FrecencyOptimizer, PairwiseLossEstimator
from .parsers.dummy_gen import generate_session
from .parsers.json_events import parse_event, parse_jsonl
from .storage import LocalStorage, PrefsWeightStore, init_db
from .study import setup_study
from .survey import MidStudySurvey
from .synchronizer import ModelSynchronizer
from .telemetry import TelemetrySender
from .utils import now_ms

logger = logging.getLogger(__name__)


async def run_observer_loop(q_events: "asyncio.Queue", observer: AwesomeBarObserver) -> None:
    """
    把队列里的事件交给 observer。单次交互处理失败只丢弃这次交互，循环继续。
    """
    logger.info("observer loop started")
    try:
        while True:
            ev: Event = await q_events.get()
            try:
                await observer.observe(ev)
            except Exception as e:
                logger.error("interaction dropped after error: %r", e)
            finally:
                q_events.task_done()
    except asyncio.CancelledError:
        logger.info("observer loop cancelled")
        raise


async def replay_events(path: Path, q_events: "asyncio.Queue") -> int:
    """按原时间戳顺序回放 JSONL 事件文件"""
    events = parse_jsonl(path.read_text(encoding="utf-8"))
    for ev in events:
        await q_events.put(ev)
    logger.info("queued %d events from %s", len(events), path)
    return len(events)


async def run_demo_source(q_events: "asyncio.Queue", every_sec: float = 10.0) -> None:
    """定期生成一段模拟交互"""
    logger.info("demo event source started")
    try:
        while True:
            for raw in generate_session(now_ms()):
                await q_events.put(parse_event(raw))
            await asyncio.sleep(every_sec)
    except asyncio.CancelledError:
        logger.info("demo event source cancelled")
        raise


async def main(
    run_seconds: int = 30,
    events_path: Optional[Path] = None,
    demo: bool = False,
    cfg: Optional[Dict[str, Any]] = None,
) -> None:
    cfg = cfg or load_cfg()

    db = await init_db(cfg["storage"]["db_path"])
    kv = LocalStorage(db)
    store = PrefsWeightStore(db, cfg["frecency"]["prefs"])
    await store.ensure_defaults()
    frecency = FrecencyCalculator(db, store)

    study = await setup_study(cfg, kv)
    if not study.allow_enroll or study.expired:
        logger.info("not running study (allow_enroll=%s expired=%s)", study.allow_enroll, study.expired)
        await db.close()
        return

    telemetry = TelemetrySender(cfg["telemetry"], study_name=study.study_name, testing=study.testing)
    synchronizer = ModelSynchronizer(
        study,
        store,
        frecency,
        telemetry,
        cfg["synchronization"],
        model_url_endpoint_override=(cfg.get("testing") or {}).get("model_url_endpoint_override") or "",
    )
    optimizer = FrecencyOptimizer(
        synchronizer,
        PairwiseLossEstimator(frecency.calculate_by_url),
        store,
        eps=int(cfg["optimizer"].get("eps", 1)),
    )

    survey_cfg = cfg["study"].get("mid_study_survey") or {}
    survey = MidStudySurvey(
        kv,
        survey_cfg.get("url", ""),
        interactions=int(survey_cfg.get("interactions", 2)),
        delay_sec=float(survey_cfg.get("delay_sec", 5)),
    )
    await survey.start_period_if_due(study.first_run_timestamp, now_ms(), int(survey_cfg.get("after_days", 7)))

    observer = AwesomeBarObserver(optimizer, ConfigPrivacyGate.from_cfg(cfg), survey)

    q_events: asyncio.Queue = asyncio.Queue()
    tasks = []
    logger.info("creating tasks…")

    try:
        synchronizer.start()
        tasks.append(asyncio.create_task(run_observer_loop(q_events, observer)))
        if events_path is not None:
            await replay_events(events_path, q_events)
        if demo:
            tasks.append(asyncio.create_task(run_demo_source(q_events)))

        logger.info("running for %ss …", run_seconds)
        if run_seconds and run_seconds > 0:
            await asyncio.sleep(run_seconds)
        else:
            # 0 或负数 => 永久运行
            await asyncio.Event().wait()
    finally:
        # 优雅退出
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        survey.cancel()
        await synchronizer.stop()
        await telemetry.close()
        await db.close()
        logger.info("finished (model version %d)", synchronizer.iteration)


def cli() -> None:
    parser = argparse.ArgumentParser(description="frecency-hub awesome bar study runner")
    parser.add_argument("--run-seconds", type=int, default=0)
    parser.add_argument("--events", type=Path, default=None, help="回放的 JSONL 事件文件")
    parser.add_argument("--demo", action="store_true", help="定期生成模拟交互")
    parser.add_argument("--config", type=Path, default=None, help="配置文件，默认 ops/config.yml")
    args = parser.parse_args()

    cfg = load_cfg(args.config)
    logging.basicConfig(
        level=str((cfg.get("logging") or {}).get("level", "INFO")).upper(),
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )
    asyncio.run(main(run_seconds=args.run_seconds, events_path=args.events, demo=args.demo, cfg=cfg))


if __name__ == "__main__":
    cli()
