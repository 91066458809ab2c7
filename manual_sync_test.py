import asyncio
import logging

from frecency_hub.config import load_cfg
from frecency_hub.frecency import FrecencyCalculator
from frecency_hub.storage import LocalStorage, PrefsWeightStore, init_db
from frecency_hub.study import setup_study
from frecency_hub.synchronizer import ModelSynchronizer
from frecency_hub.telemetry import TelemetrySender


async def fetch_once():
    # 用当前配置拉一次远端模型，不挂定时器
    cfg = load_cfg()
    db = await init_db(":memory:")
    store = PrefsWeightStore(db, cfg["frecency"]["prefs"])
    await store.ensure_defaults()
    study = await setup_study(cfg, LocalStorage(db))
    telemetry = TelemetrySender({"notify_channels": ["log"]}, study_name=study.study_name)

    sync = ModelSynchronizer(
        study,
        store,
        FrecencyCalculator(db, store),
        telemetry,
        cfg["synchronization"],
        model_url_endpoint_override=cfg["testing"].get("model_url_endpoint_override") or "",
    )
    if study.branch.model_number is None:
        print("branch", study.variation, "has no remote model")
    else:
        ok = await sync.fetch_remote_model()
        print("manual fetch ok:", ok, "| branch:", study.variation, "| version:", sync.iteration)
        print(await store.get_all())

    await sync.stop()
    await db.close()

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(fetch_once())
