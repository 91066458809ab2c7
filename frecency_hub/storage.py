# -*- coding: utf-8 -*-
"""
frecency_hub/storage.py
SQLite（aiosqlite）持久化：
- 初始化/建表
- frecency 权重参数（prefs）读写，扰动后必定恢复
- 本地 key/value（计数器、首次运行时间、分支等缓存）
- places/visits：给 frecency 打分用的浏览历史
不保存历史训练样本。
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Union

import aiosqlite

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"

# --------- 访问类型（与 Firefox places 的 transition 取值一致） ---------
TRANSITION_LINK = 1
TRANSITION_TYPED = 2
TRANSITION_BOOKMARK = 3
TRANSITION_EMBED = 4
TRANSITION_REDIRECT_PERMANENT = 5
TRANSITION_REDIRECT_TEMPORARY = 6
TRANSITION_DOWNLOAD = 7
TRANSITION_FRAMED_LINK = 8
TRANSITION_RELOAD = 9


# --------- 建表 SQL ---------
SCHEMA = """
CREATE TABLE IF NOT EXISTS prefs (
    name   TEXT PRIMARY KEY,
    value  INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS kv (
    key    TEXT PRIMARY KEY,
    value  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS places (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    url          TEXT NOT NULL UNIQUE,
    visit_count  INTEGER NOT NULL DEFAULT 0,
    typed        INTEGER NOT NULL DEFAULT 0,
    bookmarked   INTEGER NOT NULL DEFAULT 0,
    frecency     INTEGER NOT NULL DEFAULT -1
);
CREATE TABLE IF NOT EXISTS visits (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    place_id    INTEGER NOT NULL REFERENCES places(id),
    visit_date  INTEGER NOT NULL,
    transition  INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_visits_place_date ON visits(place_id, visit_date DESC);
"""


# --------- 初始化 ---------
async def init_db(db_path: Union[str, Path]) -> aiosqlite.Connection:
    """
    初始化数据库并返回连接。传 ":memory:" 用内存库（测试用）。
    """
    if str(db_path) != MEMORY_DB:
        p = Path(db_path)
        p.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(p))
        # 性能相关 pragma
        await db.execute("PRAGMA journal_mode=WAL;")
        await db.execute("PRAGMA synchronous=NORMAL;")
    else:
        db = await aiosqlite.connect(MEMORY_DB)
    for stmt in filter(None, SCHEMA.split(";")):
        s = stmt.strip()
        if s:
            await db.execute(s + ";")
    await db.commit()
    return db


# --------- 权重参数 ---------
class PrefsWeightStore:
    """
    固定、有序的一组整数权重参数。

    lock 把“扰动-测量-恢复”和远端模型覆盖写串行化：
    持锁期间其它任务不能读写同一组参数。持锁者自己的读写不再加锁。
    """

    def __init__(self, db: aiosqlite.Connection, defaults: Mapping[str, int]):
        self._db = db
        self._defaults: Dict[str, int] = dict(defaults)
        self.lock = asyncio.Lock()

    @property
    def names(self):
        return list(self._defaults)

    async def ensure_defaults(self) -> None:
        """缺失的参数写入默认值；已有的值不覆盖"""
        await self._db.executemany(
            "INSERT OR IGNORE INTO prefs(name, value) VALUES(?, ?);",
            list(self._defaults.items()),
        )
        await self._db.commit()
        logger.debug("frecency prefs ready: %d params", len(self._defaults))

    async def get_int_pref(self, name: str) -> int:
        self._check_name(name)
        async with self._db.execute("SELECT value FROM prefs WHERE name = ?;", (name,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return self._defaults[name]
        return int(row[0])

    async def set_int_pref(self, name: str, value: int) -> None:
        self._check_name(name)
        await self._db.execute(
            "INSERT INTO prefs(name, value) VALUES(?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value = excluded.value;",
            (name, int(value)),
        )
        await self._db.commit()

    async def set_many(self, values: Mapping[str, int]) -> None:
        """一个事务里写入多个参数；任一失败全部回滚"""
        for name in values:
            self._check_name(name)
        try:
            await self._db.executemany(
                "INSERT INTO prefs(name, value) VALUES(?, ?) "
                "ON CONFLICT(name) DO UPDATE SET value = excluded.value;",
                [(name, int(value)) for name, value in values.items()],
            )
            await self._db.commit()
        except aiosqlite.Error:
            await self._db.rollback()
            raise

    async def get_all(self) -> Dict[str, int]:
        return {name: await self.get_int_pref(name) for name in self._defaults}

    @asynccontextmanager
    async def perturbed(self, name: str, value: int) -> AsyncIterator[int]:
        """
        临时把 name 设为 value，退出时无论是否异常都恢复原值

        返回:
            原值
        """
        original = await self.get_int_pref(name)
        await self.set_int_pref(name, value)
        try:
            yield original
        finally:
            await self.set_int_pref(name, original)

    def _check_name(self, name: str) -> None:
        if name not in self._defaults:
            raise KeyError(f"unknown frecency pref: {name}")


# --------- 本地 key/value ---------
class LocalStorage:
    """JSON 值的 key/value，用于跨会话缓存计数器等"""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._db.execute("SELECT value FROM kv WHERE key = ?;", (key,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    async def set(self, key: str, value: Any) -> None:
        await self._db.execute(
            "INSERT INTO kv(key, value) VALUES(?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            (key, json.dumps(value)),
        )
        await self._db.commit()


# --------- 浏览历史 ---------
async def _ensure_place(db: aiosqlite.Connection, url: str) -> int:
    await db.execute("INSERT OR IGNORE INTO places(url) VALUES(?);", (url,))
    async with db.execute("SELECT id FROM places WHERE url = ?;", (url,)) as cur:
        row = await cur.fetchone()
    return int(row[0])


async def add_visit(
    db: aiosqlite.Connection,
    url: str,
    visit_date_ms: int,
    transition: int = TRANSITION_LINK,
) -> int:
    """
    记录一次访问，visit_count +1；typed 访问会把 place 标记为 typed

    返回:
        place id
    """
    place_id = await _ensure_place(db, url)
    await db.execute(
        "INSERT INTO visits(place_id, visit_date, transition) VALUES(?, ?, ?);",
        (place_id, int(visit_date_ms), int(transition)),
    )
    await db.execute(
        "UPDATE places SET visit_count = visit_count + 1, typed = MAX(typed, ?) WHERE id = ?;",
        (1 if transition == TRANSITION_TYPED else 0, place_id),
    )
    await db.commit()
    return place_id


async def set_bookmarked(db: aiosqlite.Connection, url: str, bookmarked: bool = True) -> int:
    place_id = await _ensure_place(db, url)
    await db.execute("UPDATE places SET bookmarked = ? WHERE id = ?;", (int(bookmarked), place_id))
    await db.commit()
    return place_id


async def get_cached_frecency(db: aiosqlite.Connection, url: str) -> Optional[int]:
    async with db.execute("SELECT frecency FROM places WHERE url = ?;", (url,)) as cur:
        row = await cur.fetchone()
    return None if row is None else int(row[0])
