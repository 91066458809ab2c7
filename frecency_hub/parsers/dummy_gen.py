# 本地 dummy 交互生成器
# 模拟一次完整的地址栏交互（focus -> 打字 -> 建议更新 -> 选中/不选 -> blur），
# 输出与 json_events.parse_event 相同结构的原始事件 dict，用于 demo 模式

import random
from typing import Dict, List, Optional

# 候选站点及其 style，覆盖历史/书签/搜索引擎等来源
SITES = [
    ("https://www.mozilla.org/", "favicon"),
    ("https://developer.mozilla.org/en-US/", "bookmark"),
    ("https://news.ycombinator.com/", "favicon"),
    ("https://github.com/", "bookmark tag"),
    ("https://www.wikipedia.org/", "favicon"),
    ("https://docs.python.org/3/", "favicon"),
    ("https://example.com/", "favicon"),
    ("moz-action:searchengine,{\"engineName\":\"Google\"}", "action searchengine"),
    ("moz-action:switchtab,{\"url\":\"https%3A%2F%2Fgithub.com%2F\"}", "action switchtab"),
]


def _ui_state(search: str, suggestions: List[tuple], rank: Optional[int] = None) -> Dict:
    return {
        "search_string": search,
        "search_string_length": len(search),
        "num_suggestions_displayed": len(suggestions),
        "suggestions": [{"url": u, "style": s} for u, s in suggestions],
        "rank_selected": rank,
    }


def _matching(prefix: str) -> List[tuple]:
    out = [site for site in SITES if prefix.lower() in site[0].lower()]
    # 搜索引擎建议总在第一位
    return [SITES[7]] + [s for s in out if s is not SITES[7]]


def generate_session(start_ms: int, rng: Optional[random.Random] = None) -> List[Dict]:
    """
    生成一次随机交互

    参数:
        start_ms: focus 的时间戳（UTC毫秒）
        rng: 随机源（测试时传固定种子）

    返回:
        原始事件 dict 列表，focus 在前、blur 在后
    """
    rng = rng or random.Random()
    target_url = rng.choice([u for u, s in SITES if not u.startswith("moz-action")])
    word = target_url.split("//", 1)[1].split(".")[1 if target_url.count(".") > 1 else 0]
    typed = word[: rng.randint(1, max(1, len(word)))]

    t = start_ms
    events: List[Dict] = [{"type": "focus", "timestamp": t, "ui_state": _ui_state("", [])}]
    search = ""
    for ch in typed:
        t += rng.randint(80, 260)
        events.append({"type": "key_down", "timestamp": t, "key": ch})
        events.append({"type": "key_press", "timestamp": t + 1, "key": ch})
        search += ch
        t += 5
        events.append({"type": "input", "timestamp": t, "ui_state": _ui_state(search, [])})
        t += rng.randint(10, 60)
        events.append({
            "type": "suggestions_updated",
            "timestamp": t,
            "ui_state": _ui_state(search, _matching(search)),
        })

    suggestions = _matching(search)
    outcome = rng.random()
    if outcome < 0.7 and len(suggestions) > 1:
        rank = next(
            (i for i, (u, _) in enumerate(suggestions) if u == target_url),
            rng.randrange(len(suggestions)),
        )
        t += rng.randint(300, 1500)
        events.append({"type": "key_down", "timestamp": t, "key": "Enter"})
        events.append({"type": "key_press", "timestamp": t + 1, "key": "Enter"})
        events.append({
            "type": "suggestion_selected",
            "timestamp": t + 2,
            "ui_state": _ui_state(search, suggestions, rank),
        })
    elif outcome < 0.85:
        t += rng.randint(300, 1500)
        events.append({"type": "suggestions_hidden", "timestamp": t, "ui_state": _ui_state(search, [])})

    t += rng.randint(50, 500)
    events.append({"type": "blur", "timestamp": t, "ui_state": _ui_state(search, [])})
    return events
