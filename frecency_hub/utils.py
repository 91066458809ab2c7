# 工具模块：时间戳、URL 规范化

import json
import re
import time
from datetime import datetime, timezone
from typing import Union
from urllib.parse import unquote

VISIT_URL_ACTION = "moz-action:visiturl"

_LEADING_PROTOCOL_RE = re.compile(r"(^\w+:|^)//")
_TRAILING_SLASH_RE = re.compile(r"/$")


def now_ms() -> int:
    """
    获取当前时间的UTC毫秒时间戳

    返回:
        当前时间的毫秒时间戳
    """
    return int(time.time() * 1000)


def to_ms(value: Union[int, float, str, datetime]) -> int:
    """
    把各种时间表示统一成 UTC 毫秒

    参数:
        value: 毫秒整数 / ISO 字符串 / datetime

    返回:
        UTC 毫秒时间戳
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return to_ms(dt)
    return int(value)


def normalize_for_match(s: str) -> str:
    """
    规范化搜索串 / URL，用于判断“选中的 URL 是否就是用户输入的内容”

    - moz-action:visiturl,{json} -> 取 json 里的 url 并做 URL 解码
    - 去掉开头的 scheme:// 或 //
    - 去掉一个结尾的 /
    - 转小写
    """
    if s.startswith(VISIT_URL_ACTION):
        metadata = json.loads(s[len(VISIT_URL_ACTION) + 1:])
        s = unquote(metadata["url"])
    without_protocol = _LEADING_PROTOCOL_RE.sub("", s, count=1)
    without_slash = _TRAILING_SLASH_RE.sub("", without_protocol, count=1)
    return without_slash.lower()
