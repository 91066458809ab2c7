# -*- coding: utf-8 -*-
"""
frecency_hub/errors.py
核心流程中会抛出的异常。会话被丢弃（没有 focus）不是异常，见 models.Dropped。
"""


class FrecencyHubError(Exception):
    """所有本项目异常的基类"""


class NotFound(FrecencyHubError):
    """事件日志里找不到满足条件的事件"""


class NoFirstEntryFound(NotFound):
    """有选中事件，但选中的 URL 从未出现在建议列表中（或根本没有选中事件）"""


class InvalidIndex(FrecencyHubError, IndexError):
    """loss 计算时 correct 下标越界（候选列表非空）"""
