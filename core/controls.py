# core/controls.py
"""
阅读器控件显示状态与空闲计时器

控件在任意输入后显示，空闲一段时间（默认3秒）后自动隐藏。
计时器采用标准防抖：每次重置前必须先取消上一个计时器，销毁时同样取消。
"""

import asyncio
from typing import Callable, List, Optional

from core.config import config


class AsyncioScheduler:
    """基于当前事件循环的延时调度"""

    def call_later(self, delay: float, callback: Callable[[], None]):
        return asyncio.get_running_loop().call_later(delay, callback)


class IdleTimer:
    """可取消、可重置的单次计时器"""

    def __init__(self, delay: float, on_expire: Callable[[], None], scheduler=None):
        self.delay = delay
        self.on_expire = on_expire
        self.scheduler = scheduler or AsyncioScheduler()
        self._handle = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def reset(self) -> None:
        self.cancel()
        self._handle = self.scheduler.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.on_expire()


class ControlsController:
    """控件可见性"""

    def __init__(self, delay: Optional[float] = None, scheduler=None):
        self.visible = True
        self._listeners: List[Callable[[bool], None]] = []
        self._timer = IdleTimer(
            delay if delay is not None else config.controls_hide_delay.value,
            self._hide,
            scheduler,
        )

    @property
    def timer(self) -> IdleTimer:
        return self._timer

    def add_listener(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    def show_temporarily(self) -> None:
        """显示控件并重新开始空闲计时"""
        was_visible = self.visible
        self.visible = True
        self._timer.reset()
        if not was_visible:
            self._notify()

    def _hide(self) -> None:
        if self.visible:
            self.visible = False
            self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self.visible)

    def teardown(self) -> None:
        self._timer.cancel()
        self._listeners.clear()
