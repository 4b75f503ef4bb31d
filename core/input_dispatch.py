# core/input_dispatch.py
"""
输入分发

把键盘、滑动手势、点击区域和指针移动映射到阅读会话的操作上。
任何输入都会重新显示控件并重置空闲计时；翻页动作与控件显示互不排斥。
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.reader_session import ReaderSession

ADVANCE = "advance"
RETREAT = "retreat"
CLOSE = "close"
SHOW_CONTROLS = "show_controls"

KEY_BINDINGS = {
    "ArrowRight": ADVANCE,
    "ArrowDown": ADVANCE,
    "ArrowLeft": RETREAT,
    "ArrowUp": RETREAT,
    "Escape": CLOSE,
}

SWIPE_BINDINGS = {
    "left": ADVANCE,
    "right": RETREAT,
}


@dataclass
class DispatchResult:
    action: Optional[str]
    changed: bool = False
    navigate_to: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"action": self.action, "changed": self.changed, "navigateTo": self.navigate_to}


class InputDispatcher:
    """阅读会话的输入分发器"""

    def __init__(self, session: ReaderSession, on_close: Optional[Callable[[str], None]] = None):
        self.session = session
        self.on_close = on_close

    def _perform(self, action: Optional[str]) -> DispatchResult:
        self.session.controls.show_temporarily()
        if action == ADVANCE:
            return DispatchResult(action, changed=self.session.advance())
        if action == RETREAT:
            return DispatchResult(action, changed=self.session.retreat())
        if action == CLOSE:
            target = self.session.close_target()
            if self.on_close:
                self.on_close(target)
            return DispatchResult(action, navigate_to=target)
        return DispatchResult(action)

    def key(self, key: str) -> DispatchResult:
        return self._perform(KEY_BINDINGS.get(key))

    def swipe(self, direction: str) -> DispatchResult:
        return self._perform(SWIPE_BINDINGS.get(direction))

    def tap(self, x: float, width: float) -> DispatchResult:
        """点击屏幕：左半边上一页，右半边下一页"""
        if width <= 0:
            return self._perform(None)
        return self._perform(RETREAT if x < width / 2 else ADVANCE)

    def pointer_move(self) -> DispatchResult:
        return self._perform(SHOW_CONTROLS)

    def dispatch(self, event: Dict[str, Any]) -> DispatchResult:
        """
        分发 JSON 形式的输入事件

        支持: {"type": "key", "key": "ArrowRight"}
              {"type": "swipe", "direction": "left"}
              {"type": "tap", "x": 120, "width": 800}
              {"type": "pointer_move"}
        """
        event_type = event.get("type")
        if event_type == "key":
            return self.key(str(event.get("key", "")))
        if event_type == "swipe":
            return self.swipe(str(event.get("direction", "")))
        if event_type == "tap":
            return self.tap(float(event.get("x", 0)), float(event.get("width", 0)))
        if event_type == "pointer_move":
            return self.pointer_move()
        raise ValueError(f"未知的输入事件类型: {event_type}")
