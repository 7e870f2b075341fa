"""
实时事件环形缓冲：给后台面板提供最近 N 条事件
由 app 工厂创建并挂在 app.state 上，不做模块级单例
"""

import time
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from .logger import info, warning, error

EVENT_TYPES = ("click", "attribution", "postback", "error", "system")

# error / postback 两类事件需要额外落库审计
PERSISTED_TYPES = ("error", "postback")


@dataclass
class LogEvent:
    type: str
    summary: str
    details: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:9])
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


EventSink = Callable[[LogEvent], Awaitable[None]]


class EventLog:
    """有界事件缓冲，满了以后丢最旧的"""

    def __init__(self, capacity: int = 200, sink: Optional[EventSink] = None) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._events: Deque[LogEvent] = deque(maxlen=capacity)
        self._sink = sink

    @property
    def capacity(self) -> int:
        return self._events.maxlen

    def __len__(self) -> int:
        return len(self._events)

    async def log(self, type: str, summary: str, details: Optional[Dict[str, Any]] = None) -> LogEvent:
        if type not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {type}")

        event = LogEvent(type=type, summary=summary, details=details)
        self._events.append(event)

        if type == "error":
            error(f"[{type.upper()}] {summary} {details or ''}")
        elif type == "attribution" and (details or {}).get("suspicious"):
            warning(f"[{type.upper()}] {summary}")
        else:
            info(f"[{type.upper()}] {summary}")

        if self._sink is not None and type in PERSISTED_TYPES:
            try:
                await self._sink(event)
            except Exception as e:
                # 审计落库失败不影响主流程
                error(f"Failed to persist {type} event: {e}")

        return event

    def get_events(self, since: Optional[int] = None) -> List[LogEvent]:
        """按时间倒序返回；since 为毫秒时间戳，只返回更新的事件"""
        events = list(reversed(self._events))
        if since is None:
            return events
        return [e for e in events if e.timestamp > since]

    def clear(self) -> None:
        self._events.clear()
