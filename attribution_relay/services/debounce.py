import asyncio
import time
from typing import Dict, Optional

from ..config import DebounceSettings, debounce_settings
from ..utils.logger import info


class ClickDebouncer:
    """基于内存的点击去抖（单进程）。

    语义：同一来源 IP 在 window_ms 内的重复点击只记录第一次；
    被去抖的点击照常跳转，只是不再落库。窗口从上一次被记录的点击起算。
    """

    backend = "memory"

    def __init__(self, window_ms: int = 2000, max_entries: int = 100000) -> None:
        self._window_ms = int(window_ms)
        self._max_entries = int(max_entries)
        self._last_seen: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def window_ms(self) -> int:
        return self._window_ms

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        info(f"Click debouncer started (memory, window={self._window_ms}ms)")

    async def shutdown(self) -> None:
        self._running = False
        async with self._lock:
            self._last_seen.clear()
        info("Click debouncer stopped")

    async def should_record(self, ip: str, now_ms: Optional[int] = None) -> bool:
        """返回 True 表示这次点击需要落库；False 表示落在去抖窗口内"""
        if not ip:
            return True
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)

        async with self._lock:
            last = self._last_seen.get(ip)
            if last is not None and now_ms - last < self._window_ms:
                return False
            self._last_seen[ip] = now_ms
            if len(self._last_seen) > self._max_entries:
                self._evict(now_ms)
            return True

    async def forget(self, ip: str) -> None:
        """点击没能落库时释放窗口，下一次点击照常记录"""
        if not ip:
            return
        async with self._lock:
            self._last_seen.pop(ip, None)

    async def ping(self) -> bool:
        return True

    def _evict(self, now_ms: int) -> None:
        # 过期条目全部清掉
        expired = [k for k, ts in self._last_seen.items() if now_ms - ts >= self._window_ms]
        for k in expired:
            self._last_seen.pop(k, None)


def build_debouncer(settings: Optional[DebounceSettings] = None):
    """按 settings.debounce.backend 创建去抖组件；enabled=false 时返回 None"""
    settings = settings or debounce_settings()
    if not settings.enabled:
        return None
    if settings.backend == "redis":
        from .debounce_redis import RedisClickDebouncer
        return RedisClickDebouncer.from_url(
            settings.redis_url or "redis://localhost:6379/0",
            window_ms=settings.window_ms,
            key_prefix=settings.key_prefix,
        )
    return ClickDebouncer(window_ms=settings.window_ms)
