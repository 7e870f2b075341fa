import time
from typing import Optional

import redis.asyncio as redis

from ..utils.logger import info, warning


class RedisClickDebouncer:
    """基于 Redis 的点击去抖（多进程/多实例共享）。

    键设计（默认前缀 click_debounce:）：
      - {prefix}{ip} → SET NX PX window_ms，抢到键的那次点击落库
    Redis 不可用时放行（宁可多记一条点击，也不丢点击）。
    """

    backend = "redis"

    def __init__(self, client, window_ms: int = 2000, key_prefix: str = "click_debounce:") -> None:
        self._redis = client
        self._window_ms = int(window_ms)
        self._prefix = key_prefix
        self._running = False

    @classmethod
    def from_url(cls, url: str, window_ms: int = 2000, key_prefix: str = "click_debounce:") -> "RedisClickDebouncer":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=0.08,
            socket_connect_timeout=0.05,
            health_check_interval=30,
            retry_on_timeout=True,
        )
        return cls(client, window_ms=window_ms, key_prefix=key_prefix)

    @property
    def window_ms(self) -> int:
        return self._window_ms

    @property
    def running(self) -> bool:
        return self._running

    def _key_for(self, ip: str) -> str:
        return f"{self._prefix}{ip}"

    async def start(self) -> None:
        self._running = True
        info(f"Click debouncer started (redis, window={self._window_ms}ms)")

    async def shutdown(self) -> None:
        self._running = False
        try:
            await self._redis.aclose()
        except Exception as e:
            warning(f"Redis debouncer close failed: {e}")
        info("Click debouncer stopped")

    async def should_record(self, ip: str, now_ms: Optional[int] = None) -> bool:
        if not ip:
            return True
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        try:
            got = await self._redis.set(self._key_for(ip), str(now_ms), nx=True, px=self._window_ms)
        except Exception as e:
            warning(f"Redis debounce check failed, recording click: {e}")
            return True
        return bool(got)

    async def forget(self, ip: str) -> None:
        if not ip:
            return
        try:
            await self._redis.delete(self._key_for(ip))
        except Exception as e:
            warning(f"Redis debounce release failed for {ip}: {e}")

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except Exception:
            return False
