import asyncio
import json
from typing import Any, Awaitable, Dict, Optional, Set, Tuple

from ..models import Click, PostbackLog
from ..utils.logger import info, warning, error
from .connector import http_send
from .facebook import FacebookConversions


class BackgroundDispatcher:
    """不阻塞请求的出站发送；任务引用保存在集合里，关停时统一等待"""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable[Any], name: str = "dispatch") -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(coro, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable[Any], name: str) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # 出站失败不影响已返回的响应
            error(f"Background {name} failed: {e}")
            return None

    async def drain(self, timeout: float = 5.0) -> None:
        """等待在途任务完成，超时则取消"""
        pending = list(self._tasks)
        if not pending:
            return
        info(f"Draining {len(pending)} background dispatch tasks")
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            warning(f"Cancelled {len(not_done)} dispatch tasks on shutdown")


def dispatch_install(dispatcher: BackgroundDispatcher, facebook: FacebookConversions,
                     click: Optional[Click], ip: str, user_agent: str) -> Optional[asyncio.Task]:
    """命中的点击带像素凭证时，后台发送 APP_INSTALL"""
    if click is None or not click.has_pixel_credentials:
        return None
    return dispatcher.spawn(
        facebook.send_app_install(click, ip, user_agent),
        name=f"fb_install:{click.click_id}",
    )


async def resend_postback(log: PostbackLog, extra_headers: Optional[Dict[str, str]] = None) -> Tuple[int, Any]:
    """按审计记录原样重发一次（后台手动重试用）"""
    payload = None
    if log.payload:
        try:
            payload = json.loads(log.payload)
        except ValueError:
            payload = log.payload

    headers: Dict[str, str] = {}
    if isinstance(payload, (dict, list)):
        headers["Content-Type"] = "application/json"
    headers.update(extra_headers or {})

    method = (log.method or "POST").upper()
    if method == "GET":
        payload = None
    return await http_send(method, log.url or "", headers=headers, body=payload)
