"""
出站 HTTP：Facebook Graph、AppsFlyer S2S 与后台重发共用一个连接池
http_send 从不抛业务异常，调用方只看 (status, body)
"""

import asyncio
import json
from typing import Any, Dict, Optional, Tuple

import httpx

from ..utils.logger import debug, warning, error

_client: Optional[httpx.AsyncClient] = None

# 网络层失败映射成的伪状态码
STATUS_TIMEOUT = 408
STATUS_UNREACHABLE = 503
STATUS_CLIENT_ERROR = 500


async def get_client() -> httpx.AsyncClient:
    """进程内共享客户端，首次使用时创建；单次请求超时由 http_send 覆盖"""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, pool=10.0),
            limits=httpx.Limits(max_keepalive_connections=50, max_connections=100, keepalive_expiry=30.0),
            follow_redirects=False,
        )
    return _client


def _encode_body(headers: Dict[str, str], body: Any) -> Dict[str, Any]:
    if body is None:
        return {}
    content_type = next((v for k, v in headers.items() if k.lower() == "content-type"), "")
    if content_type.startswith("application/json"):
        return {"content": json.dumps(body, ensure_ascii=False).encode("utf-8")}
    if isinstance(body, (str, bytes)):
        return {"content": body}
    return {"data": body}


def _decode_response(response: httpx.Response) -> Any:
    if not response.content:
        return ""
    try:
        return response.json()
    except ValueError:
        return response.text


async def http_send(method: str, url: str, headers: Optional[Dict[str, str]] = None,
                    body: Any = None, timeout_ms: int = 5000) -> Tuple[int, Any]:
    """发送一次请求，不重试；超时 408，连不上 503，其他异常 500"""
    method = method.upper()
    headers = dict(headers or {})
    kwargs = _encode_body(headers, body) if method in ("POST", "PUT", "PATCH") else {}

    client = await get_client()
    try:
        response = await client.request(
            method, url, headers=headers, timeout=timeout_ms / 1000.0, **kwargs,
        )
    except asyncio.CancelledError:
        raise
    except httpx.TimeoutException:
        warning(f"Outbound timeout after {timeout_ms}ms: {method} {url}")
        return STATUS_TIMEOUT, {"error": "timeout"}
    except httpx.ConnectError as e:
        warning(f"Outbound connect failed: {method} {url}: {e}")
        return STATUS_UNREACHABLE, {"error": "connection_failed"}
    except Exception as e:
        error(f"Outbound request error: {method} {url}: {e}")
        return STATUS_CLIENT_ERROR, {"error": str(e)}

    debug(f"Outbound {method} {url} -> {response.status_code}")
    return response.status_code, _decode_response(response)


async def fetch_redirect(url: str, timeout_ms: int = 5000) -> Tuple[int, Optional[str], Optional[str]]:
    """GET 一次且不跟随跳转，返回 (status, location, error)；网络失败同 http_send 的伪状态码"""
    client = await get_client()
    try:
        response = await client.get(url, timeout=timeout_ms / 1000.0, follow_redirects=False)
    except asyncio.CancelledError:
        raise
    except httpx.TimeoutException:
        warning(f"Redirect check timeout after {timeout_ms}ms: {url}")
        return STATUS_TIMEOUT, None, "timeout"
    except httpx.ConnectError as e:
        warning(f"Redirect check connect failed: {url}: {e}")
        return STATUS_UNREACHABLE, None, f"connection_failed: {e}"
    except Exception as e:
        error(f"Redirect check error: {url}: {e}")
        return STATUS_CLIENT_ERROR, None, str(e)

    debug(f"Redirect check {url} -> {response.status_code}")
    return response.status_code, response.headers.get("location"), None


async def cleanup_client() -> None:
    """关停时关闭连接池"""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
