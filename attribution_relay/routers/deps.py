"""
路由公共依赖：租户、鉴权、app.state 上的组件、客户端 IP、占位符清洗
"""

import re
from typing import Annotated, Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from ..config import get_setting
from ..schemas import Tenant
from ..services.facebook import FacebookConversions
from ..services.forwarder import BackgroundDispatcher
from ..services.tenants import TenantResolver
from ..utils.events import EventLog
from ..utils.logger import warning
from ..utils.security import keys_equal

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
admin_token_header = APIKeyHeader(name="X-Admin-Token", auto_error=False)

# 广告平台未替换的宏，如 {{ad.id}}
_PLACEHOLDER = re.compile(r"^\{\{.*\}\}$")


def is_placeholder(value: Optional[str]) -> bool:
    """检查字符串是否为未替换的占位符"""
    if not value:
        return False
    return bool(_PLACEHOLDER.match(value.strip()))


def clean_query_placeholders(request: Request) -> Dict[str, Any]:
    """对 query 参数做占位符清洗：{{xxx}} 与空串一律视为缺失"""
    cleaned: Dict[str, Any] = {}
    for key, val in request.query_params.items():
        if not val or is_placeholder(val):
            continue
        cleaned[key] = val
    return cleaned


def client_ip(request: Request) -> str:
    """X-Forwarded-For 第一跳优先，其次 socket 对端地址"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return ""


def get_event_log(request: Request) -> EventLog:
    return request.app.state.events


def get_debouncer(request: Request):
    return request.app.state.debouncer


def get_dispatcher(request: Request) -> BackgroundDispatcher:
    return request.app.state.dispatcher


def get_facebook(request: Request) -> FacebookConversions:
    return request.app.state.facebook


def get_resolver(request: Request) -> TenantResolver:
    return request.app.state.tenants


async def get_tenant(request: Request,
                     resolver: Annotated[TenantResolver, Depends(get_resolver)]) -> Tenant:
    return await resolver.resolve(request.headers.get("host"))


async def require_api_key(request: Request,
                          resolver: Annotated[TenantResolver, Depends(get_resolver)],
                          events: Annotated[EventLog, Depends(get_event_log)],
                          api_key: Annotated[Optional[str], Security(api_key_header)] = None) -> str:
    """缺 key → 401；key 不属于任何启用的应用 → 403"""
    if not api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="api_key_required")

    if not await resolver.is_valid_api_key(api_key):
        warning(f"Invalid API key attempt: {api_key[:15]}...")
        await events.log("error", "Authentication Failed: Invalid API Key", {
            "api_key": api_key[:10] + "...",
            "ip": client_ip(request),
            "url": str(request.url.path),
        })
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid_api_key")
    return api_key


async def require_admin(admin_token: Annotated[Optional[str], Security(admin_token_header)] = None) -> None:
    """settings.admin_token 未配置时后台接口不鉴权"""
    expected = get_setting("admin_token")
    if not expected:
        return
    if not admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="admin_token_required")
    if not keys_equal(admin_token, str(expected)):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid_admin_token")
